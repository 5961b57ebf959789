"""
### SCHEMA CACHE
Per-tenant memo of the discovered schema with a TTL, persisted in `schema_cache`
so it survives restarts. Expiry is lazy: an expired row is only replaced when a
reader trips over it.
"""
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy import case, func, select
from sqlalchemy.engine import Engine

from backend.services.runtime import log_event
from backend.services.schema_discovery import SchemaDescriptor
from backend.services.store_tables import schema_cache_table, upsert

logger = logging.getLogger("schema_cache")


def utcnow() -> datetime:
    """Naive UTC, matching DATETIME columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class CachedSchemaRow:
    schema_data: str
    expires_at:  Optional[datetime]


class SchemaCacheRepository:
    """Reads and writes `schema_cache` rows."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def load(self, tenant_id: str) -> Optional[CachedSchemaRow]:
        t = schema_cache_table
        with self.engine.connect() as conn:
            row = conn.execute(
                select(t.c.schema_data, t.c.expires_at).where(t.c.tenant_id == tenant_id)
            ).first()
        if row is None:
            return None
        return CachedSchemaRow(schema_data=row.schema_data, expires_at=row.expires_at)

    def save(
        self,
        tenant_id: str,
        schema: SchemaDescriptor,
        discovery_duration_ms: int,
        now: datetime,
        expires_at: datetime,
    ) -> None:
        main = schema.main
        values = {
            "tenant_id": tenant_id,
            "schema_data": schema.to_json(),
            "main_table": schema.main_table,
            "column_count": len(main.columns) if main else 0,
            "row_count": schema.row_count,
            "database_name": schema.database_name,
            "discovery_duration_ms": int(discovery_duration_ms),
            "created_at": now,
            "updated_at": now,
            "expires_at": expires_at,
        }
        with self.engine.begin() as conn:
            upsert(conn, schema_cache_table, values, key=("tenant_id",))

    def delete(self, tenant_id: str) -> int:
        t = schema_cache_table
        with self.engine.begin() as conn:
            return conn.execute(t.delete().where(t.c.tenant_id == tenant_id)).rowcount or 0

    def stats(self, now: datetime) -> Dict[str, Any]:
        t = schema_cache_table
        with self.engine.connect() as conn:
            row = conn.execute(
                select(
                    func.count(),
                    func.avg(t.c.column_count),
                    func.avg(t.c.discovery_duration_ms),
                    func.sum(case((t.c.expires_at < now, 1), else_=0)),
                )
            ).one()
        total, avg_columns, avg_ms, expired = row
        return {
            "entries": int(total or 0),
            "avg_columns": round(float(avg_columns or 0), 2),
            "avg_discovery_ms": round(float(avg_ms or 0), 2),
            "expired_entries": int(expired or 0),
        }


class SchemaCache:
    """
    get_schema / refresh_schema / stats over a persisted repository plus an
    in-process memo. Two concurrent misses for one tenant may both discover;
    the upsert keeps the row consistent and the last writer wins.
    """

    def __init__(
        self,
        repository: SchemaCacheRepository,
        discover: Callable[[], SchemaDescriptor],
        ttl_hours: float = 24,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self._discover = discover
        self.ttl = timedelta(hours=ttl_hours)
        self._clock = clock
        self._lock = threading.RLock()
        self._memo: Dict[str, Tuple[SchemaDescriptor, Optional[datetime]]] = {}
        self.hits = 0
        self.misses = 0
        self.discoveries = 0

    @staticmethod
    def _is_fresh(expires_at: Optional[datetime], now: datetime) -> bool:
        return expires_at is None or expires_at > now

    def get_schema(self, tenant_id: str) -> SchemaDescriptor:
        now = self._clock()
        with self._lock:
            memo = self._memo.get(tenant_id)
            if memo is not None and self._is_fresh(memo[1], now):
                self.hits += 1
                return memo[0]

        row = self.repository.load(tenant_id)
        if row is not None and self._is_fresh(row.expires_at, now):
            schema = SchemaDescriptor.from_json(row.schema_data)
            with self._lock:
                self._memo[tenant_id] = (schema, row.expires_at)
                self.hits += 1
            log_event(logger, logging.INFO, "schema_cache_hit", source="store", main_table=schema.main_table)
            return schema

        return self._rediscover(tenant_id, reason="expired" if row is not None else "miss")

    def refresh_schema(self, tenant_id: str) -> SchemaDescriptor:
        self.repository.delete(tenant_id)
        with self._lock:
            self._memo.pop(tenant_id, None)
        return self._rediscover(tenant_id, reason="refresh")

    def _rediscover(self, tenant_id: str, reason: str) -> SchemaDescriptor:
        with self._lock:
            self.misses += 1
            self.discoveries += 1
        started = time.perf_counter()
        # A failed discovery raises here and nothing is cached.
        schema = self._discover()
        duration_ms = int((time.perf_counter() - started) * 1000)

        now = self._clock()
        expires_at = now + self.ttl
        try:
            self.repository.save(tenant_id, schema, duration_ms, now=now, expires_at=expires_at)
        except Exception as exc:
            log_event(logger, logging.WARNING, "schema_cache_persist_failed", error=str(exc)[:300])

        with self._lock:
            self._memo[tenant_id] = (schema, expires_at)
        log_event(
            logger,
            logging.INFO,
            "schema_cache_miss",
            reason=reason,
            main_table=schema.main_table,
            discovery_ms=duration_ms,
            expires_at=expires_at.isoformat(),
        )
        return schema

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            counters = {"hits": self.hits, "misses": self.misses, "discoveries": self.discoveries}
        try:
            persisted = self.repository.stats(self._clock())
        except Exception as exc:
            log_event(logger, logging.WARNING, "schema_cache_stats_failed", error=str(exc)[:300])
            persisted = {}
        return {**persisted, **counters}
