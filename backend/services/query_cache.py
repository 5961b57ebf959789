"""
### QUERY CACHE
In-memory cache of final chatbot answers keyed by (tenant, normalized question).
TTL is chosen per entry from the SQL that produced the answer.
"""
import hashlib
import logging
import re
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from backend.services.runtime import log_event

logger = logging.getLogger("query_cache")

DEFAULT_TTL_SECONDS = 60 * 60
AGGREGATE_TTL_SECONDS = 6 * 60 * 60
CURRENT_TIME_TTL_SECONDS = 30 * 60
DEFAULT_MAX_ENTRIES = 10000

_CURRENT_TIME_RE = re.compile(
    r"(?i)\b(NOW|CURDATE|CURTIME|SYSDATE|GETDATE|UTC_DATE|UTC_TIMESTAMP)\s*\(|\bCURRENT_(DATE|TIME|TIMESTAMP)\b"
)
_AGGREGATE_RE = re.compile(r"(?i)\b(SUM|COUNT|AVG)\s*\(")


def normalize_question(question: str) -> str:
    return (question or "").strip().lower()


def question_digest(question: str) -> str:
    return hashlib.md5(normalize_question(question).encode("utf-8")).hexdigest()[:12]


def ttl_for_sql(sql: Optional[str]) -> int:
    """Freshness policy: aggregates are treated as historical, "now" answers go stale fastest."""
    text = sql or ""
    if _AGGREGATE_RE.search(text):
        return AGGREGATE_TTL_SECONDS
    if _CURRENT_TIME_RE.search(text):
        return CURRENT_TIME_TTL_SECONDS
    return DEFAULT_TTL_SECONDS


@dataclass
class _Entry:
    payload:    Dict[str, Any]
    expires_at: float


class QueryCache:
    """Thread-safe LRU of answer payloads with per-entry expiry."""

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES, clock: Callable[[], float] = time.time):
        self.max_entries = max(10, int(max_entries))
        self._clock = clock
        self._entries: "OrderedDict[Tuple[str, str], _Entry]" = OrderedDict()
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0

    def get(self, tenant_id: str, question: str) -> Optional[Dict[str, Any]]:
        key = (str(tenant_id), question_digest(question))
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expires_at <= self._clock():
                del self._entries[key]
                entry = None
            if entry is None:
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return dict(entry.payload)

    def set(self, tenant_id: str, question: str, payload: Dict[str, Any]) -> int:
        """Store ``payload``; returns the TTL (seconds) it was given."""
        ttl = ttl_for_sql(payload.get("executed_sql"))
        key = (str(tenant_id), question_digest(question))
        with self._lock:
            self._entries[key] = _Entry(payload=dict(payload), expires_at=self._clock() + ttl)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
        log_event(logger, logging.DEBUG, "query_cache_set", ttl_s=ttl, digest=key[1])
        return ttl

    def invalidate(self, tenant_id: str) -> int:
        tenant = str(tenant_id)
        with self._lock:
            doomed = [k for k in self._entries if k[0] == tenant]
            for k in doomed:
                del self._entries[k]
        log_event(logger, logging.INFO, "query_cache_invalidated", removed=len(doomed))
        return len(doomed)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self.hits + self.misses
            return {
                "hits": self.hits,
                "misses": self.misses,
                "keys": len(self._entries),
                "max_entries": self.max_entries,
                "hit_rate": round(self.hits / lookups, 4) if lookups else 0.0,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
