"""Question/answer history per tenant."""
import logging
from typing import Any, Dict, List

from sqlalchemy import select
from sqlalchemy.engine import Engine

from backend.services.runtime import log_event
from backend.services.schema_cache import utcnow
from backend.services.store_tables import query_history_table

logger = logging.getLogger("history")

HISTORY_LIMIT = 50


class HistoryRepository:
    def __init__(self, engine: Engine):
        self.engine = engine

    def append(self, tenant_id: str, question: str, answer: str) -> bool:
        """Best effort; a failed write is logged and never fails the answer."""
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    query_history_table.insert().values(
                        tenant_id=tenant_id,
                        question=question,
                        answer=answer,
                        created_at=utcnow(),
                    )
                )
            return True
        except Exception as exc:
            log_event(logger, logging.WARNING, "history_append_failed", error=str(exc)[:300])
            return False

    def recent(self, tenant_id: str, limit: int = HISTORY_LIMIT) -> List[Dict[str, Any]]:
        t = query_history_table
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(t.c.question, t.c.answer, t.c.created_at)
                .where(t.c.tenant_id == tenant_id)
                .order_by(t.c.created_at.desc(), t.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [
            {"question": r.question, "answer": r.answer, "created_at": r.created_at.isoformat() if r.created_at else None}
            for r in reversed(rows)
        ]
