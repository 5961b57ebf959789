"""
Per-request logging context and the worker pool that answers questions.

Every log line is one JSON object tagged with the request id and tenant of the
call that produced it.
"""
from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextvars import ContextVar
from typing import Any, Optional

_LOGGER = logging.getLogger("runtime")

UNSET = "-"

_request_id: ContextVar[str] = ContextVar("request_id", default=UNSET)
_tenant_id: ContextVar[str] = ContextVar("tenant_id", default=UNSET)

_pool: Optional[ThreadPoolExecutor] = None
_pool_lock = threading.Lock()
QUESTION_WORKERS = max(2, int(os.getenv("CHATBOT_QUESTION_WORKERS", "8")))


def get_request_id() -> str:
    return _request_id.get()


def get_tenant_id() -> str:
    return _tenant_id.get()


def set_request_id(request_id: Optional[str]) -> str:
    """Bind the caller's request id, or a fresh uuid4 when none was sent."""
    value = (request_id or "").strip() or uuid.uuid4().hex
    _request_id.set(value)
    return value


def set_tenant_id(tenant_id: Optional[str]) -> str:
    value = (tenant_id or "").strip() or UNSET
    _tenant_id.set(value)
    return value


def clear_context() -> None:
    _request_id.set(UNSET)
    _tenant_id.set(UNSET)


def log_event(logger: logging.Logger, level: int, event: str, exc_info: bool = False, **fields: Any) -> None:
    if not logger.isEnabledFor(level):
        return
    record = {"request_id": _request_id.get(), "tenant_id": _tenant_id.get(), "event": event}
    record.update(fields)
    logger.log(level, json.dumps(record, default=str, ensure_ascii=True), exc_info=exc_info)


def get_foreground_executor() -> ThreadPoolExecutor:
    """Pool shared by the question routes so model and store calls stay off the event loop."""
    global _pool
    with _pool_lock:
        if _pool is None:
            _pool = ThreadPoolExecutor(max_workers=QUESTION_WORKERS, thread_name_prefix="chatbot-question")
        return _pool


def shutdown_shared_executor(wait: bool = False) -> None:
    global _pool
    with _pool_lock:
        pool, _pool = _pool, None
    if pool is None:
        return
    # running questions finish; queued ones are cancelled
    pool.shutdown(wait=wait, cancel_futures=True)
    _LOGGER.info("question_pool_shutdown")
