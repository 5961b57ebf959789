"""### MINIMAL CORE — Cache administration routes."""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel

from backend.routes.deps import Caller, get_chatbot, require_admin
from backend.services.chatbot import ChatbotService
from backend.services.runtime import log_event

router = APIRouter(prefix="/api/chatbot/admin", tags=["admin"])
logger = logging.getLogger("admin_route")


class RefreshResponse(BaseModel):
    success:        bool
    message:        str
    main_table:     Optional[str]  = None
    tables_count:   int            = 0
    columns_count:  int            = 0
    business_terms: Dict[str, str] = {}


class InvalidateResponse(BaseModel):
    success: bool
    removed: int = 0


class CacheStatsResponse(BaseModel):
    schema_cache: Dict[str, Any]
    query_cache:  Dict[str, Any]


@router.post("/refresh-schema", response_model=RefreshResponse)
def refresh_schema(
    response: Response,
    caller: Caller = Depends(require_admin),
    chatbot: ChatbotService = Depends(get_chatbot),
):
    try:
        schema = chatbot.refresh_schema(caller.tenant_id)
    except Exception as exc:
        log_event(logger, logging.ERROR, "schema_refresh_error", exc_info=True, error=str(exc)[:300])
        response.status_code = 502
        return RefreshResponse(success=False, message="Schema refresh failed; check the database connection.")

    log_event(
        logger,
        logging.INFO,
        "schema_refresh_success",
        main_table=schema.main_table,
        tables_count=len(schema.tables),
    )
    return RefreshResponse(
        success=True,
        message="Schema refreshed and query cache cleared.",
        main_table=schema.main_table,
        tables_count=len(schema.tables),
        columns_count=schema.column_count,
        business_terms=schema.business_terms,
    )


@router.get("/cache-stats", response_model=CacheStatsResponse)
def cache_stats(caller: Caller = Depends(require_admin), chatbot: ChatbotService = Depends(get_chatbot)):
    return CacheStatsResponse(**chatbot.cache_stats())


@router.post("/invalidate-query-cache", response_model=InvalidateResponse)
def invalidate_query_cache(caller: Caller = Depends(require_admin), chatbot: ChatbotService = Depends(get_chatbot)):
    removed = chatbot.invalidate_query_cache(caller.tenant_id)
    return InvalidateResponse(success=True, removed=removed)
