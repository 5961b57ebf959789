"""### MINIMAL CORE — Chatbot question and history routes."""
import asyncio
import logging
from contextvars import copy_context
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel

from backend.routes.deps import Caller, get_caller, get_chatbot
from backend.services.chatbot import ChatbotService, InvalidQuestionError
from backend.services.runtime import get_foreground_executor, get_request_id, log_event

router = APIRouter(prefix="/api/chatbot", tags=["chatbot"])
logger = logging.getLogger("chat_route")

GENERIC_ERROR = "Sorry, something went wrong while answering your question. Please try again."


class QueryRequest(BaseModel):
    # validated by the chatbot input guard, so a non-string gets a 400 with a clear message
    question: Any = None


class QueryResponse(BaseModel):
    success:      bool
    intent:       Optional[str]        = None
    status:       Optional[str]        = None
    answer:       Optional[str]        = None
    results:      List[Dict[str, Any]] = []
    metrics:      Dict[str, Any]       = {}
    suggestions:  List[str]            = []
    attempts:     int                  = 0
    executed_sql: Optional[str]        = None
    from_cache:   bool                 = False
    error:        Optional[str]        = None
    request_id:   Optional[str]        = None


class HistoryItem(BaseModel):
    question:   str
    answer:     Optional[str] = None
    created_at: Optional[str] = None


class HistoryResponse(BaseModel):
    history: List[HistoryItem] = []


@router.post("/query", response_model=QueryResponse)
async def query(
    req: QueryRequest,
    response: Response,
    caller: Caller = Depends(get_caller),
    chatbot: ChatbotService = Depends(get_chatbot),
):
    loop = asyncio.get_running_loop()
    ctx = copy_context()
    try:
        payload = await loop.run_in_executor(
            get_foreground_executor(),
            ctx.run,
            chatbot.answer,
            caller.tenant_id,
            req.question,
        )
    except InvalidQuestionError as exc:
        response.status_code = 400
        return QueryResponse(success=False, error=str(exc), request_id=get_request_id())
    except Exception as exc:
        log_event(
            logger,
            logging.ERROR,
            "query_failed",
            exc_info=True,
            question=str(req.question)[:100],
            error_type=type(exc).__name__,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        response.status_code = 500
        return QueryResponse(success=False, error=GENERIC_ERROR, request_id=get_request_id())
    return QueryResponse(**payload)


@router.get("/history", response_model=HistoryResponse)
def history(caller: Caller = Depends(get_caller), chatbot: ChatbotService = Depends(get_chatbot)):
    return HistoryResponse(history=[HistoryItem(**item) for item in chatbot.recent_history(caller.tenant_id)])
