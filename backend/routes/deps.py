"""### MINIMAL CORE — Auth and service dependencies."""
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, Request

from backend.services.chatbot import ChatbotService
from backend.services.runtime import set_tenant_id


@dataclass
class Caller:
    token:     str
    tenant_id: str
    is_admin:  bool = False


async def get_caller(request: Request, authorization: str = Header(...)) -> Caller:
    # async so the tenant context var lands in the request task, not a worker thread
    if not authorization.startswith("Bearer "):
        raise HTTPException(401, "Invalid authorization header")
    token = authorization[7:].strip()
    tenant_id = request.app.state.api_tokens.get(token)
    if tenant_id is None:
        raise HTTPException(401, "Invalid or expired token")
    set_tenant_id(tenant_id)
    return Caller(token=token, tenant_id=tenant_id, is_admin=token in request.app.state.admin_tokens)


async def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_admin:
        raise HTTPException(403, "Admin token required")
    return caller


def get_chatbot(request: Request) -> ChatbotService:
    chatbot = getattr(request.app.state, "chatbot", None)
    if chatbot is None:
        raise HTTPException(503, "Chatbot is not configured")
    return chatbot
