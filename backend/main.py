"""
FastAPI backend for the sales insights chatbot.
Run with: uvicorn backend.main:app --reload --port 8000
"""
import os
import uuid
import logging
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv(Path(__file__).parent.parent / ".env")

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from app.db_utils import dispose_engines
from backend.config import Settings
from backend.routes.admin import router as admin_router
from backend.routes.chat import router as chat_router
from backend.services.chatbot import ChatbotService
from backend.services.runtime import set_request_id, clear_context, shutdown_shared_executor, log_event

logger = logging.getLogger("backend")

if not logging.getLogger().handlers:
    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def create_app(settings: Optional[Settings] = None, chatbot: Optional[ChatbotService] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    app = FastAPI(title="Sales Insights Chatbot API", version="1.0.0")
    app.state.settings = settings
    app.state.chatbot = chatbot
    app.state.api_tokens = dict(settings.api_tokens)
    app.state.admin_tokens = set(settings.admin_tokens)

    @app.on_event("startup")
    def build_services():
        if app.state.chatbot is not None:
            return
        app.state.chatbot = ChatbotService.from_settings(settings)
        log_event(
            logger,
            logging.INFO,
            "chatbot_ready",
            model=settings.llm_model,
            tenants=len(set(settings.api_tokens.values())),
        )

    @app.on_event("shutdown")
    def shutdown_workers():
        shutdown_shared_executor(wait=False)
        dispose_engines()

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        request_id = set_request_id(request.headers.get("x-request-id") or str(uuid.uuid4()))
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("request_failed request_id=%s path=%s", request_id, request.url.path)
            raise
        finally:
            clear_context()
        response.headers["x-request-id"] = request_id
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(chat_router)
    app.include_router(admin_router)

    @app.get("/api/health")
    def health():
        return {"status": "ok", "chatbot_ready": app.state.chatbot is not None}

    return app


app = create_app()
