"""LLM adapter: single-turn generate and a per-question chat session."""
import logging
import time
from typing import Any, List, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
from langchain_openai import ChatOpenAI

from backend.services.runtime import log_event

logger = logging.getLogger("llm")


def _content(resp: Any) -> str:
    return resp.content if hasattr(resp, "content") else str(resp)


def build_chat_model(
    model: str,
    api_key: str,
    temperature: float = 0.0,
    base_url: Optional[str] = None,
) -> ChatOpenAI:
    if base_url:
        return ChatOpenAI(
            model=model,
            temperature=temperature,
            openai_api_key=api_key,
            openai_api_base=base_url,
        )
    return ChatOpenAI(model=model, temperature=temperature, openai_api_key=api_key)


class ChatSession:
    """Keeps the message history so a corrective follow-up can see earlier turns."""

    def __init__(self, llm: Any):
        self._llm = llm
        self.messages: List[BaseMessage] = []

    def send(self, content: str) -> str:
        self.messages.append(HumanMessage(content=content))
        started = time.perf_counter()
        reply = _content(self._llm.invoke(list(self.messages)))
        self.messages.append(AIMessage(content=reply))
        log_event(
            logger,
            logging.INFO,
            "llm_chat_turn",
            turn=len(self.messages) // 2,
            prompt_chars=len(content),
            reply_chars=len(reply),
            elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return reply


class LLMClient:
    """Thin wrapper over a LangChain chat model (anything with ``invoke``)."""

    def __init__(self, llm: Any):
        self._llm = llm

    def generate(self, prompt: str) -> str:
        started = time.perf_counter()
        reply = _content(self._llm.invoke(prompt))
        log_event(
            logger,
            logging.INFO,
            "llm_generate",
            prompt_chars=len(prompt),
            reply_chars=len(reply),
            elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return reply

    def start_chat(self) -> ChatSession:
        return ChatSession(self._llm)
