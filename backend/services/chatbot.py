"""
### CHATBOT ORCHESTRATOR
One question in, one answer payload out:

  input guard -> intent routing
    prediction   -> ForecastEngine      (canned narrative)
    segmentation -> SegmentationEngine  (canned narrative)
    sql / churn  -> QueryCache -> SqlGenerationLoop -> ResultExplainer -> QueryCache
  -> history append

Everything stateful (caches, engines, LLM) is injected; nothing here is global.
"""
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd
from langchain_community.utilities import SQLDatabase

from app.db_utils import (
    QueryExecutionError,
    create_database,
    create_engine_for,
    execute_query_safe,
    quote_identifier,
    rows_from_df,
)
from backend.config import Settings
from backend.services import intent as intents
from backend.services.entity_suggestions import DEFAULT_SUGGESTION_COLUMNS, find_similar_entities
from backend.services.explainer import (
    UNINTERPRETABLE_ANSWER,
    ResultExplainer,
    compute_metrics,
    forecast_answer,
    segmentation_answer,
)
from backend.services.forecast import ForecastEngine, ForecastRecorder
from backend.services.history import HistoryRepository
from backend.services.llm import LLMClient, build_chat_model
from backend.services.query_cache import QueryCache
from backend.services.runtime import get_request_id, log_event
from backend.services.schema_cache import SchemaCache, SchemaCacheRepository
from backend.services.schema_discovery import SchemaDescriptor, SchemaDiscovery
from backend.services.segmentation import SegmentationEngine
from backend.services.sql_pipeline import (
    STATUS_EMPTY,
    STATUS_ROWS,
    STATUS_UNINTERPRETABLE,
    SqlGenerationLoop,
    expand_virtual_tables,
)
from backend.services.store_tables import ensure_tables

logger = logging.getLogger("chatbot")

QUESTION_MAX_CHARS = 500

SUSPICIOUS_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"ignora\s+(las\s+)?instrucciones",
        r"olvida\s+(las\s+)?reglas",
        r"genera\s+este\s+sql",
        r"ejecuta\s+este\s+select",
        r"information_schema",
        r"mysql\.user",
        r"--\s*$",
        r";\s*select",
        r"union\s+select",
        r"into\s+outfile",
        r"load_file",
    )
)

CACHEABLE_STATUSES = (STATUS_ROWS, STATUS_EMPTY)


def _failure_status(result: Dict[str, Any]) -> str:
    return "error" if result.get("reason") == "store_error" else "insufficient-data"


class InvalidQuestionError(ValueError):
    """Question rejected before any store or model call."""
    pass


def validate_question(question: Any, max_chars: int = QUESTION_MAX_CHARS) -> str:
    if not isinstance(question, str):
        raise InvalidQuestionError("The question must be text.")
    text = question.strip()
    if not text:
        raise InvalidQuestionError("The question cannot be empty.")
    if len(text) > max_chars:
        raise InvalidQuestionError(f"The question is too long (max {max_chars} characters).")
    for pattern in SUSPICIOUS_PATTERNS:
        if pattern.search(text):
            log_event(logger, logging.WARNING, "question_rejected", pattern=pattern.pattern)
            raise InvalidQuestionError("The question contains content that is not allowed.")
    return text


def _payload(
    intent: str,
    answer: str,
    results: Optional[List[Dict[str, Any]]] = None,
    *,
    status: str = STATUS_ROWS,
    metrics: Optional[Dict[str, Any]] = None,
    suggestions: Optional[List[str]] = None,
    attempts: int = 0,
    executed_sql: Optional[str] = None,
    error: Optional[str] = None,
    success: bool = True,
) -> Dict[str, Any]:
    return {
        "success": success,
        "intent": intent,
        "status": status,
        "answer": answer,
        "results": results or [],
        "metrics": metrics or {},
        "suggestions": suggestions or [],
        "attempts": attempts,
        "executed_sql": executed_sql,
        "from_cache": False,
        "error": error,
    }


class ChatbotService:
    def __init__(
        self,
        db: SQLDatabase,
        schema_cache: SchemaCache,
        query_cache: QueryCache,
        llm: LLMClient,
        forecast: ForecastEngine,
        segmentation: SegmentationEngine,
        history: HistoryRepository,
        max_attempts: int = 3,
        max_rows: int = 1000,
        question_max_chars: int = QUESTION_MAX_CHARS,
        suggestion_columns: Sequence[str] = DEFAULT_SUGGESTION_COLUMNS,
    ):
        self.db = db
        self.schema_cache = schema_cache
        self.query_cache = query_cache
        self.llm = llm
        self.explainer = ResultExplainer(llm)
        self.forecast = forecast
        self.segmentation = segmentation
        self.history = history
        self.max_attempts = max_attempts
        self.max_rows = max_rows
        self.question_max_chars = question_max_chars
        self.suggestion_columns = tuple(suggestion_columns)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChatbotService":
        db = create_database(settings.database)
        app_engine = create_engine_for(settings.app_database)
        ensure_tables(app_engine)

        discovery = SchemaDiscovery(db, database_name=settings.database.database_name)
        model = build_chat_model(
            settings.llm_model,
            settings.llm_api_key,
            temperature=settings.llm_temperature,
            base_url=settings.llm_base_url,
        )
        return cls(
            db=db,
            schema_cache=SchemaCache(
                SchemaCacheRepository(app_engine),
                discovery.discover,
                ttl_hours=settings.schema_cache_ttl_hours,
            ),
            query_cache=QueryCache(max_entries=settings.query_cache_max_entries),
            llm=LLMClient(model),
            forecast=ForecastEngine(db, ForecastRecorder(app_engine), window_months=settings.forecast_window_months),
            segmentation=SegmentationEngine(db, window_months=settings.segmentation_window_months),
            history=HistoryRepository(app_engine),
            max_attempts=settings.sql_max_attempts,
            max_rows=settings.query_max_rows,
            question_max_chars=settings.question_max_chars,
            suggestion_columns=settings.suggestion_columns,
        )

    # ------------------------------------------------------------------
    # Question handling
    # ------------------------------------------------------------------
    def answer(self, tenant_id: str, question: Any) -> Dict[str, Any]:
        text = validate_question(question, self.question_max_chars)
        intent = intents.detect_intention(text)
        log_event(logger, logging.INFO, "question_received", intent=intent, chars=len(text))

        if intent == intents.INTENT_PREDICTION:
            payload = self._answer_forecast(tenant_id, text, intent)
        elif intent == intents.INTENT_SEGMENTATION:
            payload = self._answer_segmentation(tenant_id, text, intent)
        else:
            if intent == intents.INTENT_CHURN:
                # no churn model; answered as a regular SQL question
                log_event(logger, logging.INFO, "churn_routed_to_sql")
            cached = self.query_cache.get(tenant_id, text)
            if cached is not None:
                log_event(logger, logging.INFO, "query_cache_hit", intent=intent)
                cached.update(from_cache=True, intent=intent)
                payload = cached
            else:
                log_event(logger, logging.INFO, "query_cache_miss", intent=intent)
                payload = self._answer_sql(tenant_id, text, intent)
                if payload["status"] in CACHEABLE_STATUSES:
                    self.query_cache.set(tenant_id, text, payload)

        self.history.append(tenant_id, text, payload["answer"])
        payload["request_id"] = get_request_id()
        return payload

    def _answer_forecast(self, tenant_id: str, question: str, intent: str) -> Dict[str, Any]:
        params = intents.extract_parameters(question, intent)
        schema = self.schema_cache.get_schema(tenant_id)
        result = self.forecast.predict_sales(tenant_id, schema, params)
        if not result.get("success"):
            return _payload(intent, forecast_answer(result), status=_failure_status(result), error=result.get("error"), success=False)
        summary = {
            "target_period": result.get("target_period"),
            "prediction": result["prediction"],
            "interval_min": result["confidence_interval"]["min"],
            "interval_max": result["confidence_interval"]["max"],
            "confidence_score": result["confidence_score"],
            "historical_periods": result["historical_periods"],
            "model": result["model"],
        }
        return _payload(intent, forecast_answer(result), [summary], metrics={"forecast": result})

    def _answer_segmentation(self, tenant_id: str, question: str, intent: str) -> Dict[str, Any]:
        schema = self.schema_cache.get_schema(tenant_id)
        result = self.segmentation.segment_rfm(tenant_id, schema)
        if not result.get("success"):
            return _payload(intent, segmentation_answer(result), status=_failure_status(result), error=result.get("error"), success=False)
        return _payload(
            intent,
            segmentation_answer(result),
            result["customers"],
            metrics={"segments": result["segments"], "total_customers": result["total_customers"]},
        )

    def _execute(self, schema: SchemaDescriptor, sql: str) -> pd.DataFrame:
        expanded = expand_virtual_tables(sql, schema, lambda name: quote_identifier(self.db, name))
        df, err = execute_query_safe(self.db, expanded, max_rows=self.max_rows)
        if err:
            raise QueryExecutionError(err)
        return df

    def _suggest(self, schema: SchemaDescriptor, question: str) -> List[str]:
        return find_similar_entities(self.db, schema, question, self.suggestion_columns)

    def _answer_sql(self, tenant_id: str, question: str, intent: str) -> Dict[str, Any]:
        schema = self.schema_cache.get_schema(tenant_id)
        loop = SqlGenerationLoop(
            self.llm,
            execute=lambda sql: self._execute(schema, sql),
            suggest=lambda q: self._suggest(schema, q),
            max_attempts=self.max_attempts,
        )
        outcome = loop.run(question, schema)

        if outcome.status == STATUS_UNINTERPRETABLE:
            return _payload(
                intent,
                UNINTERPRETABLE_ANSWER,
                status=outcome.status,
                attempts=outcome.attempts,
                error=outcome.error,
                success=False,
            )

        metrics = compute_metrics(outcome.rows) if outcome.has_rows else {}
        suggestions = list(outcome.suggestions)
        if not outcome.has_rows and not suggestions and outcome.attempts >= self.max_attempts:
            suggestions = self._suggest(schema, question)

        answer = self.explainer.explain(question, outcome.rows, metrics, suggestions, outcome.error)
        return _payload(
            intent,
            answer,
            rows_from_df(outcome.rows),
            status=outcome.status,
            metrics=metrics,
            suggestions=suggestions,
            attempts=outcome.attempts,
            executed_sql=outcome.executed_sql,
            error=outcome.error,
            success=outcome.status in CACHEABLE_STATUSES,
        )

    # ------------------------------------------------------------------
    # Administrative operations
    # ------------------------------------------------------------------
    def refresh_schema(self, tenant_id: str) -> SchemaDescriptor:
        schema = self.schema_cache.refresh_schema(tenant_id)
        self.query_cache.invalidate(tenant_id)
        return schema

    def invalidate_query_cache(self, tenant_id: str) -> int:
        return self.query_cache.invalidate(tenant_id)

    def cache_stats(self) -> Dict[str, Any]:
        return {"schema_cache": self.schema_cache.stats(), "query_cache": self.query_cache.stats()}

    def recent_history(self, tenant_id: str) -> List[Dict[str, Any]]:
        return self.history.recent(tenant_id)
