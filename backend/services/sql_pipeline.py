"""
### SQL GENERATION LOOP
Question + schema -> validated, executed SELECT.

States: GENERATING -> VALIDATING -> EXECUTING -> DONE, with SUGGESTING on an
empty non-final result and FALLBACK (the model's `alternativa`) once the attempt
budget is spent. Model output is decoded into DecodedSql / DecodeFailure and
never raises.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import pandas as pd
from langchain_core.prompts import PromptTemplate

from app.db_utils import QueryExecutionError
from backend.services.llm import LLMClient
from backend.services.runtime import log_event
from backend.services.schema_discovery import SchemaDescriptor

logger = logging.getLogger("sql_pipeline")

MAX_ATTEMPTS = 3
PROMPT_MAX_TABLES = 12

# Substring match on the uppercased, whitespace-collapsed statement.
FORBIDDEN_KEYWORDS = (
    "INSERT", "UPDATE", "DELETE", "DROP", "ALTER", "TRUNCATE", "EXEC", "CREATE",
    "GRANT", "REVOKE", "INTO OUTFILE", "INTO DUMPFILE", "LOAD_FILE", "LOAD DATA",
    "SLEEP", "BENCHMARK", "SHUTDOWN", "XP_CMDSHELL", "SP_EXECUTESQL",
)


class SqlValidationError(Exception):
    """Raised when a generated statement fails the read-only gate."""
    pass


# ---------------------------
# Validation
# ---------------------------
def validate_sql(sql: Optional[str]) -> Tuple[bool, Optional[str]]:
    if not sql or not sql.strip():
        return False, "Empty SQL statement."
    upper = re.sub(r"\s+", " ", sql.strip().upper())
    for keyword in FORBIDDEN_KEYWORDS:
        if keyword in upper:
            return False, f"Query contains blocked keyword: {keyword}"
    if not upper.startswith(("SELECT", "WITH")):
        return False, "Only SELECT queries are allowed."
    return True, None


def ensure_safe_sql(sql: Optional[str]) -> str:
    ok, reason = validate_sql(sql)
    if not ok:
        raise SqlValidationError(reason)
    return sql


# ---------------------------
# Model output decoding
# ---------------------------
@dataclass(frozen=True)
class DecodedSql:
    sql:         str
    alternative: Optional[str] = None
    explanation: Optional[str] = None


@dataclass(frozen=True)
class DecodeFailure:
    reason: str
    raw:    str = ""


def _strip_fence(text: str) -> str:
    raw = (text or "").strip()
    m = re.search(r"```(?:json|sql)?\s*(.*?)```", raw, flags=re.IGNORECASE | re.DOTALL)
    return m.group(1).strip() if m else raw


def _extract_json(text: str) -> Optional[Dict[str, Any]]:
    raw = _strip_fence(text)
    try:
        obj = json.loads(raw)
        return obj if isinstance(obj, dict) else None
    except ValueError:
        pass
    i = raw.find("{")
    j = raw.rfind("}")
    if i != -1 and j != -1 and j > i:
        try:
            obj = json.loads(raw[i:j + 1])
            return obj if isinstance(obj, dict) else None
        except ValueError:
            return None
    return None


def _text_field(obj: Dict[str, Any], *names: str) -> Optional[str]:
    for name in names:
        value = obj.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def decode_sql_response(raw: str) -> Union[DecodedSql, DecodeFailure]:
    obj = _extract_json(raw)
    if obj is None:
        return DecodeFailure("invalid_json", (raw or "")[:500])
    sql = _text_field(obj, "sql")
    if sql is None:
        return DecodeFailure("missing_sql", (raw or "")[:500])
    return DecodedSql(
        sql=sql.rstrip(";").strip(),
        alternative=_text_field(obj, "alternativa", "alternative"),
        explanation=_text_field(obj, "explicacion", "explanation"),
    )


# ---------------------------
# Virtual table expansion
# ---------------------------
_CLAUSE_WORDS = {
    "WHERE", "GROUP", "ORDER", "LIMIT", "HAVING", "JOIN", "INNER", "LEFT", "RIGHT",
    "FULL", "CROSS", "NATURAL", "STRAIGHT_JOIN", "ON", "USING", "UNION", "WINDOW",
}


def expand_virtual_tables(sql: str, schema: SchemaDescriptor, quote: Callable[[str], str]) -> str:
    """Replace FROM, JOIN and comma-join references to a virtual table with its inline union."""
    for table in schema.virtual_tables:
        if not table.virtual_sql:
            continue
        pattern = re.compile(
            r"(?P<kw>\bFROM\b|\bJOIN\b|,)\s*(?P<q>`?)" + re.escape(table.name) + r"(?P=q)(?![\w`.])"
            r"(?P<tail>\s+(?:AS\s+)?(?P<aq>`?)(?P<alias>[A-Za-z_]\w*)(?P=aq))?",
            flags=re.IGNORECASE,
        )

        def _replace(m: "re.Match[str]", table=table) -> str:
            alias = m.group("alias")
            inline = f"{m.group('kw')} ({table.virtual_sql}) AS "
            if alias and alias.upper() not in _CLAUSE_WORDS and alias.upper() != "AS":
                return inline + quote(alias)
            return inline + quote(table.name) + (m.group("tail") or "")

        sql = pattern.sub(_replace, sql)
    return sql


# ---------------------------
# Prompt
# ---------------------------
SQL_GENERATION_PROMPT = PromptTemplate.from_template(
    """You are a senior {dialect} analyst for a sales database. Translate the user's question into ONE read-only SQL query.

DATABASE SCHEMA (JSON):
{schema_json}

Rules:
- Use only tables and columns that appear in the schema. Quote names that contain spaces with backticks.
- "{main_table}" is the main sales table; prefer it and the business_terms mapping (venta = sale amount, producto, cliente, marca, fecha).
- Exactly one SELECT (or WITH ... SELECT). Never modify data.
- Aggregate with SUM/COUNT/AVG where the question asks for totals; add LIMIT 100 to detail listings.
- Text filters should use LIKE '%value%' so small spelling differences still match.
{feedback}
QUESTION: {question}

Respond with JSON only, no prose:
{{"sql": "<query>", "explicacion": "<one sentence>", "alternativa": "<a simpler fallback query or null>"}}
"""
)


def schema_prompt_context(schema: SchemaDescriptor, max_tables: int = PROMPT_MAX_TABLES) -> Dict[str, Any]:
    tables = []
    for t in schema.tables[:max_tables]:
        entry: Dict[str, Any] = {
            "name": t.name,
            "rows": t.row_count,
            "columns": [{"name": c.name, "type": c.full_type, "role": c.role} for c in t.columns],
        }
        if t.is_virtual:
            entry["description"] = t.description
            entry["note"] = "query it by name like a normal table"
        tables.append(entry)
    return {
        "database": schema.database_name,
        "main_table": schema.main_table,
        "business_terms": schema.business_terms,
        "tables": tables,
    }


def build_sql_prompt(
    question: str,
    schema: SchemaDescriptor,
    attempt: int,
    suggestions: List[str],
    feedback: Optional[str] = None,
    dialect: str = "MySQL",
) -> str:
    notes: List[str] = []
    if attempt > 1:
        notes.append(f"\nThis is attempt {attempt}.")
        if feedback:
            notes.append(f"The previous query did not work: {feedback}")
        if suggestions:
            notes.append(
                "Values in the data that look similar to what the user wrote: "
                + ", ".join(suggestions)
                + ". Use them if they match the user's intent."
            )
    return SQL_GENERATION_PROMPT.format(
        dialect=dialect,
        schema_json=json.dumps(schema_prompt_context(schema), ensure_ascii=False, default=str),
        main_table=schema.main_table or "",
        feedback="\n".join(notes),
        question=question,
    )


# ---------------------------
# State machine
# ---------------------------
class LoopState(str, Enum):
    GENERATING = "generating"
    VALIDATING = "validating"
    EXECUTING = "executing"
    SUGGESTING = "suggesting"
    FALLBACK = "fallback"
    DONE = "done"
    FAILED = "failed"


STATUS_ROWS = "success-with-rows"
STATUS_EMPTY = "success-empty"
STATUS_ERROR = "terminal-error"
STATUS_UNINTERPRETABLE = "uninterpretable"


@dataclass
class GenerationOutcome:
    status:        str                    = STATUS_ERROR
    rows:          Optional[pd.DataFrame] = None
    error:         Optional[str]          = None
    executed_sql:  Optional[str]          = None
    attempts:      int                    = 0
    suggestions:   List[str]              = field(default_factory=list)
    used_fallback: bool                   = False
    explanation:   Optional[str]          = None
    trace:         List[str]              = field(default_factory=list)

    @property
    def has_rows(self) -> bool:
        return self.rows is not None and not self.rows.empty


class SqlGenerationLoop:
    """
    Bounded generate/validate/execute loop.

    ``execute(sql)`` returns a DataFrame or raises QueryExecutionError;
    ``suggest(question)`` returns candidate entity names and never raises.
    """

    def __init__(
        self,
        llm: LLMClient,
        execute: Callable[[str], pd.DataFrame],
        suggest: Callable[[str], List[str]],
        max_attempts: int = MAX_ATTEMPTS,
        dialect: str = "MySQL",
    ):
        self.llm = llm
        self.execute = execute
        self.suggest = suggest
        self.max_attempts = max(1, int(max_attempts))
        self.dialect = dialect

    def _after_failure(self, outcome: GenerationOutcome, decoded: DecodedSql) -> LoopState:
        if outcome.attempts < self.max_attempts:
            return LoopState.GENERATING
        if decoded.alternative:
            return LoopState.FALLBACK
        return LoopState.FAILED

    def _run_statement(self, sql: str) -> pd.DataFrame:
        ensure_safe_sql(sql)
        return self.execute(sql)

    def run(self, question: str, schema: SchemaDescriptor) -> GenerationOutcome:
        outcome = GenerationOutcome()
        state = LoopState.GENERATING
        decoded: Optional[DecodedSql] = None
        feedback: Optional[str] = None
        df: Optional[pd.DataFrame] = None

        while state not in (LoopState.DONE, LoopState.FAILED):
            outcome.trace.append(state.value)

            if state is LoopState.GENERATING:
                outcome.attempts += 1
                prompt = build_sql_prompt(
                    question, schema, outcome.attempts, outcome.suggestions, feedback, dialect=self.dialect
                )
                result = decode_sql_response(self.llm.start_chat().send(prompt))
                if isinstance(result, DecodeFailure):
                    log_event(logger, logging.WARNING, "sql_decode_failed", attempt=outcome.attempts, reason=result.reason)
                    feedback = "the answer was not the requested JSON object."
                    if outcome.attempts >= self.max_attempts:
                        outcome.status = STATUS_UNINTERPRETABLE
                        outcome.error = "Could not interpret the model response."
                        state = LoopState.FAILED
                    continue
                decoded = result
                outcome.explanation = result.explanation
                state = LoopState.VALIDATING

            elif state is LoopState.VALIDATING:
                ok, reason = validate_sql(decoded.sql)
                if ok:
                    state = LoopState.EXECUTING
                else:
                    feedback = reason
                    log_event(logger, logging.WARNING, "sql_rejected", attempt=outcome.attempts, reason=reason)
                    state = self._after_failure(outcome, decoded)

            elif state is LoopState.EXECUTING:
                try:
                    df = self.execute(decoded.sql)
                except QueryExecutionError as exc:
                    feedback = str(exc)
                    log_event(logger, logging.WARNING, "sql_execution_failed", attempt=outcome.attempts, error=feedback[:300])
                    state = self._after_failure(outcome, decoded)
                    continue
                outcome.executed_sql = decoded.sql
                if df.empty and outcome.attempts < self.max_attempts:
                    feedback = "it returned no rows."
                    state = LoopState.SUGGESTING
                else:
                    state = LoopState.DONE

            elif state is LoopState.SUGGESTING:
                outcome.suggestions = list(self.suggest(question))
                state = LoopState.GENERATING

            elif state is LoopState.FALLBACK:
                try:
                    df = self._run_statement(decoded.alternative)
                except (SqlValidationError, QueryExecutionError) as exc:
                    log_event(logger, logging.WARNING, "sql_fallback_failed", error=str(exc)[:300], primary_error=(feedback or "")[:300])
                    feedback = str(exc)
                    state = LoopState.FAILED
                    continue
                outcome.executed_sql = decoded.alternative
                outcome.used_fallback = True
                state = LoopState.DONE

        outcome.trace.append(state.value)
        if state is LoopState.DONE:
            outcome.rows = df
            outcome.status = STATUS_ROWS if outcome.has_rows else STATUS_EMPTY
            outcome.error = None
        elif outcome.status != STATUS_UNINTERPRETABLE:
            outcome.status = STATUS_ERROR
            outcome.executed_sql = None
            outcome.error = feedback or "Query failed."

        log_event(
            logger,
            logging.INFO,
            "sql_loop_finished",
            status=outcome.status,
            attempts=outcome.attempts,
            used_fallback=outcome.used_fallback,
            rows=0 if outcome.rows is None else len(outcome.rows),
            suggestions=len(outcome.suggestions),
        )
        return outcome
