"""
Environment-driven settings. `.env` at the project root is loaded by backend.main
before this module is read.
"""
import os
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Set, Tuple

from app.db_utils import DatabaseConfig
from backend.services.entity_suggestions import DEFAULT_SUGGESTION_COLUMNS

DEFAULT_CORS_ORIGINS = "http://localhost:5173,http://127.0.0.1:5173,http://localhost:3000"


def _env_int(name: str, default: int, minimum: int) -> int:
    return max(minimum, int(os.getenv(name, str(default))))


def _env_float(name: str, default: float, minimum: float) -> float:
    return max(minimum, float(os.getenv(name, str(default))))


def _csv(raw: Optional[str]) -> List[str]:
    return [part.strip() for part in (raw or "").split(",") if part.strip()]


def parse_token_map(raw: Optional[str]) -> Dict[str, str]:
    """'tok1:acme,tok2:globex' -> {'tok1': 'acme', 'tok2': 'globex'}"""
    tokens: Dict[str, str] = {}
    for pair in _csv(raw):
        token, sep, tenant = pair.partition(":")
        if sep and token.strip() and tenant.strip():
            tokens[token.strip()] = tenant.strip()
    return tokens


def _database_from_env(prefix: str, read_only: bool) -> Optional[DatabaseConfig]:
    url = os.getenv(f"{prefix}_URL")
    host = os.getenv(f"{prefix}_HOST")
    if not url and not host:
        return None
    return DatabaseConfig(
        host=host or "localhost",
        port=os.getenv(f"{prefix}_PORT", "3306"),
        username=os.getenv(f"{prefix}_USER", ""),
        password=os.getenv(f"{prefix}_PASSWORD", ""),
        database=os.getenv(f"{prefix}_NAME", ""),
        url=url,
        connect_timeout=_env_int(f"{prefix}_CONNECT_TIMEOUT", 10, 1),
        read_only=read_only,
    )


@dataclass
class Settings:
    database:     DatabaseConfig
    app_database: DatabaseConfig

    llm_model:       str           = "gpt-4o-mini"
    llm_api_key:     str           = ""
    llm_base_url:    Optional[str] = None
    llm_temperature: float         = 0.0

    sql_max_attempts:           int = 3
    question_max_chars:         int = 500
    schema_cache_ttl_hours:     float = 24.0
    query_cache_max_entries:    int = 10000
    query_max_rows:             int = 1000
    forecast_window_months:     int = 24
    segmentation_window_months: int = 12
    suggestion_columns:         Tuple[str, ...] = DEFAULT_SUGGESTION_COLUMNS

    api_tokens:   Dict[str, str] = field(default_factory=dict)
    admin_tokens: Set[str]       = field(default_factory=set)
    cors_origins: List[str]      = field(default_factory=list)

    @classmethod
    def from_env(cls) -> "Settings":
        database = _database_from_env("DB", read_only=True) or DatabaseConfig(read_only=True)
        app_database = _database_from_env("APP_DB", read_only=False)
        if app_database is None:
            # same store, writable engine
            app_database = replace(database, read_only=False)
        return cls(
            database=database,
            app_database=app_database,
            llm_model=os.getenv("LLM_MODEL", "gpt-4o-mini"),
            llm_api_key=os.getenv("OPENAI_API_KEY", ""),
            llm_base_url=os.getenv("LLM_BASE_URL") or None,
            llm_temperature=_env_float("LLM_TEMPERATURE", 0.0, 0.0),
            sql_max_attempts=_env_int("SQL_MAX_ATTEMPTS", 3, 1),
            question_max_chars=_env_int("QUESTION_MAX_CHARS", 500, 1),
            schema_cache_ttl_hours=_env_float("SCHEMA_CACHE_TTL_HOURS", 24.0, 0.01),
            query_cache_max_entries=_env_int("QUERY_CACHE_MAX_ENTRIES", 10000, 10),
            query_max_rows=_env_int("QUERY_MAX_ROWS", 1000, 1),
            forecast_window_months=_env_int("FORECAST_WINDOW_MONTHS", 24, 3),
            segmentation_window_months=_env_int("SEGMENTATION_WINDOW_MONTHS", 12, 1),
            suggestion_columns=tuple(_csv(os.getenv("SUGGESTION_COLUMNS"))) or DEFAULT_SUGGESTION_COLUMNS,
            api_tokens=parse_token_map(os.getenv("API_TOKENS")),
            admin_tokens=set(_csv(os.getenv("ADMIN_TOKENS"))),
            cors_origins=_csv(os.getenv("CORS_ORIGINS", DEFAULT_CORS_ORIGINS)),
        )
