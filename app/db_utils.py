"""
Database Utilities - Engines, Read-only Sessions, and Safe Query Execution
"""
import logging
import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, List, Tuple, Any, Dict, Mapping

import pandas as pd
from sqlalchemy import create_engine, text, event
from sqlalchemy.engine import Engine, URL, make_url
from sqlalchemy.exc import SQLAlchemyError
from langchain_community.utilities import SQLDatabase

from backend.services.runtime import log_event

logger = logging.getLogger("db_utils")


# Engine cache keyed by (connection URI, read_only)
_ENGINE_CACHE: Dict[Tuple[str, bool], Engine] = {}
_ENGINE_CACHE_LOCK = threading.RLock()


@dataclass
class DatabaseConfig:
    """Database connection configuration"""
    host:     str = "localhost"
    port:     str = "3306"
    username: str = ""
    password: str = ""
    database: str = ""

    # Full SQLAlchemy URL; when set it wins over the discrete parts
    url: Optional[str] = None

    connect_timeout: int  = 10
    read_only:       bool = False

    @property
    def connection_uri(self) -> str:
        """Build a MySQL connection URI using mysql-connector-python."""
        if self.url:
            return self.url
        uri = URL.create(
            "mysql+mysqlconnector",
            username=self.username or None,
            password=self.password or None,
            host=(self.host or "").strip() or None,
            port=int(self.port) if str(self.port or "").strip() else None,
            database=(self.database or "").strip() or None,
        )
        return uri.render_as_string(hide_password=False)

    @property
    def database_name(self) -> str:
        if self.database:
            return self.database
        try:
            return make_url(self.connection_uri).database or ""
        except Exception:
            return ""


class QueryExecutionError(Exception):
    """Raised when query execution fails"""
    pass


def _dialect_name(engine: Engine) -> str:
    return (getattr(getattr(engine, "dialect", None), "name", "") or "").lower()


def create_engine_for(config: DatabaseConfig) -> Engine:
    """
    Create (or reuse) a pooled SQLAlchemy engine for ``config``.

    Read-only engines put every pooled MySQL session into READ ONLY transaction
    mode, so generated statements cannot write even if the safety gate misses one.
    """
    cache_key = (config.connection_uri, bool(config.read_only))
    with _ENGINE_CACHE_LOCK:
        cached = _ENGINE_CACHE.get(cache_key)
        if cached is not None:
            return cached

        kwargs: Dict[str, Any] = {"pool_pre_ping": True, "echo": False}
        uri = config.connection_uri
        if uri.startswith("mysql"):
            kwargs.update(
                pool_recycle=300,  # remote MySQL drops idle connections
                pool_size=5,
                max_overflow=10,
                connect_args={"connection_timeout": int(config.connect_timeout)},
            )
        engine = create_engine(uri, **kwargs)

        if config.read_only and _dialect_name(engine) == "mysql":
            @event.listens_for(engine, "connect")
            def _set_session_options(dbapi_conn, connection_record):
                cursor = dbapi_conn.cursor()
                try:
                    cursor.execute("SET SESSION TRANSACTION READ ONLY")
                finally:
                    cursor.close()

        _ENGINE_CACHE[cache_key] = engine
        log_event(
            logger,
            logging.INFO,
            "engine_created",
            dialect=_dialect_name(engine),
            read_only=bool(config.read_only),
            connection_uri_hash=hash(config.connection_uri),
        )
        return engine


def create_database(config: DatabaseConfig) -> SQLDatabase:
    """
    Wrap the store engine in a LangChain SQLDatabase handle.

    Reflection is lazy: schema discovery does its own catalog queries, so the
    handle only needs the engine and dialect.
    """
    engine = create_engine_for(config)
    return SQLDatabase(
        engine=engine,
        schema=None,
        view_support=False,
        sample_rows_in_table_info=0,
        lazy_table_reflection=True,
    )


def dispose_engines() -> None:
    with _ENGINE_CACHE_LOCK:
        engines = list(_ENGINE_CACHE.values())
        _ENGINE_CACHE.clear()
    for engine in engines:
        try:
            engine.dispose()
        except Exception:
            logger.warning("engine_dispose_failed", exc_info=True)


def quote_identifier(db: SQLDatabase, name: str) -> str:
    """Quote a table/column name for the store's dialect (backticks on MySQL)."""
    return db._engine.dialect.identifier_preparer.quote_identifier(name)


def fetch_dataframe(
    db: SQLDatabase,
    query: str,
    params: Optional[Mapping[str, Any]] = None,
    max_rows: Optional[int] = None,
) -> pd.DataFrame:
    """
    Run a parameterized read and return its rows as a DataFrame.

    Raises QueryExecutionError on any store error.
    """
    try:
        with db._engine.connect() as conn:
            result_proxy = conn.execute(text(query), dict(params or {}))
            columns = list(result_proxy.keys())
            # fetchmany in chunks keeps peak memory bounded for wide results
            chunk_size = 500
            rows: list = []
            while True:
                chunk = result_proxy.fetchmany(chunk_size)
                if not chunk:
                    break
                rows.extend(chunk)
                if max_rows is not None and len(rows) >= max_rows:
                    rows = rows[:max_rows]
                    break
    except SQLAlchemyError as exc:
        raise QueryExecutionError(str(getattr(exc, "orig", None) or exc).split("\n")[0]) from exc

    if rows:
        return pd.DataFrame([tuple(r) for r in rows], columns=columns)
    return pd.DataFrame(columns=columns)


def execute_query_safe(
    db: SQLDatabase,
    query: str,
    max_rows: int = 1000,
) -> Tuple[Optional[pd.DataFrame], Optional[str]]:
    """
    Execute a model-generated SQL statement verbatim with row limiting.

    Args:
        db: LangChain SQLDatabase instance
        query: SQL query string (already validated)
        max_rows: Maximum rows to return (prevents memory issues)

    Returns:
        Tuple of (DataFrame or None, error message or None)
    """
    query_stripped = query.rstrip().rstrip(";")
    try:
        return fetch_dataframe(db, query_stripped, max_rows=max_rows), None
    except QueryExecutionError as e:
        return None, f"Database error: {e}"
    except Exception as e:
        return None, f"Query execution failed: {str(e)}"


def rows_from_df(df: Optional[pd.DataFrame]) -> List[Dict[str, Any]]:
    """JSON-friendly records: NaN/NaT become None, DECIMAL becomes float."""
    if df is None or df.empty:
        return []
    clean = df.astype(object).where(pd.notna(df), None)
    return [
        {k: float(v) if isinstance(v, Decimal) else v for k, v in record.items()}
        for record in clean.to_dict(orient="records")
    ]
