"""
Chatbot-owned tables (schema cache, question history, forecast audit log).

These live next to the sales data but are written through a writable engine;
sales queries go through the read-only one.
"""
import logging
from typing import Any, Dict, Sequence

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)
from sqlalchemy.dialects import mysql, sqlite
from sqlalchemy.engine import Connection, Engine

logger = logging.getLogger("store_tables")

_LONG_TEXT = Text().with_variant(mysql.LONGTEXT(), "mysql")

metadata = MetaData()

schema_cache_table = Table(
    "schema_cache",
    metadata,
    Column("tenant_id", String(64), primary_key=True),
    Column("schema_data", _LONG_TEXT, nullable=False),
    Column("main_table", String(128)),
    Column("column_count", Integer, default=0),
    Column("row_count", Integer, default=0),
    Column("database_name", String(128)),
    Column("discovery_duration_ms", Integer, default=0),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    Column("expires_at", DateTime),
)

query_history_table = Table(
    "query_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tenant_id", String(64), nullable=False, index=True),
    Column("question", Text, nullable=False),
    Column("answer", _LONG_TEXT),
    Column("created_at", DateTime, nullable=False),
)

forecast_records_table = Table(
    "forecast_records",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tenant_id", String(64), nullable=False, index=True),
    Column("prediction_type", String(50), nullable=False),
    Column("input_params", Text),
    Column("result", Text),
    Column("confidence_score", Float),
    Column("model_name", String(50)),
    Column("created_at", DateTime, nullable=False),
)


def ensure_tables(engine: Engine) -> None:
    metadata.create_all(engine, checkfirst=True)
    logger.info("chatbot_tables_ready dialect=%s", engine.dialect.name)


def upsert(conn: Connection, table: Table, values: Dict[str, Any], key: Sequence[str]) -> None:
    """Insert-or-update on the primary key; the last writer wins."""
    dialect = conn.dialect.name
    updates = {k: v for k, v in values.items() if k not in key}
    if dialect == "mysql":
        stmt = mysql.insert(table).values(**values).on_duplicate_key_update(**updates)
    elif dialect == "sqlite":
        stmt = sqlite.insert(table).values(**values).on_conflict_do_update(index_elements=list(key), set_=updates)
    else:
        where = [table.c[k] == values[k] for k in key]
        if conn.execute(table.update().where(*where).values(**updates)).rowcount:
            return
        stmt = table.insert().values(**values)
    conn.execute(stmt)
