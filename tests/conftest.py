import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool
from langchain_community.utilities import SQLDatabase

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from backend.services.store_tables import ensure_tables


class _Resp:
    def __init__(self, content: str):
        self.content = content


class DummyLLM:
    """Scripted chat model: replies in order (the last one repeats) and records every prompt."""

    def __init__(self, *replies: str):
        self.replies = list(replies) or [""]
        self.prompts = []

    def invoke(self, prompt):
        if isinstance(prompt, str):
            self.prompts.append(prompt)
        else:
            self.prompts.append(prompt[-1].content)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        return _Resp(reply)


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def memory_engine():
    # StaticPool keeps one connection so every thread sees the same in-memory database
    return create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )


@pytest.fixture
def app_engine():
    engine = memory_engine()
    ensure_tables(engine)
    yield engine
    engine.dispose()


SALES_ROWS = [
    # (id, fecha, cliente, nombre_producto, venta_neta, cantidad)
    (1, "2025-01-10", "Ana", "Whisky Reserva", 60.0, 2),
    (2, "2025-01-20", "Beto", "Ron Blanco", 40.0, 1),
    (3, "2025-02-11", "Ana", "Whisky Reserva", 70.0, 3),
    (4, "2025-02-15", "Carla", "Vino Tinto", 40.0, 2),
    (5, "2025-03-05", "Ana", "Whisky Reserva", 80.0, 4),
    (6, "2025-03-09", "Beto", "Ron Blanco", 40.0, 1),
]


@pytest.fixture
def sales_db():
    engine = memory_engine()
    with engine.begin() as conn:
        conn.execute(text(
            "CREATE TABLE ventas ("
            " id INTEGER PRIMARY KEY,"
            " fecha DATE,"
            " cliente VARCHAR(80),"
            " nombre_producto VARCHAR(80),"
            " venta_neta DECIMAL(12, 2),"
            " cantidad INTEGER)"
        ))
        conn.execute(text("CREATE TABLE ventas_backup (id INTEGER, venta_neta DECIMAL(12, 2))"))
        conn.execute(text("CREATE TABLE sucursales (id INTEGER PRIMARY KEY, nombre VARCHAR(50))"))
        conn.execute(text("INSERT INTO sucursales (id, nombre) VALUES (1, 'Centro')"))
        for row in SALES_ROWS:
            conn.execute(
                text(
                    "INSERT INTO ventas (id, fecha, cliente, nombre_producto, venta_neta, cantidad) "
                    "VALUES (:id, :fecha, :cliente, :producto, :venta, :cantidad)"
                ),
                dict(zip(("id", "fecha", "cliente", "producto", "venta", "cantidad"), row)),
            )
    yield SQLDatabase(engine=engine)
    engine.dispose()
