import sys
from pathlib import Path

import pandas as pd
import pytest

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from conftest import DummyLLM
from app.db_utils import QueryExecutionError
from backend.services import sql_pipeline as sp
from backend.services.llm import LLMClient
from backend.services.schema_discovery import ColumnDescriptor, TableDescriptor, build_schema


def _backtick(name: str) -> str:
    return f"`{name}`"


def _columns():
    return [
        ColumnDescriptor.build("fecha", "date"),
        ColumnDescriptor.build("cliente", "varchar(80)"),
        ColumnDescriptor.build("venta_neta", "decimal(12,2)"),
    ]


def _schema():
    return build_schema([TableDescriptor("ventas", 6, _columns())], "tienda", _backtick)


def _year_schema():
    return build_schema(
        [TableDescriptor("2024", 5, _columns()), TableDescriptor("2023", 3, _columns())],
        "tienda",
        _backtick,
    )


class _Executor:
    def __init__(self, handler):
        self.handler = handler
        self.statements = []

    def __call__(self, sql):
        self.statements.append(sql)
        return self.handler(sql)


class _Suggester:
    def __init__(self, names):
        self.names = names
        self.questions = []

    def __call__(self, question):
        self.questions.append(question)
        return list(self.names)


# ---------------------------
# Validation
# ---------------------------
def test_validate_sql_accepts_plain_reads():
    assert sp.validate_sql("select x from y") == (True, None)
    assert sp.validate_sql("WITH a AS (SELECT 1 AS n) SELECT * FROM a")[0]


def test_validate_sql_rejects_stacked_write():
    ok, reason = sp.validate_sql("SELECT * FROM t; DROP TABLE t")
    assert not ok
    assert "DROP" in reason


def test_validate_sql_rejects_non_select_and_empty():
    assert sp.validate_sql("SHOW TABLES") == (False, "Only SELECT queries are allowed.")
    assert not sp.validate_sql("   ")[0]
    assert not sp.validate_sql(None)[0]
    assert not sp.validate_sql("SELECT * FROM t INTO   OUTFILE '/tmp/x'")[0]


def test_validate_sql_denylist_is_substring_based():
    # a column such as created_at trips the CREATE keyword
    assert not sp.validate_sql("SELECT created_at FROM pedidos")[0]


def test_ensure_safe_sql_raises():
    with pytest.raises(sp.SqlValidationError):
        sp.ensure_safe_sql("DELETE FROM ventas")
    assert sp.ensure_safe_sql("SELECT 1") == "SELECT 1"


# ---------------------------
# Decoding
# ---------------------------
def test_decode_plain_json():
    decoded = sp.decode_sql_response('{"sql": "SELECT 1;", "explicacion": "uno", "alternativa": "SELECT 2"}')
    assert decoded == sp.DecodedSql(sql="SELECT 1", alternative="SELECT 2", explanation="uno")


def test_decode_fenced_json_with_english_keys():
    raw = '```json\n{"sql": "SELECT 1", "alternative": "SELECT 2", "explanation": "one"}\n```'
    decoded = sp.decode_sql_response(raw)
    assert isinstance(decoded, sp.DecodedSql)
    assert decoded.alternative == "SELECT 2"
    assert decoded.explanation == "one"


def test_decode_json_surrounded_by_prose():
    decoded = sp.decode_sql_response('Here you go: {"sql": "SELECT 3"} hope it helps')
    assert decoded.sql == "SELECT 3"
    assert decoded.alternative is None


def test_decode_failures_never_raise():
    assert sp.decode_sql_response("no json here") == sp.DecodeFailure("invalid_json", "no json here")
    assert sp.decode_sql_response('{"query": "SELECT 1"}').reason == "missing_sql"
    assert sp.decode_sql_response('{"sql": "   "}').reason == "missing_sql"
    assert sp.decode_sql_response("[1, 2]").reason == "invalid_json"
    assert sp.decode_sql_response(None).reason == "invalid_json"


# ---------------------------
# Virtual tables
# ---------------------------
def test_expand_virtual_table_without_alias():
    sql = "SELECT SUM(venta_neta) FROM ventas_union_2023_2024 WHERE fecha >= '2024-01-01'"
    assert sp.expand_virtual_tables(sql, _year_schema(), _backtick) == (
        "SELECT SUM(venta_neta) FROM (SELECT * FROM `2023` UNION ALL SELECT * FROM `2024`) "
        "AS `ventas_union_2023_2024` WHERE fecha >= '2024-01-01'"
    )


def test_expand_virtual_table_keeps_alias():
    sql = "SELECT v.cliente FROM `ventas_union_2023_2024` AS v GROUP BY v.cliente"
    expanded = sp.expand_virtual_tables(sql, _year_schema(), _backtick)
    assert expanded == (
        "SELECT v.cliente FROM (SELECT * FROM `2023` UNION ALL SELECT * FROM `2024`) AS `v` GROUP BY v.cliente"
    )


def test_expand_virtual_table_in_comma_join():
    sql = "SELECT s.nombre, SUM(v.venta_neta) FROM sucursales s, ventas_union_2023_2024 v WHERE v.sucursal_id = s.id"
    assert sp.expand_virtual_tables(sql, _year_schema(), _backtick) == (
        "SELECT s.nombre, SUM(v.venta_neta) FROM sucursales s, "
        "(SELECT * FROM `2023` UNION ALL SELECT * FROM `2024`) AS `v` WHERE v.sucursal_id = s.id"
    )


def test_expand_ignores_qualified_column_references():
    sql = "SELECT a, ventas_union_2023_2024.cliente FROM ventas_union_2023_2024"
    assert sp.expand_virtual_tables(sql, _year_schema(), _backtick) == (
        "SELECT a, ventas_union_2023_2024.cliente FROM "
        "(SELECT * FROM `2023` UNION ALL SELECT * FROM `2024`) AS `ventas_union_2023_2024`"
    )


def test_expand_leaves_concrete_tables_alone():
    sql = "SELECT * FROM ventas"
    assert sp.expand_virtual_tables(sql, _schema(), _backtick) == sql


# ---------------------------
# Prompt
# ---------------------------
def test_first_prompt_has_schema_and_question_only():
    prompt = sp.build_sql_prompt("ventas por cliente", _schema(), attempt=1, suggestions=["Ana"], feedback="boom")
    assert "QUESTION: ventas por cliente" in prompt
    assert '"main_table": "ventas"' in prompt
    assert "attempt" not in prompt
    assert "boom" not in prompt


def test_retry_prompt_carries_feedback_and_suggestions():
    prompt = sp.build_sql_prompt("ventas de Anaa", _schema(), attempt=2, suggestions=["Ana"], feedback="no rows")
    assert "This is attempt 2." in prompt
    assert "The previous query did not work: no rows" in prompt
    assert "Ana" in prompt


# ---------------------------
# Generation loop
# ---------------------------
def test_loop_recovers_from_error_then_empty_result():
    llm = DummyLLM(
        '{"sql": "SELECT missing_col FROM ventas"}',
        '```json\n{"sql": "SELECT SUM(venta_neta) AS total FROM ventas WHERE cliente LIKE \'%Anaa%\'"}\n```',
        '{"sql": "SELECT SUM(venta_neta) AS total FROM ventas WHERE cliente LIKE \'%Ana%\'", "explicacion": "Total de Ana"}',
    )

    def handler(sql):
        if "missing_col" in sql:
            raise QueryExecutionError("Unknown column 'missing_col'")
        if "Anaa" in sql:
            return pd.DataFrame(columns=["total"])
        return pd.DataFrame({"total": [210.0]})

    execute = _Executor(handler)
    suggest = _Suggester(["Ana"])
    outcome = sp.SqlGenerationLoop(LLMClient(llm), execute, suggest, max_attempts=3).run("ventas de Anaa", _schema())

    assert outcome.status == sp.STATUS_ROWS
    assert outcome.attempts == 3
    assert outcome.rows["total"].tolist() == [210.0]
    assert outcome.executed_sql.endswith("LIKE '%Ana%'")
    assert outcome.explanation == "Total de Ana"
    assert outcome.suggestions == ["Ana"]
    assert suggest.questions == ["ventas de Anaa"]
    assert len(execute.statements) == 3
    assert "Unknown column 'missing_col'" in llm.prompts[1]
    assert "it returned no rows." in llm.prompts[2]
    assert "Ana" in llm.prompts[2]
    assert sp.LoopState.SUGGESTING.value in outcome.trace
    assert outcome.trace[-1] == sp.LoopState.DONE.value


def test_loop_rejects_unsafe_sql_before_execution():
    llm = DummyLLM('{"sql": "DROP TABLE ventas"}', '{"sql": "SELECT COUNT(*) AS n FROM ventas"}')
    execute = _Executor(lambda sql: pd.DataFrame({"n": [6]}))

    outcome = sp.SqlGenerationLoop(LLMClient(llm), execute, _Suggester([])).run("cuantas ventas", _schema())

    assert outcome.status == sp.STATUS_ROWS
    assert outcome.attempts == 2
    assert execute.statements == ["SELECT COUNT(*) AS n FROM ventas"]
    assert "blocked keyword: DROP" in llm.prompts[1]


def test_loop_uses_alternative_after_budget_is_spent():
    llm = DummyLLM('{"sql": "SELECT nope FROM ventas", "alternativa": "SELECT 1 AS ok"}')

    def handler(sql):
        if "nope" in sql:
            raise QueryExecutionError("Unknown column 'nope'")
        return pd.DataFrame({"ok": [1]})

    execute = _Executor(handler)
    outcome = sp.SqlGenerationLoop(LLMClient(llm), execute, _Suggester([])).run("algo", _schema())

    assert outcome.status == sp.STATUS_ROWS
    assert outcome.used_fallback
    assert outcome.attempts == 3
    assert outcome.executed_sql == "SELECT 1 AS ok"
    assert execute.statements[-1] == "SELECT 1 AS ok"


def test_unsafe_alternative_is_never_executed():
    llm = DummyLLM('{"sql": "SELECT nope FROM ventas", "alternativa": "DELETE FROM ventas"}')

    def handler(sql):
        raise QueryExecutionError("Unknown column 'nope'")

    execute = _Executor(handler)
    outcome = sp.SqlGenerationLoop(LLMClient(llm), execute, _Suggester([])).run("algo", _schema())

    assert outcome.status == sp.STATUS_ERROR
    assert "DELETE" in outcome.error
    assert outcome.executed_sql is None
    assert all("DELETE" not in s for s in execute.statements)


def test_loop_without_alternative_reports_last_error():
    llm = DummyLLM('{"sql": "SELECT nope FROM ventas"}')

    def handler(sql):
        raise QueryExecutionError("Unknown column 'nope'")

    execute = _Executor(handler)

    outcome = sp.SqlGenerationLoop(LLMClient(llm), execute, _Suggester([]), max_attempts=2).run("algo", _schema())

    assert outcome.status == sp.STATUS_ERROR
    assert outcome.attempts == 2
    assert outcome.error == "Unknown column 'nope'"


def test_uninterpretable_model_output():
    llm = DummyLLM("Sorry, I can only chat about the weather.")
    execute = _Executor(lambda sql: pd.DataFrame())

    outcome = sp.SqlGenerationLoop(LLMClient(llm), execute, _Suggester([])).run("algo", _schema())

    assert outcome.status == sp.STATUS_UNINTERPRETABLE
    assert outcome.attempts == 3
    assert outcome.rows is None
    assert execute.statements == []
    assert "not the requested JSON object" in llm.prompts[1]


def test_empty_result_on_last_attempt_is_final():
    llm = DummyLLM('{"sql": "SELECT cliente FROM ventas WHERE cliente = \'Zoe\'"}')
    suggest = _Suggester(["Zoila"])
    outcome = sp.SqlGenerationLoop(
        LLMClient(llm), _Executor(lambda sql: pd.DataFrame(columns=["cliente"])), suggest, max_attempts=1
    ).run("ventas de Zoe", _schema())

    assert outcome.status == sp.STATUS_EMPTY
    assert outcome.attempts == 1
    assert suggest.questions == []
