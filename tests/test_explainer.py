import sys
from datetime import date
from decimal import Decimal
from pathlib import Path

import pandas as pd

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from conftest import DummyLLM
from backend.services.explainer import (
    ResultExplainer,
    build_narrative_prompt,
    compute_metrics,
    forecast_answer,
    segmentation_answer,
)
from backend.services.forecast import forecast_series
from backend.services.llm import LLMClient


def test_compute_metrics_only_for_numeric_columns():
    df = pd.DataFrame({
        "marca": ["A", "B", "C"],
        "total": [Decimal("10.5"), Decimal("20"), Decimal("30")],
        "unidades": [1, 2, 3],
        "activo": [True, False, True],
        "fecha": [date(2025, 1, 1), date(2025, 2, 1), date(2025, 3, 1)],
    })

    metrics = compute_metrics(df)

    assert set(metrics) == {"total", "unidades"}
    assert metrics["total"] == {"total": 60.5, "average": 20.17, "max": 30.0, "min": 10.5}
    assert metrics["unidades"] == {"total": 6.0, "average": 2.0, "max": 3.0, "min": 1.0}


def test_compute_metrics_empty():
    assert compute_metrics(None) == {}
    assert compute_metrics(pd.DataFrame(columns=["total"])) == {}


def test_narrative_prompt_limits_rows_and_mentions_suggestions():
    df = pd.DataFrame({"cliente": [f"c{i}" for i in range(15)], "total": range(15)})
    prompt = build_narrative_prompt("ventas por cliente", df, {"total": {"total": 105}}, ["Bogotá"])

    assert "first 10 rows of 15" in prompt
    assert '"c9"' in prompt
    assert '"c10"' not in prompt
    assert "Similar values found in the data: Bogotá" in prompt


def test_narrative_prompt_without_rows_reports_error():
    prompt = build_narrative_prompt("ventas", None, {}, [], error="Unknown column 'x'")
    assert "No results found." in prompt
    assert "The query could not run: Unknown column 'x'" in prompt


def test_result_explainer_uses_single_turn_generation():
    llm = DummyLLM("  Ana vendió 210.  ")
    answer = ResultExplainer(LLMClient(llm)).explain("ventas de Ana", pd.DataFrame({"total": [210]}), {}, [])

    assert answer == "Ana vendió 210."
    assert isinstance(llm.prompts[0], str)


def test_forecast_answer_texts():
    ok = dict(forecast_series([100, 110, 120]), target_period="2025-04", product="whisky")
    text = forecast_answer(ok)
    assert "for 'whisky'" in text
    assert "2025-04" in text
    assert "130.00" in text

    assert "at least 3" in forecast_answer({"success": False, "error": "insufficient data", "historical_periods": 2})
    assert "could not find" in forecast_answer({"success": False, "error": "no columns"})
    assert "try again later" in forecast_answer({"success": False, "reason": "store_error", "error": "x"})


def test_segmentation_answer_texts():
    result = {
        "success": True,
        "total_customers": 3,
        "segments": {
            "Champions": {"count": 1, "total_monetary": 2000.0},
            "Lost": {"count": 2, "total_monetary": 90.0},
        },
    }
    text = segmentation_answer(result)
    assert text.startswith("Segmented 3 customers")
    assert text.index("Lost") < text.index("Champions")

    assert "nothing to segment" in segmentation_answer({"success": False, "reason": "insufficient_data", "total_customers": 0})
    assert "customer" in segmentation_answer({"success": False, "reason": "missing_columns"})
    assert "try again later" in segmentation_answer({"success": False, "reason": "store_error", "error": "x"})
