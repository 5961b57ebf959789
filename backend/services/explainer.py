"""Result metrics and natural-language answers."""
import json
import logging
from datetime import date
from typing import Any, Dict, List, Optional

import pandas as pd
from langchain_core.prompts import PromptTemplate

from app.db_utils import rows_from_df
from backend.services.llm import LLMClient

logger = logging.getLogger("explainer")

PROMPT_MAX_ROWS = 10

NARRATIVE_PROMPT = PromptTemplate.from_template(
    """You are a sales analyst talking to a business user. Answer the question using the query results below.

Question: {question}

Query Results (first {row_limit} rows of {row_count}):
{results}

Column metrics (total / average / max / min):
{metrics}

{suggestions}{error}
Instructions:
- Answer in the same language as the question.
- Give a direct, specific answer using the ACTUAL numbers from the results.
- Mention the top 3-5 entries by name and their values if it's a ranking.
- Keep it concise (2-5 sentences). No SQL, no technical jargon.
- If there are no results or an error is reported, apologise briefly, say what could not be found and suggest how to rephrase (use the similar values if any).

Answer:"""
)


def compute_metrics(df: Optional[pd.DataFrame]) -> Dict[str, Dict[str, float]]:
    """total/average/max/min for every column whose first value is numeric."""
    if df is None or df.empty:
        return {}
    metrics: Dict[str, Dict[str, float]] = {}
    first = df.iloc[0]
    for column in df.columns:
        value = first[column]
        series = df[column]
        if isinstance(value, (bool, date)) or pd.api.types.is_bool_dtype(series) or pd.api.types.is_datetime64_any_dtype(series):
            continue
        if pd.isna(pd.to_numeric(pd.Series([value], dtype=object), errors="coerce").iloc[0]):
            continue
        values = pd.to_numeric(df[column], errors="coerce").fillna(0.0).astype(float)
        metrics[str(column)] = {
            "total": round(float(values.sum()), 2),
            "average": round(float(values.mean()), 2),
            "max": round(float(values.max()), 2),
            "min": round(float(values.min()), 2),
        }
    return metrics


def build_narrative_prompt(
    question: str,
    df: Optional[pd.DataFrame],
    metrics: Dict[str, Any],
    suggestions: List[str],
    error: Optional[str] = None,
) -> str:
    rows = rows_from_df(df.head(PROMPT_MAX_ROWS)) if df is not None else []
    return NARRATIVE_PROMPT.format(
        question=question,
        row_limit=PROMPT_MAX_ROWS,
        row_count=0 if df is None else len(df),
        results=json.dumps(rows, ensure_ascii=False, default=str) if rows else "No results found.",
        metrics=json.dumps(metrics, ensure_ascii=False) if metrics else "none",
        suggestions=f"Similar values found in the data: {', '.join(suggestions)}\n" if suggestions else "",
        error=f"The query could not run: {error}\n" if error else "",
    )


class ResultExplainer:
    def __init__(self, llm: LLMClient):
        self.llm = llm

    def explain(
        self,
        question: str,
        df: Optional[pd.DataFrame],
        metrics: Dict[str, Any],
        suggestions: List[str],
        error: Optional[str] = None,
    ) -> str:
        prompt = build_narrative_prompt(question, df, metrics, suggestions, error)
        return self.llm.generate(prompt).strip()


# ---------------------------------------------------------------------------
# Canned answers (no LLM round-trip)
# ---------------------------------------------------------------------------
UNINTERPRETABLE_ANSWER = (
    "I could not turn that question into a query. Try naming the metric, the period "
    "and the product or place you are interested in."
)


def _money(value: float) -> str:
    return f"{value:,.2f}"


def forecast_answer(result: Dict[str, Any]) -> str:
    if not result.get("success"):
        if result.get("reason") == "store_error":
            return "I could not read the sales history right now, so there is no forecast. Please try again later."
        periods = result.get("historical_periods")
        if periods is not None:
            return (
                f"There is not enough sales history to forecast yet: I found {periods} month(s) "
                f"and need at least 3. Try a broader product or a longer period."
            )
        return "I could not find a sales amount and date in this database to build a forecast."
    interval = result["confidence_interval"]
    subject = f" for '{result['product']}'" if result.get("product") else ""
    return (
        f"Projected sales{subject} for {result.get('target_period', 'the next period')}: "
        f"{_money(result['prediction'])} (likely range {_money(interval['min'])} to {_money(interval['max'])}). "
        f"Based on a linear trend over {result['historical_periods']} months; "
        f"fit quality R² = {result['confidence_score']:.2f}."
    )


def segmentation_answer(result: Dict[str, Any]) -> str:
    if not result.get("success"):
        reason = result.get("reason")
        if reason == "store_error":
            return "I could not read the sales history right now, so there is no segmentation. Please try again later."
        if reason == "insufficient_data":
            return "No customer purchases were found in the last 12 months, so there is nothing to segment."
        return (
            "Customer segmentation needs a customer, a sale amount and a date column; "
            "this database does not expose all three."
        )
    total = result["total_customers"]
    ranked = sorted(result["segments"].items(), key=lambda kv: kv[1]["count"], reverse=True)
    parts = [f"{name}: {info['count']} ({_money(info['total_monetary'])})" for name, info in ranked]
    return f"Segmented {total} customers by recency, frequency and spend. " + "; ".join(parts) + "."
