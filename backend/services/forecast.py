"""
### FORECAST ENGINE
Monthly sales series -> straight-line trend projection.

Model: ordinary least squares over the period index 0..n-1, projected to
index n + horizon - 1. The band is prediction +/- 1.96 * sample std of the
history (normal approximation, not a residual band), floored at zero.
"""
import json
import logging
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from langchain_community.utilities import SQLDatabase
from sqlalchemy.engine import Engine

from app.db_utils import QueryExecutionError, fetch_dataframe, quote_identifier
from backend.services.runtime import log_event
from backend.services.schema_cache import utcnow
from backend.services.schema_discovery import ROLE_MONETARY, SchemaDescriptor
from backend.services.store_tables import forecast_records_table

logger = logging.getLogger("forecast")

FORECAST_MODEL = "linear_regression"
FORECAST_TYPE = "sales_forecast"
MIN_PERIODS = 3
Z_95 = 1.96
INSUFFICIENT_DATA = "insufficient data"
STORE_ERROR = "could not read the sales history"

# Year-month bucket per dialect
PERIOD_EXPRESSIONS = {
    "mysql": "DATE_FORMAT({col}, '%Y-%m')",
    "sqlite": "strftime('%Y-%m', {col})",
    "postgresql": "to_char({col}, 'YYYY-MM')",
}


def r_squared(y: np.ndarray, fitted: np.ndarray) -> float:
    ss_res = float(np.sum((y - fitted) ** 2))
    ss_tot = float(np.sum((y - y.mean()) ** 2))
    if ss_tot == 0:
        return 1.0 if ss_res == 0 else 0.0
    return 1.0 - ss_res / ss_tot


def forecast_series(values: Sequence[float], horizon_months: int = 1) -> Dict[str, Any]:
    """Fit the trend on ``values`` and project ``horizon_months`` past the last period."""
    y = np.asarray([float(v) for v in values], dtype=float)
    n = len(y)
    if n < MIN_PERIODS:
        return {"success": False, "reason": "insufficient_data", "error": INSUFFICIENT_DATA, "historical_periods": n}

    horizon = max(1, int(horizon_months))
    x = np.arange(n, dtype=float)
    slope, intercept = np.polyfit(x, y, 1)
    fitted = slope * x + intercept
    prediction = float(slope * (n + horizon - 1) + intercept)
    margin = Z_95 * float(np.std(y, ddof=1))

    return {
        "success": True,
        "prediction": round(prediction, 2),
        "confidence_interval": {
            "min": round(max(0.0, prediction - margin), 2),
            "max": round(prediction + margin, 2),
        },
        "confidence_score": round(r_squared(y, fitted), 4),
        "historical_periods": n,
        "horizon_months": horizon,
        "trend_per_month": round(float(slope), 2),
        "model": FORECAST_MODEL,
    }


class ForecastRecorder:
    """Append-only audit log of produced forecasts."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def append(
        self,
        tenant_id: str,
        input_params: Dict[str, Any],
        result: Dict[str, Any],
        prediction_type: str = FORECAST_TYPE,
        model_name: str = FORECAST_MODEL,
    ) -> None:
        values = {
            "tenant_id": tenant_id,
            "prediction_type": prediction_type,
            "input_params": json.dumps(input_params, ensure_ascii=False, default=str),
            "result": json.dumps(result, ensure_ascii=False, default=str),
            "confidence_score": result.get("confidence_score"),
            "model_name": model_name,
            "created_at": utcnow(),
        }
        try:
            with self.engine.begin() as conn:
                conn.execute(forecast_records_table.insert().values(**values))
        except Exception as exc:
            log_event(logger, logging.WARNING, "forecast_record_failed", error=str(exc)[:300])


class ForecastEngine:
    def __init__(
        self,
        db: SQLDatabase,
        recorder: Optional[ForecastRecorder] = None,
        window_months: int = 24,
        today: Callable[[], date] = date.today,
    ):
        self.db = db
        self.recorder = recorder
        self.window_months = max(MIN_PERIODS, int(window_months))
        self._today = today

    def _quote(self, name: str) -> str:
        return quote_identifier(self.db, name)

    def _amount_column(self, schema: SchemaDescriptor) -> Optional[str]:
        amount = schema.business_terms.get("venta")
        if amount:
            return amount
        main = schema.main
        monetary = [c.name for c in main.metrics if c.role == ROLE_MONETARY] if main else []
        return monetary[0] if monetary else None

    def monthly_series(self, schema: SchemaDescriptor, product: Optional[str] = None) -> pd.DataFrame:
        main = schema.main
        amount = self._amount_column(schema)
        date_col = schema.business_terms.get("fecha")
        if main is None or not amount or not date_col:
            raise LookupError("no sales amount or date column in the main table")

        product_col = schema.business_terms.get("producto") if product else None
        columns: List[str] = [date_col, amount] + ([product_col] if product_col else [])
        q = self._quote
        period = PERIOD_EXPRESSIONS.get(self.db.dialect, PERIOD_EXPRESSIONS["mysql"]).format(col=q(date_col))

        since = (pd.Timestamp(self._today()) - pd.DateOffset(months=self.window_months)).date()
        params: Dict[str, Any] = {"since": since.isoformat()}
        where = [f"{q(date_col)} >= :since"]
        if product_col:
            where.append(f"{q(product_col)} LIKE :product")
            params["product"] = f"%{product}%"

        sql = (
            f"SELECT {period} AS month_key, SUM({q(amount)}) AS total "
            f"FROM {main.ref.from_clause(q, columns=columns)} "
            f"WHERE {' AND '.join(where)} "
            f"GROUP BY month_key ORDER BY month_key"
        )
        df = fetch_dataframe(self.db, sql, params)
        if not df.empty:
            df["total"] = pd.to_numeric(df["total"], errors="coerce").fillna(0.0).astype(float)
        return df

    def predict_sales(self, tenant_id: str, schema: SchemaDescriptor, params: Dict[str, Any]) -> Dict[str, Any]:
        horizon = max(1, int(params.get("horizon_months") or 1))
        product = params.get("product")
        try:
            series = self.monthly_series(schema, product)
        except LookupError as exc:
            return {"success": False, "reason": "missing_columns", "error": str(exc)}
        except QueryExecutionError as exc:
            log_event(logger, logging.ERROR, "forecast_query_failed", error=str(exc)[:300])
            return {"success": False, "reason": "store_error", "error": STORE_ERROR}

        result = forecast_series(series["total"].tolist() if not series.empty else [], horizon)
        if result["success"]:
            last = pd.Period(str(series["month_key"].iloc[-1]), freq="M")
            result["target_period"] = str(last + horizon)
            result["history"] = [
                {"period": str(k), "total": round(float(v), 2)}
                for k, v in zip(series["month_key"], series["total"])
            ]
            result["product"] = product
            if self.recorder is not None:
                self.recorder.append(
                    tenant_id,
                    {"horizon_months": horizon, "product": product},
                    {k: result[k] for k in ("prediction", "confidence_interval", "confidence_score", "historical_periods")},
                )

        log_event(
            logger,
            logging.INFO,
            "forecast_done",
            success=result["success"],
            periods=result.get("historical_periods"),
            horizon=horizon,
            product=product,
            confidence=result.get("confidence_score"),
        )
        return result
