"""
### SEGMENTATION ENGINE
RFM (recency / frequency / monetary) over a trailing window, scored 1-3 per
dimension by tercile and labelled by an ordered decision table.
"""
import logging
from datetime import date
from typing import Any, Callable, Dict, List, Tuple

import numpy as np
import pandas as pd
from langchain_community.utilities import SQLDatabase

from app.db_utils import QueryExecutionError, fetch_dataframe, quote_identifier
from backend.services.runtime import log_event
from backend.services.schema_discovery import SchemaDescriptor

logger = logging.getLogger("segmentation")

LOW_PERCENTILE = 0.33
HIGH_PERCENTILE = 0.67
MAX_CUSTOMERS_IN_PAYLOAD = 50
REQUIRED_TERMS = ("venta", "fecha", "cliente")
INSUFFICIENT_DATA = "insufficient data"
STORE_ERROR = "could not read the sales history"

# (label, predicate over (r, f, m)); first match wins, else "Other"
SEGMENT_RULES: Tuple[Tuple[str, Callable[[int, int, int], bool]], ...] = (
    ("Champions", lambda r, f, m: r == 3 and f == 3 and m == 3),
    ("Loyal",     lambda r, f, m: r >= 2 and f >= 2 and m >= 2),
    ("Potential", lambda r, f, m: r >= 2 and f <= 2 and m >= 2),
    ("At Risk",   lambda r, f, m: r <= 2 and f >= 2),
    ("Lost",      lambda r, f, m: r == 1),
)
FALLBACK_SEGMENT = "Other"


def label_segment(r: int, f: int, m: int) -> str:
    for label, predicate in SEGMENT_RULES:
        if predicate(r, f, m):
            return label
    return FALLBACK_SEGMENT


def score_recency(value: float, p33: float, p67: float) -> int:
    # fewer days since the last purchase is better
    if value <= p33:
        return 3
    if value <= p67:
        return 2
    return 1


def score_higher_better(value: float, p33: float, p67: float) -> int:
    if value >= p67:
        return 3
    if value >= p33:
        return 2
    return 1


def _terciles(values: pd.Series) -> Tuple[float, float]:
    low, high = np.quantile(values.astype(float).to_numpy(), [LOW_PERCENTILE, HIGH_PERCENTILE])
    return float(low), float(high)


def segment_customers(rfm: pd.DataFrame) -> Dict[str, Any]:
    """
    Score and label customers.

    ``rfm`` columns: customer, recency (days), frequency, monetary.
    """
    if rfm.empty:
        return {"success": False, "reason": "insufficient_data", "error": INSUFFICIENT_DATA, "total_customers": 0}

    r33, r67 = _terciles(rfm["recency"])
    f33, f67 = _terciles(rfm["frequency"])
    m33, m67 = _terciles(rfm["monetary"])

    customers: List[Dict[str, Any]] = []
    segments: Dict[str, Dict[str, Any]] = {}
    for row in rfm.itertuples(index=False):
        r = score_recency(float(row.recency), r33, r67)
        f = score_higher_better(float(row.frequency), f33, f67)
        m = score_higher_better(float(row.monetary), m33, m67)
        segment = label_segment(r, f, m)
        customers.append({
            "customer": row.customer,
            "recency": int(row.recency),
            "frequency": int(row.frequency),
            "monetary": round(float(row.monetary), 2),
            "r_score": r,
            "f_score": f,
            "m_score": m,
            "segment": segment,
        })
        bucket = segments.setdefault(segment, {"count": 0, "total_monetary": 0.0})
        bucket["count"] += 1
        bucket["total_monetary"] = round(bucket["total_monetary"] + float(row.monetary), 2)

    return {
        "success": True,
        "total_customers": len(customers),
        "segments": segments,
        "customers": customers[:MAX_CUSTOMERS_IN_PAYLOAD],
        "percentiles": {
            "recency": [r33, r67],
            "frequency": [f33, f67],
            "monetary": [m33, m67],
        },
    }


class SegmentationEngine:
    def __init__(self, db: SQLDatabase, window_months: int = 12, today: Callable[[], date] = date.today):
        self.db = db
        self.window_months = max(1, int(window_months))
        self._today = today

    def rfm_frame(self, schema: SchemaDescriptor) -> pd.DataFrame:
        terms = schema.business_terms
        sale, day, customer = terms["venta"], terms["fecha"], terms["cliente"]

        def q(name: str) -> str:
            return quote_identifier(self.db, name)

        today = pd.Timestamp(self._today())
        since = (today - pd.DateOffset(months=self.window_months)).date()
        sql = (
            f"SELECT {q(customer)} AS customer, MAX({q(day)}) AS last_purchase, "
            f"COUNT(DISTINCT {q(day)}) AS frequency, SUM({q(sale)}) AS monetary "
            f"FROM {schema.main.ref.from_clause(q, columns=[customer, day, sale])} "
            f"WHERE {q(day)} >= :since "
            f"GROUP BY {q(customer)} "
            f"HAVING SUM({q(sale)}) > 0"
        )
        df = fetch_dataframe(self.db, sql, {"since": since.isoformat()})
        if df.empty:
            return pd.DataFrame(columns=["customer", "recency", "frequency", "monetary"])

        last = pd.to_datetime(df["last_purchase"]).dt.normalize()
        return pd.DataFrame({
            "customer": df["customer"],
            "recency": (today.normalize() - last).dt.days.clip(lower=0),
            "frequency": pd.to_numeric(df["frequency"], errors="coerce").fillna(0),
            "monetary": pd.to_numeric(df["monetary"], errors="coerce").fillna(0.0),
        })

    def segment_rfm(self, tenant_id: str, schema: SchemaDescriptor) -> Dict[str, Any]:
        missing = [t for t in REQUIRED_TERMS if not schema.business_terms.get(t)]
        if missing or schema.main is None:
            return {
                "success": False,
                "reason": "missing_columns",
                "error": f"missing business terms: {', '.join(missing) or 'main table'}",
            }

        try:
            rfm = self.rfm_frame(schema)
        except QueryExecutionError as exc:
            log_event(logger, logging.ERROR, "segmentation_query_failed", error=str(exc)[:300])
            return {"success": False, "reason": "store_error", "error": STORE_ERROR}

        result = segment_customers(rfm)
        log_event(
            logger,
            logging.INFO,
            "segmentation_done",
            success=result["success"],
            customers=result["total_customers"],
            segments={k: v["count"] for k, v in result.get("segments", {}).items()},
        )
        return result
