"""Keyword intent routing: sql | prediction | segmentation | churn."""
import re
from typing import Any, Dict, Optional, Sequence, Tuple

INTENT_SQL = "sql"
INTENT_PREDICTION = "prediction"
INTENT_SEGMENTATION = "segmentation"
INTENT_CHURN = "churn"

PREDICTION_KEYWORDS = (
    "venderemos", "venderé", "proyecta", "proyección", "predice", "predicción",
    "estima", "estimación", "próximo", "futuro", "será", "pasará",
    "will sell", "forecast", "predict", "estimate", "next month", "next year",
)
SEGMENTATION_KEYWORDS = (
    "segmenta", "segmentación", "rfm", "clientes frecuentes", "mejores clientes",
    "segment", "segmentation", "best customers", "top customers",
)
CHURN_KEYWORDS = (
    "churn", "abandonar", "dejarán", "riesgo", "inactivos",
    "will leave", "at risk", "inactive",
)

# Checked in order; the first list with a hit decides.
INTENT_RULES: Tuple[Tuple[str, Sequence[str]], ...] = (
    (INTENT_PREDICTION, PREDICTION_KEYWORDS),
    (INTENT_SEGMENTATION, SEGMENTATION_KEYWORDS),
    (INTENT_CHURN, CHURN_KEYWORDS),
)

_HORIZON_RE = re.compile(r"(\d+)\s*(mes|meses|month|months)\b", re.IGNORECASE)
_PRODUCT_RE = re.compile(r"\bde\s+([a-záéíóúñ\s]+?)(?:\s+en|\s+para|$)", re.IGNORECASE)


def detect_intention(question: str) -> str:
    low = (question or "").lower()
    for intent, keywords in INTENT_RULES:
        if any(k in low for k in keywords):
            return intent
    return INTENT_SQL


def _extract_product(question: str) -> Optional[str]:
    text = (question or "").strip().rstrip("?!.¿¡ ")
    m = _PRODUCT_RE.search(text)
    if not m:
        return None
    product = m.group(1).strip()
    return product or None


def extract_parameters(question: str, intent: str) -> Dict[str, Any]:
    """Heuristic parameters for non-sql intents; the product fragment is not checked against data."""
    if intent != INTENT_PREDICTION:
        return {}
    m = _HORIZON_RE.search(question or "")
    months = max(1, int(m.group(1))) if m else 1
    return {"horizon_months": months, "product": _extract_product(question)}
