"""Fuzzy place/entity name suggestions for questions whose query came back empty."""
import logging
import re
from typing import List, Sequence

from langchain_community.utilities import SQLDatabase

from app.db_utils import fetch_dataframe, quote_identifier
from backend.services.runtime import log_event
from backend.services.schema_discovery import SchemaDescriptor

logger = logging.getLogger("entity_suggestions")

DEFAULT_SUGGESTION_COLUMNS = ("nombre Municipio", "Nombre Departamento")
MAX_SUGGESTIONS = 8

STOP_WORDS = {
    # es
    "cuanto", "cuánto", "cuanta", "cuánta", "cuantos", "cuántos", "cuantas", "cuántas",
    "cual", "cuál", "cuales", "cuáles", "donde", "dónde", "como", "cómo", "cuando", "cuándo",
    "para", "sobre", "entre", "desde", "hasta", "este", "esta", "estos", "estas", "todo",
    "todos", "todas", "total", "ventas", "venta", "vendimos", "vendido", "vendio", "vendió",
    "muestra", "muestrame", "muéstrame", "dame", "lista", "cada", "tiene", "tienen", "mayor",
    "menor", "mejor", "peor", "año", "años", "meses", "semana", "hubo", "fueron", "porque",
    # en
    "what", "which", "where", "when", "with", "from", "that", "this", "these", "those",
    "show", "list", "give", "many", "much", "sales", "sold", "each", "have",
    "year", "month", "week", "were", "there", "about", "top", "best", "worst",
}

_WORD_RE = re.compile(r"[0-9a-záéíóúñü]+", re.IGNORECASE)


def search_terms(question: str) -> List[str]:
    seen: List[str] = []
    for word in _WORD_RE.findall((question or "").lower()):
        if len(word) > 3 and word not in STOP_WORDS and word not in seen:
            seen.append(word)
    return seen


def find_similar_entities(
    db: SQLDatabase,
    schema: SchemaDescriptor,
    question: str,
    columns: Sequence[str] = DEFAULT_SUGGESTION_COLUMNS,
    limit: int = MAX_SUGGESTIONS,
) -> List[str]:
    """OR-of-LIKE search over the canonical place-name columns; [] on any failure."""
    try:
        terms = search_terms(question)
        main = schema.main
        if not terms or main is None:
            return []
        available = [c for c in columns if main.column(c) is not None]
        if not available:
            return []

        def quote(name: str) -> str:
            return quote_identifier(db, name)

        params = {}
        conditions = []
        for i, term in enumerate(terms):
            params[f"t{i}"] = f"%{term}%"
            conditions.extend(f"{quote(c)} LIKE :t{i}" for c in available)

        sql = (
            f"SELECT DISTINCT {quote(available[0])} AS l "
            f"FROM {main.ref.from_clause(quote, columns=available)} "
            f"WHERE {' OR '.join(conditions)} "
            f"LIMIT {int(limit)}"
        )
        df = fetch_dataframe(db, sql, params)
        found = [str(v) for v in df["l"].tolist() if v is not None] if not df.empty else []
        log_event(logger, logging.INFO, "entity_suggestions", terms=terms, found=len(found))
        return found
    except Exception as exc:
        log_event(logger, logging.WARNING, "entity_suggestions_failed", error=str(exc)[:300])
        return []
