"""
### SCHEMA DISCOVERY
Catalog introspection -> normalized schema description.

- enumerates base tables (backup/old/tmp copies skipped) ordered by row count
- classifies every column with an ordered list of (role, predicate) rules
- folds year-sharded tables (2023, 2024, ...) into one virtual union table
- maps business concepts (venta, producto, cliente, marca, fecha) to main-table columns
"""
from __future__ import annotations

import copy
import json
import logging
import re
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import sqlalchemy
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from langchain_community.utilities import SQLDatabase

from app.db_utils import quote_identifier
from backend.services.runtime import log_event
from backend.services.store_tables import metadata as store_metadata

logger = logging.getLogger("schema_discovery")

EXCLUDED_TABLE_MARKERS = ("backup", "old", "_bak", "_tmp")
YEAR_TABLE_RE = re.compile(r"^20[2-9][0-9]$")
VIRTUAL_TABLE_PREFIX = "ventas_union_"

ROLE_IDENTIFIER = "identifier"
ROLE_DATE = "date"
ROLE_MONETARY = "metric_monetary"
ROLE_QUANTITY = "metric_quantity"
ROLE_CATEGORY = "category"
ROLE_COORDINATE = "coordinate"
ROLE_LABEL = "label"
ROLE_UNKNOWN = "unknown"

METRIC_ROLES = (ROLE_MONETARY, ROLE_QUANTITY)
CATEGORY_ROLES = (ROLE_CATEGORY, ROLE_LABEL)


class SchemaDiscoveryError(Exception):
    """Raised when the store catalog cannot be read."""
    pass


# ---------------------------------------------------------------------------
# Column role rules
# ---------------------------------------------------------------------------
IDENTIFIER_TOKENS = {"id", "codigo", "código", "code", "cod", "sku", "uuid"}
DATE_TOKENS = {"fecha", "date", "año", "anio", "mes", "year", "month", "periodo", "dia", "day"}
DATE_TYPES = ("date", "timestamp")
MONEY_MARKERS = ("venta", "sale", "precio", "price", "monto", "amount", "total", "costo", "cost", "net", "$")
MONEY_TYPES = ("decimal", "float", "double", "numeric", "real", "money")
QUANTITY_MARKERS = ("cantidad", "quantity", "qty", "unidades", "units", "cajas", "boxes")
QUANTITY_TYPES = ("int", "decimal", "numeric")
CATEGORY_MARKERS = (
    "nombre", "name", "tipo", "type", "categoria", "category", "marca", "brand",
    "estado", "status", "producto", "cliente", "municipio", "departamento",
    "ciudad", "city", "region", "pais", "country", "canal", "channel",
)
COORDINATE_TOKENS = {"latitud", "latitude", "longitud", "longitude", "lat", "lng", "lon"}
LABEL_TYPES = {"varchar", "char", "text", "tinytext", "mediumtext", "longtext", "nvarchar", "string"}


@dataclass(frozen=True)
class ColumnFacts:
    """Everything role inference is allowed to look at."""
    name:           str
    tokens:         Tuple[str, ...]
    data_type:      str
    is_primary_key: bool

    @classmethod
    def of(cls, name: str, data_type: str, is_primary_key: bool = False) -> "ColumnFacts":
        return cls(
            name=(name or "").lower(),
            tokens=name_tokens(name),
            data_type=base_type(data_type),
            is_primary_key=bool(is_primary_key),
        )


def name_tokens(name: str) -> Tuple[str, ...]:
    """Split snake_case, camelCase and spaced names into lowercase tokens."""
    spaced = re.sub(r"([a-záéíóúñ0-9])([A-ZÁÉÍÓÚÑ])", r"\1 \2", name or "")
    spaced = re.sub(r"([A-ZÁÉÍÓÚÑ]+)([A-ZÁÉÍÓÚÑ][a-záéíóúñ])", r"\1 \2", spaced)
    return tuple(t for t in re.split(r"[^0-9a-záéíóúñü$]+", spaced.lower()) if t)


def base_type(declared: str) -> str:
    """'DECIMAL(12, 2)' -> 'decimal', 'int unsigned' -> 'int'."""
    raw = (declared or "").strip().lower()
    return re.split(r"[\s(]", raw, maxsplit=1)[0] if raw else ""


def _has_marker(facts: ColumnFacts, markers: Sequence[str]) -> bool:
    return any(m in facts.name for m in markers)


def _has_token(facts: ColumnFacts, tokens: set) -> bool:
    return any(t in tokens for t in facts.tokens)


def _type_is(facts: ColumnFacts, kinds: Sequence[str]) -> bool:
    return any(k in facts.data_type for k in kinds)


def _is_identifier(f: ColumnFacts) -> bool:
    if f.is_primary_key or _has_token(f, IDENTIFIER_TOKENS):
        return True
    return any(t.startswith(("codigo", "código")) for t in f.tokens)


def _is_date(f: ColumnFacts) -> bool:
    if _type_is(f, DATE_TYPES):
        return True
    return _has_token(f, DATE_TOKENS) or any(t.startswith(("fecha", "date")) for t in f.tokens)


def _is_monetary(f: ColumnFacts) -> bool:
    return _has_marker(f, MONEY_MARKERS) and _type_is(f, MONEY_TYPES)


def _is_quantity(f: ColumnFacts) -> bool:
    return _has_marker(f, QUANTITY_MARKERS) and _type_is(f, QUANTITY_TYPES)


def _is_category(f: ColumnFacts) -> bool:
    return _has_marker(f, CATEGORY_MARKERS)


def _is_coordinate(f: ColumnFacts) -> bool:
    return _has_token(f, COORDINATE_TOKENS)


def _is_label(f: ColumnFacts) -> bool:
    return f.data_type in LABEL_TYPES


# Evaluated top to bottom; the first predicate that holds decides the role.
ROLE_RULES: Tuple[Tuple[str, Callable[[ColumnFacts], bool]], ...] = (
    (ROLE_IDENTIFIER, _is_identifier),
    (ROLE_DATE,       _is_date),
    (ROLE_MONETARY,   _is_monetary),
    (ROLE_QUANTITY,   _is_quantity),
    (ROLE_CATEGORY,   _is_category),
    (ROLE_COORDINATE, _is_coordinate),
    (ROLE_LABEL,      _is_label),
)

SUGGESTED_AGGREGATION: Dict[str, Optional[str]] = {
    ROLE_MONETARY:   "SUM",
    ROLE_QUANTITY:   "SUM",
    ROLE_CATEGORY:   "GROUP BY",
    ROLE_LABEL:      "GROUP BY",
    ROLE_DATE:       "WHERE",
    ROLE_IDENTIFIER: "WHERE",
}


def classify_column(name: str, data_type: str, is_primary_key: bool = False) -> str:
    facts = ColumnFacts.of(name, data_type, is_primary_key)
    for role, predicate in ROLE_RULES:
        if predicate(facts):
            return role
    return ROLE_UNKNOWN


# ---------------------------------------------------------------------------
# Descriptors
# ---------------------------------------------------------------------------
@dataclass
class ColumnDescriptor:
    name:                  str
    data_type:             str
    full_type:             str
    nullable:              bool          = True
    is_primary_key:        bool          = False
    role:                  str           = ROLE_UNKNOWN
    suggested_aggregation: Optional[str] = None

    @classmethod
    def build(cls, name: str, full_type: str, nullable: bool = True, is_primary_key: bool = False) -> "ColumnDescriptor":
        role = classify_column(name, full_type, is_primary_key)
        return cls(
            name=name,
            data_type=base_type(full_type),
            full_type=full_type,
            nullable=bool(nullable),
            is_primary_key=bool(is_primary_key),
            role=role,
            suggested_aggregation=SUGGESTED_AGGREGATION.get(role),
        )


@dataclass(frozen=True)
class TableRef:
    """A table as it appears in a FROM clause: a concrete name, or a union of year tables."""
    name:     str
    union_of: Tuple[str, ...] = ()

    @property
    def is_virtual(self) -> bool:
        return bool(self.union_of)

    def union_sql(self, quote: Callable[[str], str], columns: Optional[Sequence[str]] = None) -> str:
        projection = ", ".join(quote(c) for c in columns) if columns else "*"
        return " UNION ALL ".join(f"SELECT {projection} FROM {quote(t)}" for t in self.union_of)

    def from_clause(self, quote: Callable[[str], str], columns: Optional[Sequence[str]] = None) -> str:
        if not self.union_of:
            return quote(self.name)
        return f"({self.union_sql(quote, columns)}) AS {quote(self.name)}"


@dataclass
class TableDescriptor:
    name:          str
    row_count:     int
    columns:       List[ColumnDescriptor] = field(default_factory=list)
    is_virtual:    bool                   = False
    virtual_sql:   Optional[str]          = None
    source_tables: List[str]              = field(default_factory=list)
    description:   Optional[str]          = None

    @property
    def metrics(self) -> List[ColumnDescriptor]:
        return [c for c in self.columns if c.role in METRIC_ROLES]

    @property
    def categories(self) -> List[ColumnDescriptor]:
        return [c for c in self.columns if c.role in CATEGORY_ROLES]

    @property
    def dates(self) -> List[ColumnDescriptor]:
        return [c for c in self.columns if c.role == ROLE_DATE]

    @property
    def ref(self) -> TableRef:
        return TableRef(self.name, tuple(self.source_tables) if self.is_virtual else ())

    def column(self, name: str) -> Optional[ColumnDescriptor]:
        return next((c for c in self.columns if c.name == name), None)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TableDescriptor":
        return cls(
            name=data["name"],
            row_count=int(data.get("row_count") or 0),
            columns=[ColumnDescriptor(**c) for c in data.get("columns", [])],
            is_virtual=bool(data.get("is_virtual")),
            virtual_sql=data.get("virtual_sql"),
            source_tables=list(data.get("source_tables") or []),
            description=data.get("description"),
        )


@dataclass
class SchemaDescriptor:
    database_name:  str
    discovered_at:  str
    tables:         List[TableDescriptor] = field(default_factory=list)
    main_table:     Optional[str]         = None
    business_terms: Dict[str, str]        = field(default_factory=dict)

    def table(self, name: Optional[str]) -> Optional[TableDescriptor]:
        return next((t for t in self.tables if t.name == name), None)

    @property
    def main(self) -> Optional[TableDescriptor]:
        return self.table(self.main_table)

    @property
    def virtual_tables(self) -> List[TableDescriptor]:
        return [t for t in self.tables if t.is_virtual]

    @property
    def column_count(self) -> int:
        return sum(len(t.columns) for t in self.tables)

    @property
    def row_count(self) -> int:
        return sum(t.row_count for t in self.tables if not t.is_virtual)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SchemaDescriptor":
        return cls(
            database_name=data.get("database_name") or "",
            discovered_at=data.get("discovered_at") or "",
            tables=[TableDescriptor.from_dict(t) for t in data.get("tables", [])],
            main_table=data.get("main_table"),
            business_terms=dict(data.get("business_terms") or {}),
        )

    @classmethod
    def from_json(cls, raw: str) -> "SchemaDescriptor":
        return cls.from_dict(json.loads(raw))


# ---------------------------------------------------------------------------
# Schema assembly (pure)
# ---------------------------------------------------------------------------
def is_excluded_table(name: str) -> bool:
    low = (name or "").lower()
    # the chatbot's own bookkeeping tables may live in the sales store
    if low in {t.lower() for t in store_metadata.tables}:
        return True
    return any(marker in low for marker in EXCLUDED_TABLE_MARKERS)


def _contains(name: str, markers: Sequence[str]) -> bool:
    low = name.lower()
    return any(m in low for m in markers)


def derive_business_terms(table: TableDescriptor) -> Dict[str, str]:
    """Pick one concrete main-table column per business concept."""
    terms: Dict[str, str] = {}

    sales = [c for c in table.metrics if c.role == ROLE_MONETARY and _contains(c.name, ("venta", "sale"))]
    if sales:
        # net amounts (venta_neta, ventas_netas, net_sales) beat gross ones
        terms["venta"] = next((c.name for c in sales if "net" in c.name.lower()), sales[0].name)

    products = [c for c in table.categories if _contains(c.name, ("producto", "product"))]
    if products:
        terms["producto"] = next((c.name for c in products if _contains(c.name, ("nombre", "name"))), products[0].name)

    customer = next((c for c in table.categories if _contains(c.name, ("cliente", "customer", "client"))), None)
    if customer is not None:
        terms["cliente"] = customer.name

    brand = next((c for c in table.categories if _contains(c.name, ("marca", "brand"))), None)
    if brand is not None:
        terms["marca"] = brand.name

    dates = table.dates
    if dates:
        exact = next(
            (c for c in dates if _contains(c.name, ("fecha", "date")) and not _contains(c.name, ("año", "year"))),
            None,
        )
        terms["fecha"] = (exact or dates[0]).name

    return terms


def _virtual_union(year_tables: List[TableDescriptor], quote: Callable[[str], str]) -> TableDescriptor:
    # year_tables arrive in row-count order; the largest one supplies the column layout
    template = year_tables[0]
    years = sorted(t.name for t in year_tables)
    name = f"{VIRTUAL_TABLE_PREFIX}{years[0]}_{years[-1]}"
    ref = TableRef(name, tuple(years))
    return TableDescriptor(
        name=name,
        row_count=sum(t.row_count for t in year_tables),
        columns=copy.deepcopy(template.columns),
        is_virtual=True,
        virtual_sql=ref.union_sql(quote),
        source_tables=years,
        description=f"Union of yearly tables {', '.join(years)}",
    )


def build_schema(
    tables: List[TableDescriptor],
    database_name: str,
    quote: Callable[[str], str],
    discovered_at: Optional[str] = None,
) -> SchemaDescriptor:
    """Assemble a SchemaDescriptor from classified tables ordered by row count (desc)."""
    ordered = list(tables)
    year_tables = [t for t in ordered if YEAR_TABLE_RE.match(t.name)]
    main_table: Optional[TableDescriptor] = ordered[0] if ordered else None
    if len(year_tables) >= 2:
        main_table = _virtual_union(year_tables, quote)
        ordered.insert(0, main_table)

    return SchemaDescriptor(
        database_name=database_name,
        discovered_at=discovered_at or datetime.now(timezone.utc).isoformat(),
        tables=ordered,
        main_table=main_table.name if main_table else None,
        business_terms=derive_business_terms(main_table) if main_table else {},
    )


# ---------------------------------------------------------------------------
# Catalog readers
# ---------------------------------------------------------------------------
_MYSQL_TABLES_SQL = """
SELECT TABLE_NAME, COALESCE(TABLE_ROWS, 0) AS TABLE_ROWS
FROM INFORMATION_SCHEMA.TABLES
WHERE TABLE_SCHEMA = DATABASE() AND TABLE_TYPE = 'BASE TABLE'
ORDER BY TABLE_ROWS DESC, TABLE_NAME
"""

_MYSQL_COLUMNS_SQL = """
SELECT TABLE_NAME, COLUMN_NAME, COLUMN_TYPE, IS_NULLABLE, COLUMN_KEY
FROM INFORMATION_SCHEMA.COLUMNS
WHERE TABLE_SCHEMA = DATABASE()
ORDER BY TABLE_NAME, ORDINAL_POSITION
"""


class SchemaDiscovery:
    """Reads the store catalog and produces a SchemaDescriptor."""

    def __init__(self, db: SQLDatabase, database_name: str = ""):
        self.db = db
        self.database_name = database_name

    def _quote(self, name: str) -> str:
        return quote_identifier(self.db, name)

    def discover(self) -> SchemaDescriptor:
        started = time.perf_counter()
        try:
            if self.db.dialect == "mysql":
                tables = self._read_information_schema()
            else:
                tables = self._read_with_inspector()
        except SQLAlchemyError as exc:
            log_event(logger, logging.ERROR, "schema_discovery_failed", error=str(exc)[:300])
            raise SchemaDiscoveryError(f"Schema discovery failed: {exc}") from exc

        schema = build_schema(tables, self.database_name, self._quote)
        log_event(
            logger,
            logging.INFO,
            "schema_discovered",
            tables=len(schema.tables),
            columns=schema.column_count,
            main_table=schema.main_table,
            virtual_tables=len(schema.virtual_tables),
            business_terms=schema.business_terms,
            elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return schema

    def _read_information_schema(self) -> List[TableDescriptor]:
        # Bulk catalog queries: two round trips regardless of table count.
        with self.db._engine.connect() as conn:
            table_rows = conn.execute(text(_MYSQL_TABLES_SQL)).fetchall()
            column_rows = conn.execute(text(_MYSQL_COLUMNS_SQL)).fetchall()

        columns_by_table: Dict[str, List[ColumnDescriptor]] = {}
        for table_name, column_name, column_type, is_nullable, column_key in column_rows:
            columns_by_table.setdefault(table_name, []).append(
                ColumnDescriptor.build(
                    column_name,
                    str(column_type),
                    nullable=str(is_nullable).upper() == "YES",
                    is_primary_key=str(column_key).upper() == "PRI",
                )
            )

        return [
            TableDescriptor(name=name, row_count=int(rows or 0), columns=columns_by_table.get(name, []))
            for name, rows in table_rows
            if not is_excluded_table(name)
        ]

    def _read_with_inspector(self) -> List[TableDescriptor]:
        inspector = sqlalchemy.inspect(self.db._engine)
        tables: List[TableDescriptor] = []
        with self.db._engine.connect() as conn:
            for name in inspector.get_table_names():
                if is_excluded_table(name):
                    continue
                pk = set(inspector.get_pk_constraint(name).get("constrained_columns") or [])
                columns = [
                    ColumnDescriptor.build(
                        col["name"],
                        str(col.get("type", "")),
                        nullable=bool(col.get("nullable", True)),
                        is_primary_key=col["name"] in pk,
                    )
                    for col in inspector.get_columns(name)
                ]
                row_count = conn.execute(text(f"SELECT COUNT(*) FROM {self._quote(name)}")).scalar() or 0
                tables.append(TableDescriptor(name=name, row_count=int(row_count), columns=columns))
        tables.sort(key=lambda t: t.row_count, reverse=True)
        return tables
