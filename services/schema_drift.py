# services/schema_drift.py
"""
Schema drift analysis for stored deals and tasks.

Before a batch is saved its field names are compared to the table's base
columns. Unknown fields get a storage type inferred from sampled values and
a fill rate, and the well-filled ones are suggested for promotion to real
columns. Nothing here changes a schema unless a caller explicitly passes an
executor to :func:`auto_add_missing_columns`.
"""
from __future__ import annotations

import logging
import re
from decimal import Decimal
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from services.normalizers import parse_timestamp

logger = logging.getLogger(__name__)

BASE_FIELDS = {
    "deals": (
        "id", "bitrix_id", "title", "stage_id", "stage_name", "amount", "currency",
        "assigned_by_id", "assigned_by_name", "contact_id", "contact_name",
        "company_id", "company_name", "date_create", "date_modify", "date_begin",
        "date_close", "department", "probability", "source_id", "type_id",
        "comments", "raw_data", "created_at", "updated_at",
    ),
    "tasks": (
        "id", "bitrix_id", "title", "status", "status_name", "priority",
        "priority_name", "created_by", "created_by_name", "responsible_id",
        "responsible_name", "date_create", "date_close", "description",
        "raw_data", "created_at", "updated_at",
    ),
}

PRIORITY_KEYWORDS = {
    "deals": ("сумма", "amount", "стадия", "stage", "ответственный", "assigned", "дата", "date"),
    "tasks": ("статус", "status", "приоритет", "priority", "исполнитель", "responsible",
              "группа", "group", "проект", "project"),
}

IMPORTANT_FILL_RATE = 0.3
USEFUL_FILL_RATE = 0.1
LONG_TEXT_LENGTH = 500
SAMPLE_SIZE = 100

INT32_MIN = -2147483648
INT32_MAX = 2147483647

_NUMBER = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$|^\d{2}\.\d{2}\.\d{4}$")
_TIMESTAMP_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}|^\d{2}\.\d{2}\.\d{4}")


@dataclass
class SchemaAnalysis:
    table: str
    new_fields: List[str] = field(default_factory=list)
    field_types: Dict[str, str] = field(default_factory=dict)
    fill_rates: Dict[str, float] = field(default_factory=dict)
    suggestions: List[str] = field(default_factory=list)

    @property
    def important_fields(self) -> List[str]:
        return [f for f in self.new_fields if self.fill_rates.get(f, 0) > IMPORTANT_FILL_RATE]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "newFields": list(self.new_fields),
            "fieldTypes": dict(self.field_types),
            "fillRates": dict(self.fill_rates),
            "suggestions": list(self.suggestions),
        }


@dataclass
class ColumnChangeResult:
    success: bool
    added: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    sql: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "added": list(self.added),
            "errors": list(self.errors),
            "sql": list(self.sql),
        }


def _is_empty(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip()) or value in ([], {})


def detect_field_type(value) -> str:
    """
    Storage type for a single value.

    Checks run in a fixed order: numeric, date, boolean, then text by length.
    """
    if value is None:
        return "TEXT"
    if isinstance(value, bool):
        return "BOOLEAN"

    text = str(value).strip()

    if _NUMBER.match(text):
        if "." in text:
            return "DECIMAL(15,2)"
        number = int(Decimal(text))
        if INT32_MIN <= number <= INT32_MAX:
            return "INTEGER"
        return "BIGINT"

    if _DATE_ONLY.match(text):
        if parse_timestamp(_ru_to_iso(text) if text[2:3] == "." else text) is not None:
            return "DATE"
    elif _TIMESTAMP_PREFIX.match(text):
        if parse_timestamp(_ru_to_iso(text) if text[2:3] == "." else text) is not None:
            return "TIMESTAMP WITH TIME ZONE"

    if text.lower() in ("true", "false"):
        return "BOOLEAN"

    if len(text) > LONG_TEXT_LENGTH:
        return "TEXT"
    return "VARCHAR(255)"


def _ru_to_iso(text: str) -> str:
    return f"{text[6:10]}-{text[3:5]}-{text[0:2]}{text[10:]}"


_NUMERIC_RANK = {"INTEGER": 0, "BIGINT": 1, "DECIMAL(15,2)": 2}


def _widen(types: Iterable[str]) -> str:
    """Single type able to hold every sampled value."""
    distinct = list(dict.fromkeys(types))
    if not distinct:
        return "TEXT"
    if len(distinct) == 1:
        return distinct[0]
    if all(t in _NUMERIC_RANK for t in distinct):
        return max(distinct, key=_NUMERIC_RANK.get)
    if set(distinct) <= {"DATE", "TIMESTAMP WITH TIME ZONE"}:
        return "TIMESTAMP WITH TIME ZONE"
    return "TEXT" if "TEXT" in distinct else "VARCHAR(255)"


def analyze_data_structure(records: Sequence[Dict[str, Any]], table: str) -> SchemaAnalysis:
    """
    Diff a batch of row dicts against the base columns of ``table``.

    :param records: Rows as they would be stored (column name -> value).
    :param table: "deals" or "tasks".
    """
    if table not in BASE_FIELDS:
        raise ValueError(f"Unknown table: {table}")

    analysis = SchemaAnalysis(table=table)
    records = list(records or [])
    if not records:
        return analysis

    base = set(BASE_FIELDS[table])
    seen: Dict[str, None] = {}
    for record in records:
        for key in record.keys():
            seen.setdefault(key, None)

    analysis.new_fields = [
        name for name in seen
        if name not in base and not name.startswith("_") and name != "raw_data"
    ]

    total = len(records)
    for name in analysis.new_fields:
        filled = [r[name] for r in records if name in r and not _is_empty(r[name])]
        analysis.fill_rates[name] = len(filled) / total
        analysis.field_types[name] = _widen(detect_field_type(v) for v in filled[:SAMPLE_SIZE]) if filled else "TEXT"

    analysis.suggestions = generate_field_suggestions(analysis)
    if analysis.new_fields:
        logger.info(f"{table}: {len(analysis.new_fields)} fields outside the base schema")
    return analysis


def generate_field_suggestions(analysis: SchemaAnalysis) -> List[str]:
    suggestions = []
    for name in analysis.new_fields:
        rate = analysis.fill_rates.get(name, 0)
        percent = round(rate * 100)
        ftype = analysis.field_types.get(name, "TEXT")
        if rate > IMPORTANT_FILL_RATE:
            suggestions.append(f'Важное поле: "{name}" ({ftype}) - заполнено в {percent}% записей')
        elif rate > USEFUL_FILL_RATE:
            suggestions.append(f'Возможно полезное: "{name}" ({ftype}) - заполнено в {percent}% записей')
    return suggestions


def sanitize_column_name(name: str) -> str:
    """Lowercase ASCII identifier, at most 63 characters."""
    out = re.sub(r"[^a-z0-9_]", "_", str(name).lower())
    out = re.sub(r"_{2,}", "_", out)
    out = out.strip("_")
    return out[:63]


def build_add_column_statement(table: str, column: str, column_type: str, if_not_exists: bool = True) -> str:
    clause = "ADD COLUMN IF NOT EXISTS" if if_not_exists else "ADD COLUMN"
    return f'ALTER TABLE {table} {clause} "{column}" {column_type};'


def auto_add_missing_columns(
        table: str,
        fields: Dict[str, str],
        execute: Optional[Callable[[str], Any]] = None,
        dry_run: bool = True,
        priority: Optional[Sequence[str]] = None,
        existing_columns: Optional[Iterable[str]] = None,
        if_not_exists: bool = True) -> ColumnChangeResult:
    """
    Emit (and optionally run) additive column statements for new fields.

    :param table: Target table name.
    :param fields: Field name -> inferred type, usually ``SchemaAnalysis.field_types``.
    :param execute: Callable that runs one SQL statement; required unless dry_run.
    :param dry_run: Only build the statements.
    :param priority: Keep only fields whose name contains one of these keywords.
    :param existing_columns: Columns to skip (for engines without IF NOT EXISTS).
    :param if_not_exists: Include the IF NOT EXISTS clause.
    :return: ColumnChangeResult; failures are collected, never raised.
    """
    added: List[str] = []
    errors: List[str] = []
    statements: List[str] = []
    existing = {c.lower() for c in (existing_columns or [])}

    items = list(fields.items())
    if priority:
        keywords = [p.lower() for p in priority]
        items = [(name, t) for name, t in items if any(k in name.lower() for k in keywords)]

    for name, column_type in items:
        column = sanitize_column_name(name)
        if not column:
            errors.append(f"{name}: пустое имя колонки после очистки")
            continue
        if column in existing:
            continue

        sql = build_add_column_statement(table, column, column_type, if_not_exists=if_not_exists)
        statements.append(sql)

        if dry_run or execute is None:
            logger.info(f"[DRY RUN] Would add {table}.{column} ({column_type})")
            added.append(column)
            continue

        try:
            execute(sql)
        except Exception as e:
            logger.warning(f"Could not add column {table}.{column}, run manually: {sql} ({e})")
            errors.append(f"{name}: требует ручного выполнения SQL")
            continue
        logger.info(f"Added column {table}.{column} ({column_type})")
        existing.add(column)
        added.append(column)

    return ColumnChangeResult(success=not errors, added=added, errors=errors, sql=statements)
