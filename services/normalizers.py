# services/normalizers.py
"""
Canonicalization of imported CRM rows.

Source columns are matched to canonical fields through substring alias
lists, stage and person names are folded onto the known vocabularies, and
dates are rewritten as ``YYYY-MM-DD[ HH:MM[:SS]]``. Anything that cannot be
recognized passes through unchanged so unexpected values stay visible.
"""
from __future__ import annotations

import logging
import re
import warnings
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

from services.constants import (
    CANON_STAGES,
    DEAL_COLUMN_ALIASES,
    DEAL_FALLBACK_KEYS,
    DEAL_LABELS,
    DEFAULT_AMOUNT,
    DEFAULT_CURRENCY,
    DEPT_BY_PERSON,
    KNOWN_PEOPLE,
    TASK_COLUMN_ALIASES,
    TASK_LABELS,
    UNKNOWN,
)
from services.models import Deal, ImportInfo, NormalizedDeals, Task

logger = logging.getLogger(__name__)

_NON_ALNUM = re.compile(r"[\W_]+", re.UNICODE)
_WHITESPACE = re.compile(r"\s+")
_RU_DATE = re.compile(r"^(\d{2})\.(\d{2})\.(\d{4})(?:\s+(\d{2}):(\d{2})(?::(\d{2}))?)?")


def norm_key(value) -> str:
    """Lowercase and keep letters and digits only."""
    return _NON_ALNUM.sub("", str(value or "").lower())


def normalize_stage(raw) -> str:
    """Map a stage spelling variant onto its canonical label; unknown text is returned as-is."""
    if raw is None:
        return ""
    return CANON_STAGES.get(norm_key(raw), raw)


def canon_name(raw) -> str:
    """
    Fold a person's name onto the known-people list.

    Handles "Last First" as well as "First Last". Names that match nobody are
    returned with whitespace collapsed.
    """
    if not raw:
        return ""

    cleaned = _WHITESPACE.sub(" ", str(raw)).strip()
    if cleaned in KNOWN_PEOPLE:
        return cleaned

    parts = cleaned.lower().split()
    if len(parts) == 2:
        for person in KNOWN_PEOPLE:
            known = person.lower().split(" ")
            if len(known) != 2:
                continue
            if parts == known or parts == known[::-1]:
                return person

    return cleaned


def parse_timestamp(value: str) -> Optional[pd.Timestamp]:
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        try:
            ts = pd.to_datetime(value, errors="coerce")
        except (ValueError, TypeError, OverflowError):
            return None
    if ts is None or pd.isna(ts):
        return None
    if ts.tzinfo is not None:
        ts = ts.tz_convert("UTC")
    return ts


def to_iso(value) -> Optional[str]:
    """
    Rewrite a date string as ``YYYY-MM-DD[ HH:MM[:SS]]``.

    ``DD.MM.YYYY`` (with optional time) is rearranged textually; anything
    else goes through pandas and comes back as ``YYYY-MM-DD HH:MM:SS`` in
    UTC. Empty values become None, unparseable strings are returned as-is.
    """
    if value is None or value == "":
        return None
    text = str(value)

    m = _RU_DATE.match(text)
    if m:
        day, month, year, hh, mm, ss = m.groups()
        out = f"{year}-{month}-{day}"
        if hh:
            out += f" {hh}:{mm}"
            if ss:
                out += f":{ss}"
        return out

    ts = parse_timestamp(text)
    if ts is None:
        return text
    return ts.strftime("%Y-%m-%d %H:%M:%S")


def department_for(name: str) -> str:
    return DEPT_BY_PERSON.get(name, UNKNOWN)


def _norm_column(name: str) -> str:
    return _WHITESPACE.sub(" ", str(name or "").lower()).strip()


def pick_column(columns: Iterable[str], aliases: Sequence[str]) -> Optional[str]:
    """
    Return the first column (in source order) whose normalized name contains any alias.
    """
    for column in columns:
        normalized = _norm_column(column)
        if any(alias in normalized for alias in aliases):
            return column
    return None


def _resolve_columns(columns: List[str], alias_table) -> Dict[str, Optional[str]]:
    return {key: pick_column(columns, aliases) for key, aliases in alias_table}


def _lookup(row: Dict[str, str], column: Optional[str], fallbacks: Tuple[str, ...]):
    """Value of the matched column, else the first fallback key present in the row."""
    if column is not None and column in row:
        return row[column]
    for key in fallbacks:
        if key in row and row[key] is not None:
            return row[key]
    return None


def _first_filled(row: Dict[str, str], column: Optional[str], fallbacks: Tuple[str, ...]):
    """Like _lookup, but empty strings fall through to the next candidate."""
    candidates = ([column] if column else []) + list(fallbacks)
    for key in candidates:
        value = row.get(key)
        if value:
            return value
    return None


def normalize_deals(rows: List[Dict[str, str]]) -> NormalizedDeals:
    """
    Map parsed CSV rows onto canonical deals.

    Every row is kept; ``info.ignored`` counts rows whose stage or responsible
    person came out empty. Source columns that feed no canonical field are
    preserved in ``Deal.extra``.
    """
    if not rows:
        return NormalizedDeals(rows=[], info=ImportInfo(mapped={}, ignored=0))

    columns = list(rows[0].keys())
    chosen = _resolve_columns(columns, DEAL_COLUMN_ALIASES)

    consumed = {c for c in chosen.values() if c}
    consumed.update(DEAL_LABELS.values())
    for keys in DEAL_FALLBACK_KEYS.values():
        consumed.update(keys)

    ignored = 0
    out: List[Deal] = []
    for row in rows:
        stage = normalize_stage(_lookup(row, chosen["stage"], DEAL_FALLBACK_KEYS["stage"]) or "")
        responsible = canon_name(
            (_lookup(row, chosen["responsible"], DEAL_FALLBACK_KEYS["responsible"]) or "").strip()
        )
        if not responsible or not stage:
            ignored += 1

        deal = Deal(
            deal_id=_first_filled(row, chosen["dealId"], DEAL_FALLBACK_KEYS["dealId"]) or None,
            title=row.get("Название") or UNKNOWN,
            responsible=responsible,
            stage=stage,
            created_at=to_iso(_first_filled(row, chosen["createdAt"], DEAL_FALLBACK_KEYS["createdAt"])),
            modified_at=to_iso(_first_filled(row, chosen["modifiedAt"], DEAL_FALLBACK_KEYS["modifiedAt"])),
            department=department_for(responsible),
            amount=row.get("Сумма") or DEFAULT_AMOUNT,
            currency=row.get("Валюта") or DEFAULT_CURRENCY,
            company=row.get("Компания") or UNKNOWN,
            contact=row.get("Контакт") or UNKNOWN,
            comments=row.get("Комментарии") or UNKNOWN,
            begin_date=to_iso(row.get("Дата начала")),
            close_date=to_iso(row.get("Дата закрытия")),
            deal_type=row.get("Тип") or "",
            probability=row.get("Вероятность") or "",
            source=row.get("Источник") or "",
            extra={k: v for k, v in row.items() if k not in consumed},
        )
        out.append(deal)

    mapped = {DEAL_LABELS[key]: (column or UNKNOWN) for key, column in chosen.items()}
    logger.info(f"Normalized {len(out)} deals, {ignored} without stage or responsible. Columns: {mapped}")
    return NormalizedDeals(rows=out, info=ImportInfo(mapped=mapped, ignored=ignored))


def normalize_deal(deal: Deal) -> Deal:
    """Re-canonicalize an already shaped deal (stage, responsible, dates, department)."""
    responsible = canon_name((deal.responsible or "").strip())
    return replace(
        deal,
        stage=normalize_stage(deal.stage or ""),
        responsible=responsible,
        created_at=to_iso(deal.created_at),
        modified_at=to_iso(deal.modified_at),
        department=department_for(responsible),
    )


def normalize_tasks(rows: List[Dict[str, str]]) -> List[Task]:
    """Map parsed CSV rows onto tasks. Values are kept as exported."""
    if not rows:
        return []

    columns = list(rows[0].keys())
    chosen = _resolve_columns(columns, TASK_COLUMN_ALIASES)

    consumed = {c for c in chosen.values() if c}
    consumed.update(TASK_LABELS.values())

    def value(row, key):
        return _first_filled(row, chosen.get(key), (TASK_LABELS[key],)) or ""

    out = []
    for row in rows:
        out.append(Task(
            task_id=value(row, "id") or None,
            title=value(row, "title"),
            creator=value(row, "creator"),
            assignee=value(row, "assignee"),
            status=value(row, "status"),
            priority=row.get(TASK_LABELS["priority"]) or "",
            created_at=value(row, "createdAt") or None,
            closed_at=value(row, "closedAt") or None,
            description=row.get(TASK_LABELS["description"]) or "",
            extra={k: v for k, v in row.items() if k not in consumed},
        ))

    logger.info(f"Normalized {len(out)} tasks. Columns: {chosen}")
    return out
