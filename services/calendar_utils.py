# services/calendar_utils.py
"""Week arithmetic used to tag snapshots and deal files."""
from __future__ import annotations

import logging
import re
from datetime import date, datetime, timedelta
from typing import Iterable, Optional, Union

import pytz

from services.models import Deal, FileMeta, WeekRange
from services.normalizers import parse_timestamp

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Asia/Almaty"

_ISO_PREFIX = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")
_RU_PREFIX = re.compile(r"^(\d{2})\.(\d{2})\.(\d{4})")


def today(tz: Optional[str] = None) -> date:
    """Current date in the dashboard's timezone."""
    return datetime.now(pytz.timezone(tz or DEFAULT_TIMEZONE)).date()


def _as_date(value: Union[date, datetime, None], tz: Optional[str]) -> date:
    if value is None:
        return today(tz)
    if isinstance(value, datetime):
        return value.date()
    return value


def get_week_range(value: Union[date, datetime, None] = None, tz: Optional[str] = None) -> WeekRange:
    """
    Monday-to-Sunday week containing ``value`` (today if omitted).

    >>> get_week_range(date(2024, 3, 13)).to_dict()
    {'start': '2024-03-11', 'end': '2024-03-17', 'label': '11.03 - 17.03.2024'}
    """
    d = _as_date(value, tz)
    start = d - timedelta(days=d.weekday())
    end = start + timedelta(days=6)
    label = f"{start.day}.{start.month:02d} - {end.day}.{end.month:02d}.{end.year}"
    return WeekRange(start=start.isoformat(), end=end.isoformat(), label=label)


def iso_week(d: date) -> int:
    return d.isocalendar()[1]


def week_of_month(d: date) -> int:
    """1-based week of the month, weeks starting on Monday."""
    offset = d.replace(day=1).weekday()
    return (offset + d.day - 1) // 7 + 1


def parse_day(value) -> Optional[date]:
    """Best-effort calendar day of a stored date string."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value)
    try:
        m = _ISO_PREFIX.match(text)
        if m:
            return date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        m = _RU_PREFIX.match(text)
        if m:
            return date(int(m.group(3)), int(m.group(2)), int(m.group(1)))
    except ValueError:
        return None

    ts = parse_timestamp(text)
    return ts.date() if ts is not None else None


def calc_auto_meta(deals: Iterable[Deal], tz: Optional[str] = None) -> FileMeta:
    """
    Index metadata for a batch of deals, taken from the most recent
    modified (or, failing that, created) date in the batch.
    """
    best: Optional[date] = None
    for deal in deals or []:
        d = parse_day(deal.modified_at) or parse_day(deal.created_at)
        if d and (best is None or d > best):
            best = d

    if best is None:
        best = today(tz)
        logger.debug(f"No dates in batch, using today ({best}) for file metadata")

    return FileMeta(
        year=best.year,
        month=best.month,
        week_of_month=week_of_month(best),
        week_of_year=iso_week(best),
    )
