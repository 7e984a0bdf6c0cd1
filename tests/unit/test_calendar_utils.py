from datetime import date, datetime

import pytest

from services.calendar_utils import (
    calc_auto_meta,
    get_week_range,
    iso_week,
    parse_day,
    week_of_month,
)
from services.models import Deal, FileMeta


def test_week_range_for_wednesday():
    week = get_week_range(date(2024, 3, 13))

    assert week.start == "2024-03-11"
    assert week.end == "2024-03-17"
    assert week.label == "11.03 - 17.03.2024"
    start, end = date.fromisoformat(week.start), date.fromisoformat(week.end)
    assert start.weekday() == 0
    assert end.weekday() == 6
    assert (end - start).days == 6


def test_week_range_across_year_end():
    week = get_week_range(datetime(2025, 1, 1, 15, 30))
    assert week.start == "2024-12-30"
    assert week.end == "2025-01-05"
    assert week.label == "30.12 - 5.01.2025"


def test_week_range_defaults_to_today():
    week = get_week_range(tz="Asia/Almaty")
    assert date.fromisoformat(week.start).weekday() == 0


@pytest.mark.parametrize("d, expected", [
    (date(2024, 3, 1), 1),   # Friday, first partial week
    (date(2024, 3, 4), 2),
    (date(2024, 3, 13), 3),
    (date(2024, 4, 1), 1),   # Monday
    (date(2024, 4, 8), 2),
])
def test_week_of_month(d, expected):
    assert week_of_month(d) == expected


def test_iso_week():
    assert iso_week(date(2024, 3, 13)) == 11


@pytest.mark.parametrize("value, expected", [
    ("2024-03-11 10:15", date(2024, 3, 11)),
    ("11.03.2024", date(2024, 3, 11)),
    ("2024-03-11T23:00:00Z", date(2024, 3, 11)),
    ("", None),
    ("не дата", None),
])
def test_parse_day(value, expected):
    assert parse_day(value) == expected


def test_calc_auto_meta_uses_latest_date():
    deals = [
        Deal(modified_at="2024-03-11"),
        Deal(modified_at=None, created_at="2024-03-13 09:00"),
        Deal(modified_at="2024-02-01"),
    ]

    meta = calc_auto_meta(deals)

    assert meta == FileMeta(year=2024, month=3, week_of_month=3, week_of_year=11)
    assert meta.label() == "2024-W11 | Мар • нед. 3"


def test_calc_auto_meta_without_dates_uses_today():
    meta = calc_auto_meta([Deal()], tz="Asia/Almaty")
    assert meta.year is not None
    assert meta.week_of_year is not None


def test_label_without_week():
    assert FileMeta().label() == "неделя не задана"
