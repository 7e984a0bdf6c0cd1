import pytest

from services.constants import STAGE_ORDER
from services.csv_parser import parse_csv_text
from services.models import Deal
from services.normalizers import (
    canon_name,
    department_for,
    normalize_deal,
    normalize_deals,
    normalize_stage,
    normalize_tasks,
    pick_column,
    to_iso,
)


@pytest.mark.parametrize("raw", [
    "ткп отправлено",
    "ТКП ОТПРАВЛЕНО",
    "Договор подписан",
    "шм и пн",
    "new",
    "совсем другая стадия",
    "",
])
def test_normalize_stage_is_idempotent(raw):
    once = normalize_stage(raw)
    assert normalize_stage(once) == once


@pytest.mark.parametrize("stage", STAGE_ORDER)
def test_canonical_stages_map_to_themselves(stage):
    assert normalize_stage(stage) == stage


def test_normalize_stage_variants():
    assert normalize_stage("Отправлено ТКП") == "ТКП отправлено"
    assert normalize_stage("shipment") == "Отгружено"
    assert normalize_stage("Своя стадия") == "Своя стадия"
    assert normalize_stage(None) == ""


def test_canon_name_swapped_order():
    assert canon_name("Аманов Адиль") == "Адиль Аманов"
    assert canon_name("аманов адиль") == "Адиль Аманов"


def test_canon_name_collapses_whitespace():
    assert canon_name("  Адиль   Аманов ") == "Адиль Аманов"
    assert canon_name("Иван  Петров") == "Иван Петров"
    assert canon_name("") == ""


@pytest.mark.parametrize("value, expected", [
    ("01.03.2024 10:15", "2024-03-01 10:15"),
    ("31.12.2023 23:59:58", "2023-12-31 23:59:58"),
    ("11.03.2024", "2024-03-11"),
    ("2024-03-11T10:00:00+03:00", "2024-03-11 07:00:00"),
    ("2024-03-11", "2024-03-11 00:00:00"),
    ("не дата", "не дата"),
    ("", None),
    (None, None),
])
def test_to_iso(value, expected):
    assert to_iso(value) == expected


def test_department_for():
    assert department_for("Адиль Аманов") == "Эколос Алматы"
    assert department_for("Дмитрий Коваль") == "Ecolos Engineering"
    assert department_for("Иван Петров") == "—"


def test_pick_column_uses_source_order():
    columns = ["Название", "Ответственный менеджер", "Менеджер проекта"]
    assert pick_column(columns, ("ответственный", "менеджер")) == "Ответственный менеджер"
    assert pick_column(columns, ("статус",)) is None


def test_end_to_end_alias_mapping():
    rows = parse_csv_text(
        "Отдел;Сотрудник;Статус;Дата\n"
        "ОП;Аманов Адиль;ткп отправлено;01.03.2024\n"
        "МПО;Дмитрий Коваль;;02.03.2024\n"
        "ОП;;Новая;03.03.2024\n"
    )

    result = normalize_deals(rows)

    assert len(result.rows) == 3
    assert result.info.ignored == 2
    assert result.info.mapped["Ответственный"] == "Сотрудник"
    assert result.info.mapped["Стадия сделки"] == "Статус"
    assert result.info.mapped["ID сделки"] == "—"

    first, second, third = result.rows
    assert first.responsible == "Адиль Аманов"
    assert first.stage == "ТКП отправлено"
    assert first.department == "Эколос Алматы"
    assert first.extra == {"Дата": "01.03.2024"}
    assert second.department == "Ecolos Engineering"
    assert second.stage == ""
    assert third.responsible == ""
    assert third.department == "—"


def test_normalize_deals_defaults_and_dates(deals_csv):
    result = normalize_deals(parse_csv_text(deals_csv))

    deal = result.rows[0]
    assert deal.deal_id == "101"
    assert deal.title == "Насосная станция"
    assert deal.created_at == "2024-03-01 10:15"
    assert deal.modified_at == "2024-03-11"
    assert deal.amount == "1500000"
    assert deal.currency == "RUB"
    assert deal.company == "—"
    assert result.rows[1].responsible == "Дмитрий Коваль"
    assert result.info.ignored == 1


def test_unknown_columns_are_kept_in_extra():
    rows = parse_csv_text("ID;Ответственный;Стадия;Регион\n5;Адиль Аманов;Новая;Алматы\n")

    deal = normalize_deals(rows).rows[0]

    assert deal.extra == {"Регион": "Алматы"}
    assert deal.to_dict()["Регион"] == "Алматы"


def test_normalize_deals_empty():
    result = normalize_deals([])
    assert result.rows == []
    assert result.info.ignored == 0


def test_normalize_deal_recanonicalizes():
    deal = Deal(deal_id="7", stage="договор подписан", responsible="Коваль Дмитрий", created_at="02.03.2024")

    out = normalize_deal(deal)

    assert out.stage == "Договор подписан"
    assert out.responsible == "Дмитрий Коваль"
    assert out.department == "Ecolos Engineering"
    assert out.created_at == "2024-03-02"
    assert deal.stage == "договор подписан"


def test_normalize_tasks(tasks_csv):
    tasks = normalize_tasks(parse_csv_text(tasks_csv))

    assert [t.task_id for t in tasks] == ["1", "2"]
    assert tasks[0].title == "Подготовить ТКП"
    assert tasks[0].creator == "Адиль Аманов"
    assert tasks[0].assignee == "Дмитрий Коваль"
    assert tasks[0].status == "В работе"
    assert tasks[0].created_at == "01.03.2024"
    assert tasks[0].closed_at is None
