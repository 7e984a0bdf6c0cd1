import pytest

from services.schema_drift import (
    analyze_data_structure,
    auto_add_missing_columns,
    build_add_column_statement,
    detect_field_type,
    sanitize_column_name,
)


@pytest.mark.parametrize("value, expected", [
    (None, "TEXT"),
    (True, "BOOLEAN"),
    ("false", "BOOLEAN"),
    ("42", "INTEGER"),
    (-7, "INTEGER"),
    ("3000000000", "BIGINT"),
    ("12.50", "DECIMAL(15,2)"),
    ("2024-03-11", "DATE"),
    ("11.03.2024", "DATE"),
    ("2024-03-11T10:15:00+05:00", "TIMESTAMP WITH TIME ZONE"),
    ("Алматы", "VARCHAR(255)"),
    ("x" * 501, "TEXT"),
])
def test_detect_field_type(value, expected):
    assert detect_field_type(value) == expected


def test_invalid_calendar_date_is_plain_text():
    assert detect_field_type("2024-13-45") == "VARCHAR(255)"


def test_analysis_reports_only_unknown_fields():
    records = [
        {"bitrix_id": "1", "title": "A", "UF_REGION": "Алматы", "UF_NOTE": ""},
        {"bitrix_id": "2", "title": "B", "UF_REGION": "Астана", "_internal": "x", "raw_data": "{}"},
        {"bitrix_id": "3", "title": "C", "UF_REGION": None, "UF_NOTE": "важно"},
    ]

    analysis = analyze_data_structure(records, "deals")

    assert analysis.new_fields == ["UF_REGION", "UF_NOTE"]
    assert analysis.fill_rates["UF_REGION"] == pytest.approx(2 / 3)
    assert analysis.fill_rates["UF_NOTE"] == pytest.approx(1 / 3)
    assert analysis.field_types["UF_REGION"] == "VARCHAR(255)"
    assert analysis.important_fields == ["UF_REGION", "UF_NOTE"]


def test_field_filled_in_no_record_defaults_to_text():
    analysis = analyze_data_structure([{"UF_EMPTY": ""}, {"UF_EMPTY": None}], "tasks")

    assert analysis.field_types["UF_EMPTY"] == "TEXT"
    assert analysis.fill_rates["UF_EMPTY"] == 0
    assert analysis.important_fields == []
    assert analysis.suggestions == []


def test_mixed_numbers_widen_to_decimal():
    analysis = analyze_data_structure([{"UF_SUM": "10"}, {"UF_SUM": "10.5"}], "deals")
    assert analysis.field_types["UF_SUM"] == "DECIMAL(15,2)"


def test_suggestions_by_fill_rate():
    records = [{"UF_A": "x", "UF_B": "y" if i < 2 else ""} for i in range(10)]

    analysis = analyze_data_structure(records, "deals")

    assert analysis.suggestions[0].startswith('Важное поле: "UF_A" (VARCHAR(255))')
    assert analysis.suggestions[1].startswith('Возможно полезное: "UF_B"')
    assert "20%" in analysis.suggestions[1]


def test_empty_batch():
    analysis = analyze_data_structure([], "deals")
    assert analysis.new_fields == []
    assert analysis.to_dict()["table"] == "deals"


def test_unknown_table():
    with pytest.raises(ValueError):
        analyze_data_structure([{"a": 1}], "leads")


@pytest.mark.parametrize("name, expected", [
    ("UF_CRM_1589877847", "uf_crm_1589877847"),
    ("Дата оплаты", ""),
    ("Region Name!!", "region_name"),
    ("a--b", "a_b"),
])
def test_sanitize_column_name(name, expected):
    assert sanitize_column_name(name) == expected


def test_sanitize_caps_length():
    assert len(sanitize_column_name("x" * 100)) == 63


def test_add_column_statement():
    assert build_add_column_statement("deals", "uf_region", "TEXT") == \
        'ALTER TABLE deals ADD COLUMN IF NOT EXISTS "uf_region" TEXT;'
    assert build_add_column_statement("deals", "uf_region", "TEXT", if_not_exists=False) == \
        'ALTER TABLE deals ADD COLUMN "uf_region" TEXT;'


def test_dry_run_never_executes(mocker):
    execute = mocker.Mock()

    result = auto_add_missing_columns("deals", {"UF_REGION": "TEXT"}, execute=execute, dry_run=True)

    execute.assert_not_called()
    assert result.success
    assert result.added == ["uf_region"]
    assert result.sql == ['ALTER TABLE deals ADD COLUMN IF NOT EXISTS "uf_region" TEXT;']


def test_existing_columns_and_priority_filter(mocker):
    execute = mocker.Mock()

    result = auto_add_missing_columns(
        "tasks",
        {"UF_STATUS_EXTRA": "TEXT", "UF_COLOR": "TEXT", "UF_GROUP": "INTEGER"},
        execute=execute,
        dry_run=False,
        priority=["status", "group"],
        existing_columns=["uf_group"],
    )

    execute.assert_called_once_with('ALTER TABLE tasks ADD COLUMN IF NOT EXISTS "uf_status_extra" TEXT;')
    assert result.added == ["uf_status_extra"]


def test_failures_are_collected(mocker):
    execute = mocker.Mock(side_effect=[RuntimeError("locked"), None])

    result = auto_add_missing_columns(
        "deals", {"UF_A": "TEXT", "Поле": "TEXT", "UF_B": "TEXT"}, execute=execute, dry_run=False
    )

    assert not result.success
    assert result.added == ["uf_b"]
    assert result.errors == [
        "UF_A: требует ручного выполнения SQL",
        "Поле: пустое имя колонки после очистки",
    ]
