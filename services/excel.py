# services/excel.py
"""Excel exports of deal/task lists and comparisons."""
import logging
from datetime import datetime
from io import BytesIO
from typing import Any, Dict, Iterable, List, Optional, Sequence

import pandas as pd
from openpyxl.utils import get_column_letter

from services.constants import DEAL_LABELS, TASK_LABELS
from services.differ import DealComparison, TaskComparison, sorted_by_magnitude

logger = logging.getLogger(__name__)

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

# Excel refuses sheet titles longer than this.
MAX_SHEET_TITLE = 31
MAX_COLUMN_WIDTH = 60


def _as_row(record) -> Dict[str, Any]:
    if hasattr(record, "to_display_dict"):
        return record.to_display_dict()
    return dict(record)


def _autosize(worksheet):
    for idx, column in enumerate(worksheet.iter_cols(values_only=True), start=1):
        longest = max((len(str(v)) for v in column if v is not None), default=0)
        worksheet.column_dimensions[get_column_letter(idx)].width = min(longest + 2, MAX_COLUMN_WIDTH)


def _write_frame(writer, df: pd.DataFrame, sheet_name: str):
    title = sheet_name[:MAX_SHEET_TITLE]
    df.to_excel(writer, index=False, sheet_name=title)
    _autosize(writer.sheets[title])


def records_to_workbook(records: Iterable[Any], columns: Optional[Sequence[str]] = None,
                        sheet_name: str = "Сделки") -> BytesIO:
    """
    Write deals or tasks (or plain dicts) to a one-sheet workbook.

    Records are keyed by their Russian display labels; ``columns`` picks and
    orders the columns, by default every canonical label followed by any
    extra fields in first-seen order.
    """
    rows = [_as_row(r) for r in records]
    if columns is None:
        seen = []
        for label in list(DEAL_LABELS.values()) + list(TASK_LABELS.values()):
            if any(label in row for row in rows) and label not in seen:
                seen.append(label)
        for row in rows:
            for key in row:
                if key not in seen:
                    seen.append(key)
        columns = seen

    df = pd.DataFrame(rows, columns=list(columns))
    output = BytesIO()
    with pd.ExcelWriter(output, engine="openpyxl") as writer:
        _write_frame(writer, df, sheet_name)
    output.seek(0)
    logger.info(f"Exported {len(rows)} rows to sheet {sheet_name!r}")
    return output


def _delta_frame(deltas: Dict[str, int], label: str) -> pd.DataFrame:
    return pd.DataFrame(sorted_by_magnitude(deltas), columns=[label, "Изменение"])


def _comparison_sheets(comparison) -> List[tuple]:
    if isinstance(comparison, DealComparison):
        sheets = [
            ("Стадии", _delta_frame(comparison.stage_changes, "Стадия")),
            ("Отделы", _delta_frame(comparison.department_changes, "Отдел")),
            ("Ответственные", _delta_frame(comparison.assignee_changes, "Ответственный")),
            ("Переходы", pd.DataFrame(
                [
                    [t.deal_id, t.old_stage, t.new_stage, t.responsible, t.department]
                    for t in comparison.stage_transitions
                ],
                columns=["ID сделки", "Было", "Стало", "Ответственный", "Отдел"],
            )),
            ("Новые сделки", pd.DataFrame([_as_row(d) for d in comparison.new_deals])),
            ("Удалённые сделки", pd.DataFrame([_as_row(d) for d in comparison.removed_deals])),
        ]
    elif isinstance(comparison, TaskComparison):
        sheets = [
            ("Статусы", _delta_frame(comparison.status_changes, "Статус")),
            ("Исполнители", _delta_frame(comparison.assignee_changes, "Исполнитель")),
            ("Постановщики", _delta_frame(comparison.creator_changes, "Постановщик")),
            ("Новые задачи", pd.DataFrame([_as_row(t) for t in comparison.new_tasks])),
            ("Удалённые задачи", pd.DataFrame([_as_row(t) for t in comparison.removed_tasks])),
        ]
    else:
        raise TypeError(f"Unsupported comparison type: {type(comparison).__name__}")
    return sheets


def comparison_to_workbook(comparison) -> BytesIO:
    """
    Write a deal or task comparison, one sheet per category plus the
    transitions. Empty sheets are skipped; a fully empty comparison yields a
    single "Нет данных" sheet so the file is still valid.
    """
    sheets = [(name, df) for name, df in _comparison_sheets(comparison) if not df.empty]

    summary = pd.DataFrame(
        [["Общее изменение", comparison.total_change],
         ["Сформировано", datetime.now().strftime("%Y-%m-%d %H:%M:%S")]],
        columns=["Показатель", "Значение"],
    )

    output = BytesIO()
    with pd.ExcelWriter(output, engine="openpyxl") as writer:
        _write_frame(writer, summary, "Итого")
        if not sheets:
            _write_frame(writer, pd.DataFrame([["Нет данных"]], columns=["Сообщение"]), "Нет данных")
        for name, df in sheets:
            _write_frame(writer, df, name)
    output.seek(0)
    return output
