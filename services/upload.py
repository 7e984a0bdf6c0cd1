# services/upload.py
"""CSV import of deal and task exports."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from werkzeug.datastructures import FileStorage

from services import notifications
from services.calendar_utils import calc_auto_meta
from services.csv_parser import parse_csv_text
from services.data_store import DataStore, StoredFile
from services.exceptions import ImportValidationError
from services.merger import merge_deals, merge_tasks
from services.models import ImportInfo
from services.normalizers import normalize_deals, normalize_tasks
from services.notifications import Notification
from services.text_decoder import read_file_smart

logger = logging.getLogger(__name__)

MODE_REPLACE = "replace"
MODE_MERGE = "merge"
MODES = (MODE_REPLACE, MODE_MERGE)


@dataclass
class UploadResult:
    file: StoredFile
    imported: int
    info: Optional[ImportInfo]
    mode: str
    merged_into: Optional[str]
    notification: Notification

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file": self.file.to_dict(include_records=False),
            "imported": self.imported,
            "info": self.info.to_dict() if self.info else None,
            "mode": self.mode,
            "mergedInto": self.merged_into,
            "notification": self.notification.to_dict(),
        }


def _read_rows(upload: FileStorage):
    if upload is None or not upload.filename:
        raise ImportValidationError("Файл не выбран")
    text = read_file_smart(upload.read())
    rows = parse_csv_text(text)
    if not rows:
        raise ImportValidationError(f"Файл {upload.filename} пуст или не содержит строк данных")
    logger.info(f"Parsed {len(rows)} rows from {upload.filename}")
    return rows


def _check_mode(mode: str) -> str:
    mode = (mode or MODE_REPLACE).lower()
    if mode not in MODES:
        raise ImportValidationError(f"Неизвестный режим импорта: {mode}")
    return mode


def import_deals_csv(store: DataStore, upload: FileStorage, mode: str = MODE_REPLACE,
                     merge_into: Optional[str] = None, tz: Optional[str] = None) -> UploadResult:
    """
    Import a deals CSV export and store it as a new deal file.

    In merge mode the batch is merged into ``merge_into`` (or the latest deal
    file) by deal id before saving.

    :raises ImportValidationError: Empty file, no data rows, unknown mode or missing merge target.
    """
    mode = _check_mode(mode)
    normalized = normalize_deals(_read_rows(upload))
    deals = normalized.rows

    merged_into = None
    if mode == MODE_MERGE:
        base = store.get_deal_file(merge_into) if merge_into else store.get_latest_deal_file()
        if merge_into and base is None:
            raise ImportValidationError(f"Файл для объединения не найден: {merge_into}")
        if base is not None:
            deals = merge_deals(base.records, deals)
            merged_into = base.id
            logger.info(f"Merged {len(normalized.rows)} deals into file {base.id} -> {len(deals)}")

    meta = calc_auto_meta(deals, tz=tz)
    stored = store.save_deal_file(upload.filename, deals, meta)

    message = f"Импортировано {len(normalized.rows)} сделок ({meta.label()})"
    if normalized.info.ignored:
        message += f", без стадии или ответственного: {normalized.info.ignored}"
    note = notifications.success("Сделки загружены", message)

    return UploadResult(
        file=stored,
        imported=len(normalized.rows),
        info=normalized.info,
        mode=mode,
        merged_into=merged_into,
        notification=note,
    )


def import_tasks_csv(store: DataStore, upload: FileStorage, mode: str = MODE_REPLACE,
                     merge_into: Optional[str] = None) -> UploadResult:
    """Import a tasks CSV export and store it as a new task file."""
    mode = _check_mode(mode)
    imported = normalize_tasks(_read_rows(upload))
    tasks = imported

    merged_into = None
    if mode == MODE_MERGE:
        base = store.get_task_file(merge_into) if merge_into else store.get_latest_task_file()
        if merge_into and base is None:
            raise ImportValidationError(f"Файл для объединения не найден: {merge_into}")
        if base is not None:
            tasks = merge_tasks(base.records, imported)
            merged_into = base.id

    stored = store.save_task_file(upload.filename, tasks)
    note = notifications.success("Задачи загружены", f"Импортировано {len(imported)} задач")

    return UploadResult(
        file=stored,
        imported=len(imported),
        info=None,
        mode=mode,
        merged_into=merged_into,
        notification=note,
    )
