# services/data_store.py
"""
Persistence of deals and tasks in SQLite.

Two shapes are kept:

* ``deals`` / ``tasks`` tables: one row per record, upserted on ``bitrix_id``,
  with the commonly queried fields as columns and the full record as JSON
  in ``raw_data``.
* ``deal_files`` / ``task_files``: named uploads (a CSV import or a Bitrix
  pull) stored whole, which the merge and compare screens work from.
"""
from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from services.database import DatabaseError, DatabaseManager
from services.models import Deal, FileMeta, Task
from services.schema_drift import (
    BASE_FIELDS,
    ColumnChangeResult,
    SchemaAnalysis,
    analyze_data_structure,
    auto_add_missing_columns,
    sanitize_column_name,
)

logger = logging.getLogger(__name__)

CONTENT_KEY_PREFIX = "sha1:"


@dataclass
class StoreResult:
    success: bool
    count: int = 0
    error: Optional[str] = None
    analysis: Optional[SchemaAnalysis] = None
    added_columns: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "count": self.count,
            "error": self.error,
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "addedColumns": list(self.added_columns),
        }


@dataclass
class StoredFile:
    id: str
    name: str
    uploaded_at: str
    records: List[Any]
    meta: Optional[FileMeta] = None

    def to_dict(self, include_records: bool = True) -> Dict[str, Any]:
        out = {
            "id": self.id,
            "name": self.name,
            "uploaded": self.uploaded_at,
            "count": len(self.records),
        }
        if self.meta is not None:
            out["meta"] = self.meta.to_dict()
            out["label"] = self.meta.label()
        if include_records:
            out["rows"] = [r.to_dict() for r in self.records]
        return out


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _scalar(value):
    if value is None or isinstance(value, (str, int, float)):
        return value
    return json.dumps(value, ensure_ascii=False)


def _sqlite_type(column_type: str) -> str:
    # Dates stay TEXT: connections use PARSE_DECLTYPES.
    if column_type.startswith(("DATE", "TIMESTAMP")):
        return "TEXT"
    return column_type


def stable_key(record) -> str:
    """Record id, or a content hash for records that have none."""
    if record.key:
        return record.key
    payload = json.dumps(record.to_dict(), sort_keys=True, ensure_ascii=False, default=str)
    return CONTENT_KEY_PREFIX + hashlib.sha1(payload.encode("utf-8")).hexdigest()


def deal_to_row(deal: Deal) -> Dict[str, Any]:
    extra = deal.extra
    return {
        "bitrix_id": stable_key(deal),
        "title": deal.title,
        "stage_id": _scalar(extra.get("STAGE_ID")),
        "stage_name": deal.stage,
        "amount": _scalar(deal.amount),
        "currency": deal.currency,
        "assigned_by_id": _scalar(extra.get("ASSIGNED_BY_ID")),
        "assigned_by_name": deal.responsible,
        "contact_id": _scalar(extra.get("CONTACT_ID")),
        "contact_name": deal.contact,
        "company_id": _scalar(extra.get("COMPANY_ID")),
        "company_name": deal.company,
        "date_create": deal.created_at,
        "date_modify": deal.modified_at,
        "date_begin": deal.begin_date,
        "date_close": deal.close_date,
        "department": deal.department,
        "probability": _scalar(deal.probability),
        "source_id": _scalar(extra.get("SOURCE_ID")) or deal.source,
        "type_id": _scalar(extra.get("TYPE_ID")) or deal.deal_type,
        "comments": deal.comments,
        "raw_data": json.dumps(deal.to_dict(), ensure_ascii=False, default=str),
        "updated_at": _now(),
    }


def task_to_row(task: Task) -> Dict[str, Any]:
    extra = task.extra
    return {
        "bitrix_id": stable_key(task),
        "title": task.title,
        "status": _scalar(extra.get("STATUS") or extra.get("status")),
        "status_name": task.status,
        "priority": _scalar(extra.get("PRIORITY") or extra.get("priority")),
        "priority_name": task.priority,
        "created_by": _scalar(extra.get("CREATED_BY") or extra.get("createdBy")),
        "created_by_name": task.creator,
        "responsible_id": _scalar(extra.get("RESPONSIBLE_ID") or extra.get("responsibleId")),
        "responsible_name": task.assignee,
        "date_create": task.created_at,
        "date_close": task.closed_at,
        "description": task.description,
        "raw_data": json.dumps(task.to_dict(), ensure_ascii=False, default=str),
        "updated_at": _now(),
    }


def row_to_deal(row) -> Deal:
    """Rebuild a deal from raw_data with the stored columns laid on top."""
    deal = Deal.from_dict(json.loads(row["raw_data"] or "{}"))
    bitrix_id = row["bitrix_id"]
    deal.deal_id = None if str(bitrix_id).startswith(CONTENT_KEY_PREFIX) else bitrix_id
    deal.title = row["title"] or deal.title
    deal.stage = row["stage_name"] or ""
    deal.responsible = row["assigned_by_name"] or ""
    deal.created_at = row["date_create"]
    deal.modified_at = row["date_modify"]
    deal.department = row["department"] or deal.department
    deal.amount = row["amount"] or deal.amount
    deal.currency = row["currency"] or deal.currency
    deal.company = row["company_name"] or deal.company
    deal.contact = row["contact_name"] or deal.contact
    deal.comments = row["comments"] or deal.comments
    return deal


def row_to_task(row) -> Task:
    task = Task.from_dict(json.loads(row["raw_data"] or "{}"))
    bitrix_id = row["bitrix_id"]
    task.task_id = None if str(bitrix_id).startswith(CONTENT_KEY_PREFIX) else bitrix_id
    task.title = row["title"] or task.title
    task.status = row["status_name"] or ""
    task.priority = row["priority_name"] or task.priority
    task.creator = row["created_by_name"] or ""
    task.assignee = row["responsible_name"] or ""
    task.created_at = row["date_create"]
    task.closed_at = row["date_close"]
    task.description = row["description"] or task.description
    return task


class DataStore:
    """Reads and writes deals, tasks and their uploaded files."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    # -- upserted records ----------------------------------------------------

    def _promoted_columns(self, table: str) -> set:
        return set(self.db.table_columns(table)) - set(BASE_FIELDS[table])

    def analyze(self, table: str, records) -> SchemaAnalysis:
        """Drift analysis of records in the shape they would be stored in ``table``."""
        to_row = deal_to_row if table == "deals" else task_to_row
        return analyze_data_structure([{**r.extra, **to_row(r)} for r in records], table)

    def plan_columns(self, table: str, analysis: SchemaAnalysis, execute=None) -> ColumnChangeResult:
        """ALTER TABLE statements for the important fields; only run when ``execute`` is given."""
        return auto_add_missing_columns(
            table,
            {f: _sqlite_type(analysis.field_types[f]) for f in analysis.important_fields},
            execute=execute,
            dry_run=execute is None,
            existing_columns=self.db.table_columns(table),
            if_not_exists=False,
        )

    def _save(self, table: str, records, to_row, apply_schema: bool) -> StoreResult:
        rows = [to_row(r) for r in records]
        analysis = self.analyze(table, records)
        for suggestion in analysis.suggestions:
            logger.info(f"[{table}] {suggestion}")

        added = []
        try:
            if apply_schema and analysis.important_fields:
                change = self.plan_columns(
                    table, analysis, execute=lambda sql: self.db.execute_query(sql, auto_commit=True)
                )
                added = change.added
                for err in change.errors:
                    logger.warning(f"[{table}] {err}")

            promoted = self._promoted_columns(table)
            for record, row in zip(records, rows):
                for key, value in record.extra.items():
                    column = sanitize_column_name(key)
                    if column in promoted:
                        row[column] = _scalar(value)
                self.db.upsert_item(table, row, "bitrix_id", commit=False)
            self.db.commit()
        except DatabaseError as e:
            logger.error(f"Failed to save {table}: {e}")
            try:
                self.db.rollback()
            except DatabaseError as rollback_error:
                logger.error(f"Rollback failed: {rollback_error}")
            return StoreResult(success=False, error=str(e), analysis=analysis, added_columns=added)

        logger.info(f"Saved {len(rows)} {table}")
        return StoreResult(success=True, count=len(rows), analysis=analysis, added_columns=added)

    def save_deals(self, deals: List[Deal], apply_schema: bool = False) -> StoreResult:
        """
        Upsert deals on ``bitrix_id``; deals without an id are keyed by a content hash.

        :param apply_schema: Add columns for well-filled unknown fields before saving.
        """
        return self._save("deals", deals, deal_to_row, apply_schema)

    def save_tasks(self, tasks: List[Task], apply_schema: bool = False) -> StoreResult:
        return self._save("tasks", tasks, task_to_row, apply_schema)

    def load_deals(self) -> List[Deal]:
        rows = self.db.execute_query("SELECT * FROM deals ORDER BY date_modify DESC, id").fetchall()
        return [row_to_deal(r) for r in rows]

    def load_tasks(self) -> List[Task]:
        rows = self.db.execute_query("SELECT * FROM tasks ORDER BY date_create DESC, id").fetchall()
        return [row_to_task(r) for r in rows]

    # -- uploaded files --------------------------------------------------------

    def save_deal_file(self, name: str, deals: List[Deal], meta: Optional[FileMeta] = None) -> StoredFile:
        stored = StoredFile(id=uuid.uuid4().hex, name=name, uploaded_at=_now(), records=list(deals), meta=meta)
        self.db.insert_item("deal_files", {
            "id": stored.id,
            "file_name": name,
            "file_data": json.dumps([d.to_dict() for d in deals], ensure_ascii=False, default=str),
            "metadata": json.dumps(meta.to_dict() if meta else {}),
            "uploaded_at": stored.uploaded_at,
        })
        logger.info(f"Stored deal file {name!r} ({len(deals)} deals) as {stored.id}")
        return stored

    def save_task_file(self, name: str, tasks: List[Task]) -> StoredFile:
        stored = StoredFile(id=uuid.uuid4().hex, name=name, uploaded_at=_now(), records=list(tasks))
        self.db.insert_item("task_files", {
            "id": stored.id,
            "file_name": name,
            "file_data": json.dumps([t.to_dict() for t in tasks], ensure_ascii=False, default=str),
            "uploaded_at": stored.uploaded_at,
        })
        logger.info(f"Stored task file {name!r} ({len(tasks)} tasks) as {stored.id}")
        return stored

    @staticmethod
    def _deal_file(row) -> StoredFile:
        return StoredFile(
            id=row["id"],
            name=row["file_name"],
            uploaded_at=row["uploaded_at"],
            records=[Deal.from_dict(d) for d in json.loads(row["file_data"] or "[]")],
            meta=FileMeta.from_dict(json.loads(row["metadata"] or "{}")),
        )

    @staticmethod
    def _task_file(row) -> StoredFile:
        return StoredFile(
            id=row["id"],
            name=row["file_name"],
            uploaded_at=row["uploaded_at"],
            records=[Task.from_dict(t) for t in json.loads(row["file_data"] or "[]")],
        )

    def list_deal_files(self) -> List[StoredFile]:
        rows = self.db.execute_query("SELECT * FROM deal_files ORDER BY uploaded_at DESC").fetchall()
        return [self._deal_file(r) for r in rows]

    def list_task_files(self) -> List[StoredFile]:
        rows = self.db.execute_query("SELECT * FROM task_files ORDER BY uploaded_at DESC").fetchall()
        return [self._task_file(r) for r in rows]

    def get_deal_file(self, file_id: str) -> Optional[StoredFile]:
        rows = self.db.get_item("deal_files", {"id": file_id})
        return self._deal_file(rows[0]) if rows else None

    def get_task_file(self, file_id: str) -> Optional[StoredFile]:
        rows = self.db.get_item("task_files", {"id": file_id})
        return self._task_file(rows[0]) if rows else None

    def get_latest_deal_file(self) -> Optional[StoredFile]:
        row = self.db.execute_query(
            "SELECT * FROM deal_files ORDER BY uploaded_at DESC LIMIT 1"
        ).fetchone()
        return self._deal_file(row) if row else None

    def get_latest_task_file(self) -> Optional[StoredFile]:
        row = self.db.execute_query(
            "SELECT * FROM task_files ORDER BY uploaded_at DESC LIMIT 1"
        ).fetchone()
        return self._task_file(row) if row else None

    def delete_deal_file(self, file_id: str) -> bool:
        if not self.db.get_item("deal_files", {"id": file_id}):
            return False
        self.db.delete_item("deal_files", {"id": file_id})
        return True

    def delete_task_file(self, file_id: str) -> bool:
        if not self.db.get_item("task_files", {"id": file_id}):
            return False
        self.db.delete_item("task_files", {"id": file_id})
        return True
