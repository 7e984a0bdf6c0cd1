# services/snapshot_store.py
"""
Weekly snapshots of imported deals and tasks.

Snapshots are written through an ordered chain of backends: the SQLite
``data_snapshots`` table first, then a small JSON file as a fallback. Each
backend call returns a :class:`StorageResult`; the chain stops at the first
success and reports every backend's error if none succeeds.
"""
from __future__ import annotations

import json
import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from services.calendar_utils import get_week_range
from services.database import DatabaseError, DatabaseManager
from services.models import Snapshot, SnapshotSummary, WeekRange

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = "1.0.0"
LOCAL_SNAPSHOT_LIMIT = 10
STATS_WINDOW = 10


@dataclass
class StorageResult:
    success: bool
    value: Any = None
    error: Optional[str] = None
    missing: bool = False
    backend: Optional[str] = None

    @classmethod
    def ok(cls, value=None, backend=None) -> "StorageResult":
        return cls(success=True, value=value, backend=backend)

    @classmethod
    def fail(cls, error: str, missing: bool = False, backend=None) -> "StorageResult":
        return cls(success=False, error=error, missing=missing, backend=backend)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_snapshot_id() -> str:
    return f"snapshot_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


class DatabaseSnapshotBackend:
    name = "database"

    def __init__(self, db: DatabaseManager):
        self.db = db

    @staticmethod
    def _row_to_snapshot(row) -> Snapshot:
        return Snapshot(
            id=row["id"],
            created_at=row["created_at"],
            week_start=row["week_start"],
            week_end=row["week_end"],
            deals_data=json.loads(row["deals_data"] or "[]"),
            tasks_data=json.loads(row["tasks_data"] or "[]"),
            metadata=json.loads(row["metadata"] or "{}"),
        )

    def create(self, snapshot: Snapshot) -> StorageResult:
        try:
            self.db.insert_item("data_snapshots", {
                "id": snapshot.id,
                "created_at": snapshot.created_at,
                "week_start": snapshot.week_start,
                "week_end": snapshot.week_end,
                "deals_count": snapshot.deals_count,
                "tasks_count": snapshot.tasks_count,
                "deals_data": json.dumps(snapshot.deals_data, ensure_ascii=False),
                "tasks_data": json.dumps(snapshot.tasks_data, ensure_ascii=False),
                "metadata": json.dumps(snapshot.metadata, ensure_ascii=False),
            })
        except (DatabaseError, TypeError, ValueError) as e:
            return StorageResult.fail(str(e), backend=self.name)
        return StorageResult.ok(snapshot, backend=self.name)

    def list(self) -> StorageResult:
        try:
            rows = self.db.execute_query(
                "SELECT id, created_at, week_start, week_end, deals_count, tasks_count, metadata "
                "FROM data_snapshots ORDER BY created_at DESC"
            ).fetchall()
        except DatabaseError as e:
            return StorageResult.fail(str(e), backend=self.name)
        summaries = [
            SnapshotSummary(
                id=row["id"],
                created_at=row["created_at"],
                week_start=row["week_start"],
                week_end=row["week_end"],
                deals_count=row["deals_count"],
                tasks_count=row["tasks_count"],
                metadata=json.loads(row["metadata"] or "{}"),
            )
            for row in rows
        ]
        return StorageResult.ok(summaries, backend=self.name)

    def get(self, snapshot_id: str) -> StorageResult:
        try:
            rows = self.db.get_item("data_snapshots", {"id": snapshot_id})
        except DatabaseError as e:
            return StorageResult.fail(str(e), backend=self.name)
        if not rows:
            return StorageResult.fail(f"Snapshot {snapshot_id} not found", missing=True, backend=self.name)
        return StorageResult.ok(self._row_to_snapshot(rows[0]), backend=self.name)

    def get_by_week(self, week_start: str) -> StorageResult:
        try:
            row = self.db.execute_query(
                "SELECT * FROM data_snapshots WHERE week_start=? ORDER BY created_at DESC LIMIT 1",
                (week_start,),
            ).fetchone()
        except DatabaseError as e:
            return StorageResult.fail(str(e), backend=self.name)
        if row is None:
            return StorageResult.fail(f"No snapshot for week {week_start}", missing=True, backend=self.name)
        return StorageResult.ok(self._row_to_snapshot(row), backend=self.name)

    def delete(self, snapshot_id: str) -> StorageResult:
        try:
            cursor = self.db.execute_query("DELETE FROM data_snapshots WHERE id=?", (snapshot_id,))
            self.db.commit()
        except DatabaseError as e:
            return StorageResult.fail(str(e), backend=self.name)
        if cursor.rowcount == 0:
            return StorageResult.fail(f"Snapshot {snapshot_id} not found", missing=True, backend=self.name)
        return StorageResult.ok(snapshot_id, backend=self.name)

    def cleanup(self, keep: int) -> StorageResult:
        try:
            cursor = self.db.execute_query(
                "DELETE FROM data_snapshots WHERE id NOT IN "
                "(SELECT id FROM data_snapshots ORDER BY created_at DESC LIMIT ?)",
                (keep,),
            )
            self.db.commit()
        except DatabaseError as e:
            return StorageResult.fail(str(e), backend=self.name)
        return StorageResult.ok(cursor.rowcount, backend=self.name)


class LocalSnapshotBackend:
    """JSON-file fallback holding the most recent snapshots, newest first."""
    name = "local"

    def __init__(self, path: str, limit: int = LOCAL_SNAPSHOT_LIMIT):
        self.path = path
        self.limit = limit
        self._lock = threading.Lock()

    def _read(self) -> List[Dict[str, Any]]:
        if not os.path.exists(self.path):
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return data if isinstance(data, list) else []

    def _write(self, items: List[Dict[str, Any]]):
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(items, f, ensure_ascii=False)
        os.replace(tmp_path, self.path)

    def create(self, snapshot: Snapshot) -> StorageResult:
        try:
            with self._lock:
                items = self._read()
                items.insert(0, snapshot.to_dict())
                self._write(items[:self.limit])
        except (OSError, ValueError, TypeError) as e:
            return StorageResult.fail(str(e), backend=self.name)
        return StorageResult.ok(snapshot, backend=self.name)

    def list(self) -> StorageResult:
        try:
            items = self._read()
        except (OSError, ValueError) as e:
            return StorageResult.fail(str(e), backend=self.name)
        return StorageResult.ok([Snapshot.from_dict(i).summary() for i in items], backend=self.name)

    def get(self, snapshot_id: str) -> StorageResult:
        try:
            items = self._read()
        except (OSError, ValueError) as e:
            return StorageResult.fail(str(e), backend=self.name)
        for item in items:
            if str(item.get("id")) == snapshot_id:
                return StorageResult.ok(Snapshot.from_dict(item), backend=self.name)
        return StorageResult.fail(f"Snapshot {snapshot_id} not found", missing=True, backend=self.name)

    def get_by_week(self, week_start: str) -> StorageResult:
        try:
            items = self._read()
        except (OSError, ValueError) as e:
            return StorageResult.fail(str(e), backend=self.name)
        matches = [i for i in items if i.get("weekStart") == week_start]
        if not matches:
            return StorageResult.fail(f"No snapshot for week {week_start}", missing=True, backend=self.name)
        latest = max(matches, key=lambda i: i.get("createdAt") or "")
        return StorageResult.ok(Snapshot.from_dict(latest), backend=self.name)

    def delete(self, snapshot_id: str) -> StorageResult:
        try:
            with self._lock:
                items = self._read()
                remaining = [i for i in items if str(i.get("id")) != snapshot_id]
                if len(remaining) == len(items):
                    return StorageResult.fail(f"Snapshot {snapshot_id} not found", missing=True, backend=self.name)
                self._write(remaining)
        except (OSError, ValueError) as e:
            return StorageResult.fail(str(e), backend=self.name)
        return StorageResult.ok(snapshot_id, backend=self.name)

    def cleanup(self, keep: int) -> StorageResult:
        # Already bounded by self.limit on every write.
        return StorageResult.ok(0, backend=self.name)


class SnapshotStore:
    """Runs each snapshot operation against the backends in order."""

    def __init__(self, backends: Sequence, source: str = "bitrix24", tz: Optional[str] = None):
        if not backends:
            raise ValueError("SnapshotStore needs at least one backend")
        self.backends = list(backends)
        self.source = source
        self.tz = tz

    def _run(self, operation: str, *args) -> StorageResult:
        errors = []
        all_missing = True
        for backend in self.backends:
            try:
                result = getattr(backend, operation)(*args)
            except Exception as e:
                logger.exception(f"Snapshot backend {backend.name} crashed during {operation}")
                result = StorageResult.fail(str(e), backend=backend.name)

            if result.success:
                if errors:
                    logger.info(f"Snapshot {operation} succeeded on fallback backend {backend.name}")
                return result

            all_missing = all_missing and result.missing
            errors.append(f"{backend.name}: {result.error}")
            if not result.missing:
                logger.warning(f"Snapshot {operation} failed on {backend.name}: {result.error}")

        return StorageResult.fail("; ".join(errors), missing=all_missing)

    def create_snapshot(self, deals: List[Dict[str, Any]], tasks: List[Dict[str, Any]],
                        week_range: Optional[WeekRange] = None, webhook_url: Optional[str] = None) -> StorageResult:
        """
        Capture a deals/tasks pair for a week (the current week by default).

        :param deals: Deals as dicts (``Deal.to_dict()``).
        :param tasks: Tasks as dicts.
        :param week_range: Week to tag the snapshot with.
        :param webhook_url: Recorded in the metadata when the data came from Bitrix24.
        :return: StorageResult whose value is the stored Snapshot.
        """
        week = week_range or get_week_range(tz=self.tz)
        metadata = {"source": self.source, "version": SNAPSHOT_VERSION}
        if webhook_url:
            metadata["webhookUrl"] = webhook_url

        snapshot = Snapshot(
            id=new_snapshot_id(),
            created_at=_now_iso(),
            week_start=week.start,
            week_end=week.end,
            deals_data=list(deals or []),
            tasks_data=list(tasks or []),
            metadata=metadata,
        )
        result = self._run("create", snapshot)
        if result.success:
            logger.info(
                f"Saved snapshot {snapshot.id} for {week.label}: "
                f"{snapshot.deals_count} deals, {snapshot.tasks_count} tasks ({result.backend})"
            )
        return result

    def list_snapshots(self) -> StorageResult:
        return self._run("list")

    def get_snapshot(self, snapshot_id: str) -> StorageResult:
        return self._run("get", snapshot_id)

    def get_snapshot_by_week(self, week_start: str) -> StorageResult:
        """Latest snapshot whose week starts on ``week_start`` (YYYY-MM-DD)."""
        return self._run("get_by_week", week_start)

    def delete_snapshot(self, snapshot_id: str) -> StorageResult:
        """Delete from the first backend that holds the snapshot."""
        return self._run("delete", snapshot_id)

    def cleanup_old_snapshots(self, keep: int = 100) -> StorageResult:
        removed = 0
        errors = []
        for backend in self.backends:
            result = backend.cleanup(keep)
            if result.success:
                removed += result.value or 0
            else:
                errors.append(f"{backend.name}: {result.error}")
        if removed:
            logger.info(f"Removed {removed} old snapshots, keeping {keep}")
        if errors and len(errors) == len(self.backends):
            return StorageResult.fail("; ".join(errors))
        return StorageResult.ok(removed)

    def snapshot_stats(self) -> StorageResult:
        listed = self.list_snapshots()
        if not listed.success:
            return listed
        recent = listed.value[:STATS_WINDOW]
        count = len(recent)
        stats = {
            "totalSnapshots": count,
            "latestSnapshot": recent[0].to_dict() if recent else None,
            "averageDeals": round(sum(s.deals_count for s in recent) / count) if count else 0,
            "averageTasks": round(sum(s.tasks_count for s in recent) / count) if count else 0,
        }
        return StorageResult.ok(stats, backend=listed.backend)


def create_snapshot_store(db: DatabaseManager, local_path: str, local_limit: int = LOCAL_SNAPSHOT_LIMIT,
                          tz: Optional[str] = None) -> SnapshotStore:
    return SnapshotStore(
        [DatabaseSnapshotBackend(db), LocalSnapshotBackend(local_path, limit=local_limit)],
        tz=tz,
    )
