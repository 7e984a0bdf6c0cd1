# services/models.py
"""
Record types shared by the import, merge, comparison and storage layers.

Deals and tasks are open records: the canonical attributes below are typed,
everything else a source provides (custom CRM fields, unmapped CSV columns)
rides along in ``extra`` and is written back out by ``to_dict``.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

from services.constants import DEAL_LABELS, MONTHS_SHORT, TASK_LABELS

# Source values whose key a canonical field took over, e.g. a raw Bitrix
# task ``status`` code under the canonical ``status`` label.
SHADOWED_KEY = "_source"


def _key_map(cls) -> Dict[str, str]:
    """attribute name -> camelCase key, in declaration order."""
    out = {}
    for f in fields(cls):
        if f.name == "extra":
            continue
        head, *rest = f.name.split("_")
        out[f.name] = head + "".join(part.title() for part in rest)
    # deal_id / task_id are exposed as dealId / id
    if "deal_id" in out:
        out["deal_id"] = "dealId"
    if "task_id" in out:
        out["task_id"] = "id"
    return out


def _to_mapping(record, key_map: Dict[str, str]) -> Dict[str, Any]:
    out = dict(record.extra)
    shadowed = {}
    for attr, key in key_map.items():
        value = getattr(record, attr)
        if key in out:
            shadowed[key] = out[key]
        out[key] = value
    if shadowed:
        out[SHADOWED_KEY] = shadowed
    return out


def _from_mapping(data: Dict[str, Any], key_map: Dict[str, str], labels) -> Dict[str, Any]:
    label_to_key = {label: key for key, label in labels.items()}
    key_to_attr = {key: attr for attr, key in key_map.items()}

    kwargs: Dict[str, Any] = {}
    extra: Dict[str, Any] = {}
    shadowed: Dict[str, Any] = {}
    for raw_key, value in (data or {}).items():
        if raw_key == SHADOWED_KEY and isinstance(value, dict):
            shadowed = value
            continue
        key = label_to_key.get(raw_key, raw_key)
        attr = key_to_attr.get(key)
        if attr is not None:
            kwargs[attr] = value
        else:
            extra[raw_key] = value
    extra.update(shadowed)
    kwargs["extra"] = extra
    return kwargs


@dataclass
class Deal:
    deal_id: Optional[str] = None
    title: str = "—"
    responsible: str = ""
    stage: str = ""
    created_at: Optional[str] = None
    modified_at: Optional[str] = None
    department: str = "—"
    amount: str = "0"
    currency: str = "RUB"
    company: str = "—"
    contact: str = "—"
    comments: str = "—"
    begin_date: Optional[str] = None
    close_date: Optional[str] = None
    deal_type: str = ""
    probability: str = ""
    source: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> Optional[str]:
        return str(self.deal_id) if self.deal_id else None

    def to_dict(self) -> Dict[str, Any]:
        return _to_mapping(self, _DEAL_KEYS)

    def to_display_dict(self) -> Dict[str, Any]:
        """Same record keyed by the Russian column labels (for exports)."""
        out = dict(self.extra)
        for attr, key in _DEAL_KEYS.items():
            out[DEAL_LABELS[key]] = getattr(self, attr)
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Deal":
        return cls(**_from_mapping(data, _DEAL_KEYS, DEAL_LABELS))


@dataclass
class Task:
    task_id: Optional[str] = None
    title: str = ""
    creator: str = ""
    assignee: str = ""
    status: str = ""
    priority: str = ""
    created_at: Optional[str] = None
    closed_at: Optional[str] = None
    description: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> Optional[str]:
        return str(self.task_id) if self.task_id else None

    def to_dict(self) -> Dict[str, Any]:
        return _to_mapping(self, _TASK_KEYS)

    def to_display_dict(self) -> Dict[str, Any]:
        out = dict(self.extra)
        for attr, key in _TASK_KEYS.items():
            out[TASK_LABELS[key]] = getattr(self, attr)
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        return cls(**_from_mapping(data, _TASK_KEYS, TASK_LABELS))


_DEAL_KEYS = _key_map(Deal)
_TASK_KEYS = _key_map(Task)


@dataclass
class FileMeta:
    year: Optional[int] = None
    month: Optional[int] = None
    week_of_month: Optional[int] = None
    week_of_year: Optional[int] = None

    def label(self) -> str:
        if not self.year or not self.week_of_year:
            return "неделя не задана"
        text = f"{self.year}-W{self.week_of_year:02d}"
        if self.month and self.week_of_month:
            text += f" | {MONTHS_SHORT[self.month - 1]} • нед. {self.week_of_month}"
        return text

    def to_dict(self) -> Dict[str, Any]:
        return {
            "year": self.year,
            "month": self.month,
            "weekOfMonth": self.week_of_month,
            "weekOfYear": self.week_of_year,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "FileMeta":
        data = data or {}
        return cls(
            year=data.get("year"),
            month=data.get("month"),
            week_of_month=data.get("weekOfMonth"),
            week_of_year=data.get("weekOfYear"),
        )


@dataclass
class ImportInfo:
    """Which source column fed each canonical field, and how many rows came out incomplete."""
    mapped: Dict[str, str] = field(default_factory=dict)
    ignored: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"mapped": dict(self.mapped), "ignored": self.ignored}


@dataclass
class NormalizedDeals:
    rows: List[Deal]
    info: ImportInfo

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rows": [r.to_dict() for r in self.rows],
            "info": self.info.to_dict(),
        }


@dataclass(frozen=True)
class WeekRange:
    start: str
    end: str
    label: str

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start, "end": self.end, "label": self.label}


@dataclass(frozen=True)
class StageTransition:
    deal_id: str
    old_stage: str
    new_stage: str
    responsible: str
    department: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "dealId": self.deal_id,
            "oldStage": self.old_stage,
            "newStage": self.new_stage,
            "responsible": self.responsible,
            "department": self.department,
        }


@dataclass(frozen=True)
class SnapshotSummary:
    id: str
    created_at: str
    week_start: str
    week_end: str
    deals_count: int
    tasks_count: int
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "weekStart": self.week_start,
            "weekEnd": self.week_end,
            "dealsCount": self.deals_count,
            "tasksCount": self.tasks_count,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class Snapshot:
    id: str
    created_at: str
    week_start: str
    week_end: str
    deals_data: List[Dict[str, Any]]
    tasks_data: List[Dict[str, Any]]
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def deals_count(self) -> int:
        return len(self.deals_data)

    @property
    def tasks_count(self) -> int:
        return len(self.tasks_data)

    def summary(self) -> SnapshotSummary:
        return SnapshotSummary(
            id=self.id,
            created_at=self.created_at,
            week_start=self.week_start,
            week_end=self.week_end,
            deals_count=self.deals_count,
            tasks_count=self.tasks_count,
            metadata=dict(self.metadata),
        )

    def deals(self) -> List[Deal]:
        return [Deal.from_dict(d) for d in self.deals_data]

    def tasks(self) -> List[Task]:
        return [Task.from_dict(t) for t in self.tasks_data]

    def to_dict(self) -> Dict[str, Any]:
        out = self.summary().to_dict()
        out["dealsData"] = list(self.deals_data)
        out["tasksData"] = list(self.tasks_data)
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Snapshot":
        return cls(
            id=str(data["id"]),
            created_at=data.get("createdAt") or "",
            week_start=data.get("weekStart") or "",
            week_end=data.get("weekEnd") or "",
            deals_data=list(data.get("dealsData") or []),
            tasks_data=list(data.get("tasksData") or []),
            metadata=dict(data.get("metadata") or {}),
        )
