# services/differ.py
"""
Period-over-period comparison of two deal or task collections.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Tuple

from services.constants import UNKNOWN
from services.models import Deal, StageTransition, Task

logger = logging.getLogger(__name__)


def category_deltas(old: List[Any], new: List[Any], key: Callable[[Any], str]) -> Dict[str, int]:
    """
    new - old count for every category value seen in either collection.

    Zero deltas are kept so a category that merely held steady is still listed.
    """
    old_counts = Counter(key(r) for r in old)
    new_counts = Counter(key(r) for r in new)
    out: Dict[str, int] = {}
    for category in list(old_counts) + [c for c in new_counts if c not in old_counts]:
        out[category] = new_counts.get(category, 0) - old_counts.get(category, 0)
    return out


def sorted_by_magnitude(deltas: Dict[str, int]) -> List[Tuple[str, int]]:
    """Deltas ordered for display, largest absolute change first."""
    return sorted(deltas.items(), key=lambda item: abs(item[1]), reverse=True)


def _added_removed(old, new):
    old_keys = {r.key for r in old if r.key}
    new_keys = {r.key for r in new if r.key}
    added = [r for r in new if r.key and r.key not in old_keys]
    removed = [r for r in old if r.key and r.key not in new_keys]
    return added, removed


@dataclass
class DealComparison:
    total_change: int = 0
    stage_changes: Dict[str, int] = field(default_factory=dict)
    department_changes: Dict[str, int] = field(default_factory=dict)
    assignee_changes: Dict[str, int] = field(default_factory=dict)
    new_deals: List[Deal] = field(default_factory=list)
    removed_deals: List[Deal] = field(default_factory=list)
    stage_transitions: List[StageTransition] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalChange": self.total_change,
            "stageChanges": dict(self.stage_changes),
            "departmentChanges": dict(self.department_changes),
            "assigneeChanges": dict(self.assignee_changes),
            "newDeals": [d.to_dict() for d in self.new_deals],
            "removedDeals": [d.to_dict() for d in self.removed_deals],
            "stageTransitions": [t.to_dict() for t in self.stage_transitions],
        }


@dataclass
class TaskComparison:
    total_change: int = 0
    status_changes: Dict[str, int] = field(default_factory=dict)
    assignee_changes: Dict[str, int] = field(default_factory=dict)
    creator_changes: Dict[str, int] = field(default_factory=dict)
    new_tasks: List[Task] = field(default_factory=list)
    removed_tasks: List[Task] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalChange": self.total_change,
            "statusChanges": dict(self.status_changes),
            "assigneeChanges": dict(self.assignee_changes),
            "creatorChanges": dict(self.creator_changes),
            "newTasks": [t.to_dict() for t in self.new_tasks],
            "removedTasks": [t.to_dict() for t in self.removed_tasks],
        }


def _or_unknown(value) -> str:
    return value if value else UNKNOWN


def compare_deals(old: List[Deal], new: List[Deal]) -> DealComparison:
    """
    Compare two deal snapshots.

    Stage transitions are reported for every id present in both snapshots
    whose stage differs; the responsible person and department shown are the
    ones from the newer snapshot.
    """
    old = old or []
    new = new or []

    added, removed = _added_removed(old, new)

    # One transition per id; with duplicate ids the last occurrence wins.
    old_by_key = {d.key: d for d in old if d.key}
    new_by_key = {d.key: d for d in new if d.key}
    transitions: List[StageTransition] = []
    for key, deal in new_by_key.items():
        previous = old_by_key.get(key)
        if previous is None or (previous.stage or "") == (deal.stage or ""):
            continue
        transitions.append(StageTransition(
            deal_id=key,
            old_stage=_or_unknown(previous.stage),
            new_stage=_or_unknown(deal.stage),
            responsible=_or_unknown(deal.responsible),
            department=_or_unknown(deal.department),
        ))

    comparison = DealComparison(
        total_change=len(new) - len(old),
        stage_changes=category_deltas(old, new, lambda d: _or_unknown(d.stage)),
        department_changes=category_deltas(old, new, lambda d: _or_unknown(d.department)),
        assignee_changes=category_deltas(old, new, lambda d: _or_unknown(d.responsible)),
        new_deals=added,
        removed_deals=removed,
        stage_transitions=transitions,
    )
    logger.info(
        f"Compared deals: {len(old)} -> {len(new)}, {len(added)} new, "
        f"{len(removed)} removed, {len(transitions)} stage transitions"
    )
    return comparison


def compare_tasks(old: List[Task], new: List[Task]) -> TaskComparison:
    old = old or []
    new = new or []

    added, removed = _added_removed(old, new)
    comparison = TaskComparison(
        total_change=len(new) - len(old),
        status_changes=category_deltas(old, new, lambda t: _or_unknown(t.status)),
        assignee_changes=category_deltas(old, new, lambda t: _or_unknown(t.assignee)),
        creator_changes=category_deltas(old, new, lambda t: _or_unknown(t.creator)),
        new_tasks=added,
        removed_tasks=removed,
    )
    logger.info(f"Compared tasks: {len(old)} -> {len(new)}, {len(added)} new, {len(removed)} removed")
    return comparison
