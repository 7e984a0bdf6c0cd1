# services/merger.py
from __future__ import annotations

import logging
from typing import Dict, List, Optional, TypeVar

from services.models import Deal, Task

logger = logging.getLogger(__name__)

Record = TypeVar("Record", Deal, Task)


def _merge(existing: Optional[List[Record]], incoming: List[Record], in_place: bool) -> List[Record]:
    existing = existing if existing is not None else []
    by_key: Dict[str, Record] = {}

    for record in existing:
        if record.key:
            by_key[record.key] = record

    unkeyed_incoming: List[Record] = []
    for record in incoming or []:
        if record.key:
            by_key[record.key] = record
        else:
            unkeyed_incoming.append(record)

    unkeyed = [r for r in existing if not r.key]
    if in_place:
        # Legacy behaviour: id-less incoming rows are appended to the caller's list.
        existing.extend(unkeyed_incoming)

    merged = list(by_key.values()) + unkeyed + unkeyed_incoming
    logger.debug(
        f"Merged {len(incoming or [])} incoming into {len(existing)} existing -> {len(merged)} records"
    )
    return merged


def merge_deals(existing: Optional[List[Deal]], incoming: List[Deal], *, in_place: bool = False) -> List[Deal]:
    """
    Merge a freshly imported batch into a held collection, keyed by deal id.

    Incoming deals overwrite existing ones with the same id (last write wins)
    and keep the existing position; new ids are added in incoming order.
    Deals without an id are never deduplicated: the result ends with the
    existing id-less deals followed by the incoming ones.

    :param existing: The collection currently held (may be None).
    :param incoming: The new batch.
    :param in_place: Also append incoming id-less deals to ``existing``.
    :return: A new merged list.
    """
    return _merge(existing, incoming, in_place)


def merge_tasks(existing: Optional[List[Task]], incoming: List[Task], *, in_place: bool = False) -> List[Task]:
    """Same contract as :func:`merge_deals`, keyed by task id."""
    return _merge(existing, incoming, in_place)
