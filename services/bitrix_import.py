# services/bitrix_import.py
"""
Pulls deals and tasks from a Bitrix24 portal and reshapes them into
``Deal`` / ``Task`` records.

A deal import runs these steps in order:

1. find the sales pipeline (``crm.category.list``), falling back to a fixed id
2. load enumeration labels for user fields (``crm.deal.fields``)
3. load the pipeline's stage names (``crm.status.list``)
4. page through ``crm.deal.list``
5. resolve users, contacts and companies in chunks of 50
6. reshape every deal and run it through ``normalize_deal``

Steps 1-3 and 5 degrade to raw ids when the portal refuses them. Step 4 is
fatal: without the deal list there is nothing to import.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set

from services import notifications
from services.bitrix_client import BitrixClient
from services.bitrix_constants import (
    BITRIX_STAGE_MAPPING,
    COMPANY_FIELDS,
    COMPANY_REF_PREFIX,
    CONTACT_FIELDS,
    CONTACT_REF_PREFIX,
    DEAL_ENTITY_TYPE_ID,
    DEAL_SELECT,
    LOOKUP_CHUNK_SIZE,
    MAX_TASK_DESCRIPTION_LENGTH,
    PAGE_SIZE,
    TASK_FIELDS,
    TASK_PRIORITY_MAPPING,
    TASK_STATUS_MAPPING,
)
from services.calendar_utils import calc_auto_meta, get_week_range
from services.constants import DEFAULT_AMOUNT, DEFAULT_CURRENCY, DEPT_BY_PERSON, UNKNOWN, UNKNOWN_PERSON
from services.database import DatabaseError
from services.exceptions import BitrixAPIError
from services.models import Deal, Task
from services.normalizers import normalize_deal, to_iso
from services.notifications import Notification

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS = {
    "sales_category_name": "продаж",
    "fallback_category_id": 1,
    "department_field": "UF_CRM_1589877847",
    "page_size": PAGE_SIZE,
    "chunk_size": LOOKUP_CHUNK_SIZE,
}

# Errors a malformed but successful response can raise while we walk it.
_SHAPE_ERRORS = (BitrixAPIError, AttributeError, KeyError, TypeError, ValueError)

ProgressCallback = Callable[..., None]


@dataclass
class ChunkResult:
    """Outcome of one lookup call for up to ``chunk_size`` ids."""
    kind: str
    ids: List[str]
    success: bool
    names: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "ids": self.ids, "success": self.success, "error": self.error}


@dataclass
class Resolution:
    names: Dict[str, str] = field(default_factory=dict)
    failures: List[ChunkResult] = field(default_factory=list)

    @classmethod
    def from_chunks(cls, chunks: Iterable[ChunkResult]) -> "Resolution":
        resolution = cls()
        for chunk in chunks:
            if chunk.success:
                resolution.names.update(chunk.names)
            else:
                resolution.failures.append(chunk)
        return resolution


@dataclass
class ImportResult:
    success: bool
    count: int
    records: List[Any] = field(default_factory=list)
    notification: Optional[Notification] = None
    failures: List[ChunkResult] = field(default_factory=list)
    snapshot_saved: bool = False
    snapshot_id: Optional[str] = None

    def to_dict(self, include_records: bool = False) -> Dict[str, Any]:
        out = {
            "success": self.success,
            "count": self.count,
            "notification": self.notification.to_dict() if self.notification else None,
            "failures": [f.to_dict() for f in self.failures],
            "snapshotSaved": self.snapshot_saved,
            "snapshotId": self.snapshot_id,
        }
        if include_records:
            out["records"] = [r.to_dict() for r in self.records]
        return out


def _chunks(items: List[str], size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _present(value) -> bool:
    return value not in (None, "", "0", 0)


def _as_list(value) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _person_name(user: Mapping[str, Any]) -> str:
    return f"{user.get('NAME') or ''} {user.get('LAST_NAME') or ''}".strip()


def _enum_items(items) -> Dict[str, str]:
    """
    Build id -> label from the shapes Bitrix uses for enumeration items:
    ``[{"ID": .., "VALUE": ..}]``, ``[[id, label]]`` or ``{id: label}``.
    """
    labels = {}
    if isinstance(items, dict):
        for key, value in items.items():
            labels[str(key)] = str(value)
    elif isinstance(items, list):
        for item in items:
            if isinstance(item, dict) and "ID" in item:
                labels[str(item["ID"])] = str(item.get("VALUE", ""))
            elif isinstance(item, (list, tuple)) and len(item) >= 2:
                labels[str(item[0])] = str(item[1])
    return labels


class BitrixImporter:
    """
    Runs deal and task imports against one portal.

    Attributes:
        client (BitrixClient): Webhook client.
        snapshot_store: Optional SnapshotStore; every import is captured as a weekly snapshot.
        data_store: Optional DataStore; imported records are upserted and kept as a file.
        people (Mapping[str, str]): Person -> department lookup.
        settings (dict): DEFAULT_SETTINGS overridden by ``config``.
    """

    def __init__(self, client: BitrixClient, snapshot_store=None, data_store=None,
                 people: Optional[Mapping[str, str]] = None, config: Optional[Mapping[str, Any]] = None,
                 tz: Optional[str] = None):
        self.client = client
        self.snapshot_store = snapshot_store
        self.data_store = data_store
        self.people = DEPT_BY_PERSON if people is None else people
        self.settings = dict(DEFAULT_SETTINGS)
        self.settings.update({k: v for k, v in (config or {}).items() if v not in (None, "")})
        self.tz = tz
        self.crm_fields: List[str] = []

    # -- step 1-3: portal metadata -------------------------------------------

    def resolve_sales_category(self) -> int:
        """Id of the first deal pipeline whose name contains the configured text."""
        fallback = int(self.settings["fallback_category_id"])
        needle = str(self.settings["sales_category_name"]).lower()
        try:
            result = self.client.call("crm.category.list", {"entityTypeId": DEAL_ENTITY_TYPE_ID})
            categories = result.get("categories", []) if isinstance(result, dict) else result
            for category in categories:
                if needle in str(category.get("name", "")).lower():
                    logger.info(f"Using deal pipeline {category.get('name')!r} ({category.get('id')})")
                    return int(category["id"])
        except _SHAPE_ERRORS as e:
            logger.warning(f"Could not list deal pipelines, using category {fallback}: {e}")
            return fallback

        logger.warning(f"No deal pipeline matches {needle!r}, using category {fallback}")
        return fallback

    def fetch_enum_maps(self) -> Dict[str, Dict[str, str]]:
        """
        Labels of every enumeration field, keyed by field name then item id.

        Also records which fields have the ``crm`` type; their values point at
        contacts (``C_12``) and companies (``CO_7``).
        """
        self.crm_fields = []
        try:
            fields = self.client.call("crm.deal.fields")
        except BitrixAPIError as e:
            logger.warning(f"Could not load deal fields: {e.message}")
            return {}
        if not isinstance(fields, dict):
            return {}

        enums = {}
        for name, meta in fields.items():
            if not isinstance(meta, dict):
                continue
            if meta.get("type") == "enumeration":
                enums[name] = _enum_items(meta.get("items"))
            elif meta.get("type") == "crm":
                self.crm_fields.append(name)
        logger.debug(f"Loaded {len(enums)} enumeration fields, {len(self.crm_fields)} crm fields")
        return enums

    def fetch_stage_map(self, category_id: int) -> Dict[str, str]:
        entity = "DEAL_STAGE" if not category_id else f"DEAL_STAGE_{category_id}"
        try:
            statuses = self.client.call("crm.status.list", {"filter": {"ENTITY_ID": entity}})
            return {str(s["STATUS_ID"]): s["NAME"] for s in statuses if s.get("STATUS_ID")}
        except _SHAPE_ERRORS as e:
            logger.warning(f"Could not load stages for {entity}, using built-in names: {e}")
            return {}

    # -- step 4: raw lists ------------------------------------------------------

    def fetch_deals(self, category_id: int) -> List[Dict[str, Any]]:
        return self.client.list_all(
            "crm.deal.list",
            {"select": list(DEAL_SELECT), "filter": {"CATEGORY_ID": category_id}},
            page_size=self.settings["page_size"],
        )

    def fetch_tasks(self) -> List[Dict[str, Any]]:
        return self.client.list_all(
            "tasks.task.list",
            {"select": list(TASK_FIELDS)},
            page_size=self.settings["page_size"],
            items_key="tasks",
        )

    # -- step 5: lookups ----------------------------------------------------------

    def _lookup_chunk(self, kind: str, ids: List[str]) -> ChunkResult:
        try:
            if kind == "users":
                rows = self.client.call("user.get", {"ID": ids})
                names = {str(r["ID"]): _person_name(r) for r in rows}
            elif kind == "contacts":
                rows = self.client.call(
                    "crm.contact.list", {"filter": {"ID": ids}, "select": list(CONTACT_FIELDS)}
                )
                names = {str(r["ID"]): _person_name(r) for r in rows}
            else:
                rows = self.client.call(
                    "crm.company.list", {"filter": {"ID": ids}, "select": list(COMPANY_FIELDS)}
                )
                names = {str(r["ID"]): r.get("TITLE") or "" for r in rows}
        except _SHAPE_ERRORS as e:
            reason = getattr(e, "message", None) or str(e)
            logger.warning(f"Lookup of {len(ids)} {kind} failed: {reason}")
            return ChunkResult(kind=kind, ids=ids, success=False, error=reason)
        return ChunkResult(kind=kind, ids=ids, success=True, names={k: v for k, v in names.items() if v})

    def resolve(self, kind: str, ids: Iterable[str]) -> Resolution:
        """Resolve ids of one kind ("users", "contacts", "companies") to display names."""
        unique = sorted({str(i) for i in ids if _present(i)})
        chunks = [self._lookup_chunk(kind, chunk) for chunk in _chunks(unique, self.settings["chunk_size"])]
        resolution = Resolution.from_chunks(chunks)
        logger.info(f"Resolved {len(resolution.names)} of {len(unique)} {kind}")
        return resolution

    def _crm_refs(self, deal: Mapping[str, Any], prefix: str) -> Set[str]:
        refs = set()
        for name in self.crm_fields:
            for value in _as_list(deal.get(name)):
                text = str(value)
                # "CO_" also starts with "C", so compare the full prefix before the id
                head, _, ref_id = text.partition("_")
                if f"{head}_" == prefix and ref_id:
                    refs.add(ref_id)
        return refs

    def collect_foreign_ids(self, raw_deals: List[Mapping[str, Any]]) -> Dict[str, Set[str]]:
        users, contacts, companies = set(), set(), set()
        for deal in raw_deals:
            if _present(deal.get("ASSIGNED_BY_ID")):
                users.add(str(deal["ASSIGNED_BY_ID"]))
            if _present(deal.get("CONTACT_ID")):
                contacts.add(str(deal["CONTACT_ID"]))
            contacts.update(str(c) for c in _as_list(deal.get("CONTACT_IDS")) if _present(c))
            contacts.update(self._crm_refs(deal, CONTACT_REF_PREFIX))
            if _present(deal.get("COMPANY_ID")):
                companies.add(str(deal["COMPANY_ID"]))
            companies.update(self._crm_refs(deal, COMPANY_REF_PREFIX))
        return {"users": users, "contacts": contacts, "companies": companies}

    # -- step 6: reshaping --------------------------------------------------------

    def _expand_field(self, name: str, value, enums: Dict[str, Dict[str, str]],
                      contacts: Dict[str, str], companies: Dict[str, str]):
        if name in enums:
            labels = enums[name]
            values = [labels.get(str(v), str(v)) for v in _as_list(value) if v not in (None, "")]
            return ", ".join(values)
        if name in self.crm_fields:
            names = []
            for v in _as_list(value):
                head, _, ref_id = str(v).partition("_")
                lookup = contacts if f"{head}_" == CONTACT_REF_PREFIX else companies
                names.append(lookup.get(ref_id, str(v)))
            return ", ".join(names)
        return value

    def shape_deal(self, raw: Mapping[str, Any], stage_map: Dict[str, str], enums: Dict[str, Dict[str, str]],
                   users: Dict[str, str], contacts: Dict[str, str], companies: Dict[str, str]) -> Deal:
        extra = {k: self._expand_field(k, v, enums, contacts, companies) for k, v in raw.items()}

        stage_id = str(raw.get("STAGE_ID") or "")
        contact_id = str(raw.get("CONTACT_ID") or "") if _present(raw.get("CONTACT_ID")) else ""
        company_id = str(raw.get("COMPANY_ID") or "") if _present(raw.get("COMPANY_ID")) else ""
        department_label = extra.get(self.settings["department_field"])

        deal = Deal(
            deal_id=str(raw["ID"]) if raw.get("ID") else None,
            title=raw.get("TITLE") or UNKNOWN,
            responsible=users.get(str(raw.get("ASSIGNED_BY_ID")), UNKNOWN_PERSON),
            stage=stage_map.get(stage_id) or BITRIX_STAGE_MAPPING.get(stage_id) or stage_id,
            created_at=to_iso(raw.get("DATE_CREATE")),
            modified_at=to_iso(raw.get("DATE_MODIFY")),
            amount=str(raw.get("OPPORTUNITY") or DEFAULT_AMOUNT),
            currency=raw.get("CURRENCY_ID") or DEFAULT_CURRENCY,
            company=companies.get(company_id) or raw.get("COMPANY_TITLE") or company_id or UNKNOWN,
            contact=contacts.get(contact_id) or contact_id or UNKNOWN,
            comments=raw.get("COMMENTS") or UNKNOWN,
            begin_date=to_iso(raw.get("BEGINDATE")),
            close_date=to_iso(raw.get("CLOSEDATE")),
            deal_type=str(raw.get("TYPE_ID") or ""),
            probability=str(raw.get("PROBABILITY") or ""),
            source=str(raw.get("SOURCE_ID") or ""),
            extra=extra,
        )
        deal = normalize_deal(deal)
        deal.department = self.people.get(deal.responsible) or department_label or UNKNOWN
        return deal

    def shape_task(self, raw: Mapping[str, Any], users: Dict[str, str]) -> Task:
        description = str(raw.get("description") or "")
        return Task(
            task_id=str(raw["id"]) if raw.get("id") else None,
            title=raw.get("title") or "",
            creator=users.get(str(raw.get("createdBy")), UNKNOWN_PERSON),
            assignee=users.get(str(raw.get("responsibleId")), UNKNOWN_PERSON),
            status=TASK_STATUS_MAPPING.get(str(raw.get("status")), UNKNOWN_PERSON),
            priority=TASK_PRIORITY_MAPPING.get(str(raw.get("priority")), UNKNOWN_PERSON),
            created_at=to_iso(raw.get("createdDate")),
            closed_at=to_iso(raw.get("closedDate")),
            description=description[:MAX_TASK_DESCRIPTION_LENGTH],
            extra=dict(raw),
        )

    # -- full pulls -----------------------------------------------------------

    def collect_deals(self, progress: Optional[ProgressCallback] = None):
        """
        Fetch and reshape every deal of the sales pipeline.

        :return: (deals, lookup failures)
        :raises BitrixAPIError: When the deal list itself cannot be fetched.
        """
        report = progress or (lambda *a, **k: None)

        category_id = self.resolve_sales_category()
        enums = self.fetch_enum_maps()
        stage_map = self.fetch_stage_map(category_id)
        report("Загрузка сделок", pct=10)

        raw_deals = self.fetch_deals(category_id)
        report(f"Получено сделок: {len(raw_deals)}", pct=40)

        ids = self.collect_foreign_ids(raw_deals)
        users = self.resolve("users", ids["users"])
        contacts = self.resolve("contacts", ids["contacts"])
        companies = self.resolve("companies", ids["companies"])
        report("Справочники загружены", pct=60)

        deals = [
            self.shape_deal(raw, stage_map, enums, users.names, contacts.names, companies.names)
            for raw in raw_deals
        ]
        failures = users.failures + contacts.failures + companies.failures
        return deals, failures

    def collect_tasks(self, progress: Optional[ProgressCallback] = None):
        report = progress or (lambda *a, **k: None)

        raw_tasks = self.fetch_tasks()
        report(f"Получено задач: {len(raw_tasks)}", pct=40)

        user_ids = [t.get("createdBy") for t in raw_tasks] + [t.get("responsibleId") for t in raw_tasks]
        users = self.resolve("users", user_ids)
        tasks = [self.shape_task(raw, users.names) for raw in raw_tasks]
        return tasks, users.failures

    # -- persistence ----------------------------------------------------------

    def _persist(self, deals: List[Deal], tasks: List[Task]):
        """Save the pull. Returns (snapshot id or None, list of error strings)."""
        errors = []
        snapshot_id = None

        if self.snapshot_store is not None:
            result = self.snapshot_store.create_snapshot(
                [d.to_dict() for d in deals],
                [t.to_dict() for t in tasks],
                week_range=get_week_range(tz=self.tz),
                webhook_url=self.client.webhook_url,
            )
            if result.success:
                snapshot_id = result.value.id
            else:
                errors.append(result.error)

        if self.data_store is not None:
            stamp = date.today().isoformat()
            if deals:
                saved = self.data_store.save_deals(deals)
                if not saved.success:
                    errors.append(saved.error)
                try:
                    self.data_store.save_deal_file(
                        f"bitrix_deals_{stamp}.json", deals, calc_auto_meta(deals, tz=self.tz)
                    )
                except DatabaseError as e:
                    errors.append(str(e))
            if tasks:
                saved = self.data_store.save_tasks(tasks)
                if not saved.success:
                    errors.append(saved.error)
                try:
                    self.data_store.save_task_file(f"bitrix_tasks_{stamp}.json", tasks)
                except DatabaseError as e:
                    errors.append(str(e))

        for err in errors:
            logger.error(f"Bitrix24 import not persisted: {err}")
        return snapshot_id, errors

    def _finish(self, records: List[Any], deals: List[Deal], tasks: List[Task],
                failures: List[ChunkResult], title: str, message: str) -> ImportResult:
        snapshot_id, errors = self._persist(deals, tasks)
        if errors:
            note = notifications.warning("Данные загружены, но не сохранены", "; ".join(errors))
        else:
            note = notifications.success(title, message)
        return ImportResult(
            success=True,
            count=len(records),
            records=records,
            notification=note,
            failures=failures,
            snapshot_saved=snapshot_id is not None,
            snapshot_id=snapshot_id,
        )

    @staticmethod
    def _failed(e: BitrixAPIError) -> ImportResult:
        logger.error(f"Bitrix24 import failed: {e.message}")
        note = notifications.error("Ошибка загрузки", e.message)
        return ImportResult(success=False, count=0, notification=note)

    def import_deals(self, progress: Optional[ProgressCallback] = None) -> ImportResult:
        try:
            deals, failures = self.collect_deals(progress)
        except BitrixAPIError as e:
            return self._failed(e)
        return self._finish(deals, deals, [], failures, "Сделки загружены",
                            f"Загружено {len(deals)} сделок из Bitrix24")

    def import_tasks(self, progress: Optional[ProgressCallback] = None) -> ImportResult:
        try:
            tasks, failures = self.collect_tasks(progress)
        except BitrixAPIError as e:
            return self._failed(e)
        return self._finish(tasks, [], tasks, failures, "Задачи загружены",
                            f"Загружено {len(tasks)} задач из Bitrix24")

    def import_all(self, progress: Optional[ProgressCallback] = None) -> ImportResult:
        """Fetch deals and tasks side by side and save them as one snapshot."""
        with ThreadPoolExecutor(max_workers=2) as pool:
            deals_future = pool.submit(self.collect_deals)
            tasks_future = pool.submit(self.collect_tasks)
            try:
                deals, deal_failures = deals_future.result()
                tasks, task_failures = tasks_future.result()
            except BitrixAPIError as e:
                return self._failed(e)

        if progress:
            progress("Сделки и задачи получены", pct=80)
        return self._finish(
            deals + tasks, deals, tasks, deal_failures + task_failures, "Данные загружены",
            f"Загружено {len(deals)} сделок и {len(tasks)} задач из Bitrix24",
        )
