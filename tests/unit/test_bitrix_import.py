import sqlite3
from unittest.mock import MagicMock

import pytest

from services.bitrix_client import BitrixClient
from services.bitrix_import import BitrixImporter, _enum_items
from services.data_store import DataStore
from services.database import DatabaseManager
from services.snapshot_store import LocalSnapshotBackend, SnapshotStore

WEBHOOK = "https://portal.bitrix24.kz/rest/1/abc123/"

RAW_DEALS = [
    {
        "ID": "11",
        "TITLE": "Насосная станция",
        "STAGE_ID": "C7:WON",
        "ASSIGNED_BY_ID": "5",
        "DATE_CREATE": "2024-03-01T10:00:00+03:00",
        "OPPORTUNITY": "1500.00",
        "CURRENCY_ID": "KZT",
        "COMPANY_ID": "3",
        "CONTACT_ID": "9",
        "UF_CRM_1589877847": "45",
        "UF_CRM_CLIENT": ["CO_3", "C_9"],
    },
    {
        "ID": "12",
        "TITLE": "",
        "STAGE_ID": "C1:UC_GWWM7C",
        "ASSIGNED_BY_ID": "6",
        "COMPANY_ID": "0",
        "CONTACT_ID": None,
        "UF_CRM_1589877847": "45",
    },
]

RAW_TASKS = [
    {
        "id": "1",
        "title": "Подготовить ТКП",
        "createdBy": "5",
        "responsibleId": "6",
        "status": "5",
        "priority": "2",
        "createdDate": "2024-03-01T09:00:00+00:00",
        "description": "x" * 150,
    },
    {"id": "2", "title": "Без статуса", "createdBy": "5", "responsibleId": "404", "status": "99"},
]

PORTAL = {
    "crm.category.list": {"categories": [{"id": 0, "name": "Общая"}, {"id": 7, "name": "Отдел продаж"}]},
    "crm.deal.fields": {
        "TITLE": {"type": "string"},
        "UF_CRM_1589877847": {"type": "enumeration", "items": [{"ID": "45", "VALUE": "Проектный отдел"}]},
        "UF_CRM_CLIENT": {"type": "crm"},
    },
    "crm.status.list": [{"STATUS_ID": "C7:NEW", "NAME": "Новая"}, {"STATUS_ID": "C7:WON", "NAME": "Договор подписан"}],
    "crm.deal.list": RAW_DEALS,
    "tasks.task.list": {"tasks": RAW_TASKS},
    "user.get": [{"ID": "5", "NAME": "Адиль", "LAST_NAME": "Аманов"}, {"ID": "6", "NAME": "Иван", "LAST_NAME": "Петров"}],
    "crm.contact.list": [{"ID": "9", "NAME": "Ержан", "LAST_NAME": "Сапаров"}],
    "crm.company.list": [{"ID": "3", "TITLE": "ТОО Вода"}],
}


class FakePortal:
    """requests stand-in answering webhook calls from a method -> result table."""

    def __init__(self, results, failing=()):
        self.results = results
        self.failing = set(failing)
        self.calls = []

    def post(self, url, json=None, timeout=None):
        method = url.rsplit("/", 1)[-1][:-len(".json")]
        self.calls.append((method, json))
        response = MagicMock(ok=True, status_code=200)
        if method in self.failing:
            response.json.return_value = {"error": "ACCESS_DENIED", "error_description": "Нет доступа"}
        else:
            response.json.return_value = {"result": self.results.get(method, [])}
        return response

    def params(self, method):
        return [params for name, params in self.calls if name == method]


@pytest.fixture
def portal():
    return FakePortal(PORTAL)


@pytest.fixture
def importer(portal):
    client = BitrixClient(WEBHOOK, http_client=portal)
    return BitrixImporter(client, people={"Адиль Аманов": "Отдел продаж"})


def test_enum_items_shapes():
    assert _enum_items([{"ID": 1, "VALUE": "A"}]) == {"1": "A"}
    assert _enum_items([[2, "B"]]) == {"2": "B"}
    assert _enum_items({"3": "C"}) == {"3": "C"}
    assert _enum_items(None) == {}


def test_sales_category_found_by_name(importer):
    assert importer.resolve_sales_category() == 7


def test_sales_category_falls_back(portal):
    portal.failing.add("crm.category.list")
    importer = BitrixImporter(BitrixClient(WEBHOOK, http_client=portal), config={"fallback_category_id": 3})

    assert importer.resolve_sales_category() == 3


def test_stage_map_entity(importer, portal):
    importer.fetch_stage_map(0)
    importer.fetch_stage_map(7)

    entities = [p["filter"]["ENTITY_ID"] for p in portal.params("crm.status.list")]
    assert entities == ["DEAL_STAGE", "DEAL_STAGE_7"]


def test_collect_deals(importer, portal):
    deals, failures = importer.collect_deals()

    assert failures == []
    assert portal.params("crm.deal.list")[0]["filter"] == {"CATEGORY_ID": 7}
    assert portal.params("user.get")[0] == {"ID": ["5", "6"]}

    first, second = deals
    assert first.deal_id == "11"
    assert first.stage == "Договор подписан"
    assert first.responsible == "Адиль Аманов"
    assert first.department == "Отдел продаж"
    assert first.company == "ТОО Вода"
    assert first.contact == "Ержан Сапаров"
    assert first.created_at == "2024-03-01 07:00:00"
    assert first.currency == "KZT"
    assert first.extra["UF_CRM_1589877847"] == "Проектный отдел"
    assert first.extra["UF_CRM_CLIENT"] == "ТОО Вода, Ержан Сапаров"

    assert second.title == "—"
    assert second.stage == "Производство"
    assert second.department == "Проектный отдел"
    assert second.company == "—"
    assert second.contact == "—"


def test_lookup_failure_keeps_ids(importer, portal):
    portal.failing.add("crm.contact.list")

    deals, failures = importer.collect_deals()

    assert [f.kind for f in failures] == ["contacts"]
    assert failures[0].error == "Bitrix24: Нет доступа"
    assert deals[0].contact == "9"
    assert deals[0].extra["UF_CRM_CLIENT"] == "ТОО Вода, C_9"


def test_lookups_are_chunked(portal):
    client = BitrixClient(WEBHOOK, http_client=portal)
    importer = BitrixImporter(client, config={"chunk_size": 2})

    importer.resolve("users", ["1", "2", "3", "0", "", None, "2"])

    assert [p["ID"] for p in portal.params("user.get")] == [["1", "2"], ["3"]]


def test_collect_tasks(importer):
    tasks, failures = importer.collect_tasks()

    assert failures == []
    done, unknown = tasks
    assert done.status == "Завершена"
    assert done.priority == "Высокий"
    assert done.creator == "Адиль Аманов"
    assert done.assignee == "Иван Петров"
    assert len(done.description) == 100
    assert unknown.status == "Неизвестно"
    assert unknown.assignee == "Неизвестно"
    assert unknown.extra["status"] == "99"


def test_import_deals_saves_snapshot_and_files(portal, tmp_path, get_db_manager):
    snapshots = SnapshotStore([LocalSnapshotBackend(str(tmp_path / "snapshots.json"))])
    data_store = DataStore(get_db_manager)
    importer = BitrixImporter(
        BitrixClient(WEBHOOK, http_client=portal), snapshot_store=snapshots, data_store=data_store
    )
    progress = MagicMock()

    result = importer.import_deals(progress)

    assert result.success
    assert result.count == 2
    assert result.snapshot_saved
    assert result.notification.level == "success"
    assert progress.call_count == 3

    stored = snapshots.get_snapshot(result.snapshot_id)
    assert stored.value.deals_count == 2
    assert stored.value.metadata["webhookUrl"] == WEBHOOK
    assert sorted(d.deal_id for d in data_store.load_deals()) == ["11", "12"]
    assert data_store.get_latest_deal_file().name.startswith("bitrix_deals_")


def test_import_deals_without_deal_list(portal):
    portal.failing.add("crm.deal.list")
    importer = BitrixImporter(BitrixClient(WEBHOOK, http_client=portal))

    result = importer.import_deals()

    assert not result.success
    assert result.count == 0
    assert result.notification.level == "error"
    assert result.notification.message == "Bitrix24: Нет доступа"


def test_import_warns_when_snapshot_not_saved(importer):
    importer.snapshot_store = MagicMock()
    importer.snapshot_store.create_snapshot.return_value = MagicMock(success=False, error="disk full")

    result = importer.import_tasks()

    assert result.success
    assert not result.snapshot_saved
    assert result.notification.level == "warning"
    assert "disk full" in result.notification.message


def test_task_snapshot_keeps_raw_codes(importer, tmp_path):
    importer.snapshot_store = SnapshotStore([LocalSnapshotBackend(str(tmp_path / "snapshots.json"))])

    result = importer.import_tasks()

    tasks = {t.task_id: t for t in importer.snapshot_store.get_snapshot(result.snapshot_id).value.tasks()}
    assert tasks["1"].status == "Завершена"
    assert tasks["1"].extra["status"] == "5"
    assert tasks["1"].extra["priority"] == "2"
    assert len(tasks["1"].description) == 100
    assert len(tasks["1"].extra["description"]) == 150


@pytest.mark.parametrize("kind", ["deals", "tasks", "all"])
def test_import_warns_when_database_is_gone(importer, kind):
    connection = sqlite3.connect(":memory:")
    connection.close()
    importer.data_store = DataStore(DatabaseManager(connection))

    result = getattr(importer, f"import_{kind}")()

    assert result.success
    assert result.count > 0
    assert result.notification.level == "warning"
    assert result.notification.title == "Данные загружены, но не сохранены"
    assert "closed database" in result.notification.message


def test_import_all(importer):
    result = importer.import_all()

    assert result.success
    assert result.count == 4
    assert result.to_dict()["count"] == 4
    assert "records" not in result.to_dict()
    assert len(result.to_dict(include_records=True)["records"]) == 4
