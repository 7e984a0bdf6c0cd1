import io
import json

import pytest
from base64 import b64encode
from werkzeug.datastructures import FileStorage

from services.config_service import ConfigManager
from services.database import create_db_manager, init_db
from app import create_app


TEST_CONFIG = {
    "bitrix": {
        "webhook_url": "",
        "sales_category_name": "продаж",
        "fallback_category_id": 1,
        "department_field": "UF_CRM_1589877847",
    },
    "snapshots": {"local_file": "snapshots.json", "local_limit": 10, "keep": 100},
    "timezone": "Asia/Almaty",
}

DEALS_CSV = (
    "ID;Название;Ответственный;Стадия сделки;Дата создания;Дата изменения;Сумма\n"
    "101;Насосная станция;Адиль Аманов;ткп отправлено;01.03.2024 10:15;11.03.2024;1500000\n"
    "102;Очистные сооружения;Коваль Дмитрий;Договор подписан;02.03.2024;12.03.2024;900000\n"
    "103;Без стадии;Аблай Каракожаев;;03.03.2024;13.03.2024;0\n"
)

TASKS_CSV = (
    "ID;Название;Постановщик;Исполнитель;Статус;Дата создания\n"
    "1;Подготовить ТКП;Адиль Аманов;Дмитрий Коваль;В работе;01.03.2024\n"
    "2;Согласовать договор;Асан Тортаев;Асан Тортаев;Завершена;02.03.2024\n"
)


@pytest.fixture
def config_file(tmp_path):
    """config.json copy so settings changes never touch the repository file."""
    path = tmp_path / "config.json"
    path.write_text(json.dumps(TEST_CONFIG, ensure_ascii=False), encoding="utf-8")
    return path


@pytest.fixture
def config_manager(config_file):
    return ConfigManager(str(config_file))


@pytest.fixture
def app(tmp_path, config_file, monkeypatch):
    """App on a throwaway database, snapshot file and config."""
    monkeypatch.delenv("BITRIX_WEBHOOK_URL", raising=False)
    app = create_app('Testing', overrides={
        "database": str(tmp_path / "test.db"),
        "SNAPSHOT_LOCAL_FILE": str(tmp_path / "snapshots.json"),
        "CONFIG_JSON_PATH": str(config_file),
        "EXPORT_ROOT": str(tmp_path / "exports"),
        "USERS": {"testuser": "testpassword"},
    })
    yield app
    app.extensions["db_manager"].close()


@pytest.fixture
def app_context(app):
    """Fixture for Flask app context."""
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def get_db_manager():
    """Fixture for database manager with per-test isolation."""
    db_manager = create_db_manager(":memory:")  # Use an in-memory database for isolation
    init_db(db_manager=db_manager)
    yield db_manager
    db_manager.close()  # Ensure database connection is closed after the test


@pytest.fixture
def auth_headers():
    """Fixture for authorization headers."""
    credentials = b64encode(b"testuser:testpassword").decode("utf-8")
    return {
        'Authorization': f'Basic {credentials}'
    }


def _make_upload(text, filename="export.csv", encoding="utf-8"):
    return FileStorage(stream=io.BytesIO(text.encode(encoding)), filename=filename)


@pytest.fixture
def make_upload():
    """Builds a FileStorage holding ``text`` encoded as an exported CSV would be."""
    return _make_upload


@pytest.fixture
def deals_csv():
    return DEALS_CSV


@pytest.fixture
def tasks_csv():
    return TASKS_CSV
