import io

import pytest

from app.routes import bitrix
from services.data_store import DataStore
from services.database import DatabaseError, create_db_manager
from services.excel import XLSX_MIMETYPE
from services.job_service import create_job

SCHEMA_CSV = (
    "ID;Название;Ответственный;Стадия сделки;Region\n"
    "1;Насосная;Адиль Аманов;Новая;Алматы\n"
    "2;Очистные;Адиль Аманов;Новая;Астана\n"
)


class TestRoutes:
    """Class-based tests for Flask routes."""

    @pytest.fixture(autouse=True)
    def setup(self, client, auth_headers):
        """Set up the test client and credentials."""
        self.client = client
        self.headers = auth_headers

    def _upload(self, kind, text, filename="export.csv", **form):
        data = {'file': (io.BytesIO(text.encode('utf-8')), filename), **form}
        return self.client.post(
            f'/{kind}/import',
            data=data,
            content_type='multipart/form-data',
            headers=self.headers
        )

    def test_health(self):
        response = self.client.get('/health')
        assert response.status_code == 200
        assert response.get_json() == {"status": "ok", "database": True}
        assert 'X-Request-Duration' in response.headers

    def test_login_required(self):
        assert self.client.get('/').status_code == 401
        assert self.client.get('/deals/files').status_code == 401

    def test_home_route(self):
        response = self.client.get('/', headers=self.headers)
        assert response.status_code == 200
        body = response.get_json()
        assert body["user"] == "testuser"
        assert body["latestDealFile"] is None
        assert body["snapshots"]["totalSnapshots"] == 0

    def test_deal_file_lifecycle(self, deals_csv):
        response = self._upload('deals', deals_csv, 'deals.csv')
        assert response.status_code == 201
        file_id = response.get_json()["file"]["id"]
        assert response.get_json()["imported"] == 3

        listed = self.client.get('/deals/files', headers=self.headers).get_json()
        assert [f["id"] for f in listed] == [file_id]
        assert "rows" not in listed[0]

        stored = self.client.get(f'/deals/files/{file_id}', headers=self.headers).get_json()
        assert len(stored["rows"]) == 3

        export = self.client.get(f'/deals/files/{file_id}/export', headers=self.headers)
        assert export.status_code == 200
        assert export.mimetype == XLSX_MIMETYPE

        assert self.client.delete(f'/deals/files/{file_id}', headers=self.headers).status_code == 200
        assert self.client.get(f'/deals/files/{file_id}', headers=self.headers).status_code == 404

    def test_import_without_file(self):
        response = self.client.post('/deals/import', data={}, headers=self.headers)
        assert response.status_code == 400
        assert response.get_json()["error"] == "Файл не выбран"

    def test_import_storage_failure(self, mocker, deals_csv):
        mocker.patch.object(
            DataStore, 'save_deal_file', side_effect=DatabaseError("Insertion failed: disk I/O error")
        )

        response = self._upload('deals', deals_csv, 'deals.csv')

        assert response.status_code == 500
        body = response.get_json()
        assert body["error"] == "Insertion failed: disk I/O error"
        assert body["notification"]["level"] == "error"
        assert body["notification"]["title"] == "Файл не сохранён"

    def test_task_import(self, tasks_csv):
        response = self._upload('tasks', tasks_csv, 'tasks.csv')
        assert response.status_code == 201

        listed = self.client.get('/tasks/files', headers=self.headers).get_json()
        assert listed[0]["count"] == 2

    def test_snapshot_from_latest_files(self, deals_csv, tasks_csv):
        self._upload('deals', deals_csv)
        self._upload('tasks', tasks_csv)

        response = self.client.post('/snapshots', json={"week": "13.03.2024"}, headers=self.headers)
        assert response.status_code == 201
        summary = response.get_json()
        assert summary["dealsCount"] == 3
        assert summary["tasksCount"] == 2
        assert summary["weekStart"] == "2024-03-11"

        by_week = self.client.get('/snapshots/week/2024-03-15', headers=self.headers)
        assert by_week.status_code == 200
        assert by_week.get_json()["id"] == summary["id"]

        listed = self.client.get('/snapshots', headers=self.headers).get_json()
        assert listed["backend"] == "database"
        assert [s["id"] for s in listed["snapshots"]] == [summary["id"]]

        assert self.client.delete(f'/snapshots/{summary["id"]}', headers=self.headers).status_code == 200
        assert self.client.get(f'/snapshots/{summary["id"]}', headers=self.headers).status_code == 404

    def test_snapshot_bad_week(self):
        response = self.client.post('/snapshots', json={"week": "позавчера"}, headers=self.headers)
        assert response.status_code == 400

    def test_snapshot_missing_week(self):
        response = self.client.get('/snapshots/week/2020-01-06', headers=self.headers)
        assert response.status_code == 404

    def test_compare_files_and_snapshots(self, deals_csv):
        old_id = self._upload('deals', deals_csv).get_json()["file"]["id"]
        snapshot = self.client.post('/snapshots', json={"deal_file": old_id, "tasks": []}, headers=self.headers)
        snapshot_id = snapshot.get_json()["id"]
        update = "ID;Ответственный;Стадия сделки\n101;Адиль Аманов;Договор подписан\n"
        new_id = self._upload('deals', update).get_json()["file"]["id"]

        response = self.client.get(f'/compare/deals?old=snapshot:{snapshot_id}&new={new_id}', headers=self.headers)

        assert response.status_code == 200
        body = response.get_json()
        assert body["totalChange"] == -2
        assert [t["dealId"] for t in body["stageTransitions"]] == ["101"]

        export = self.client.get(f'/compare/deals/export?old={old_id}&new={new_id}', headers=self.headers)
        assert export.status_code == 200
        assert export.mimetype == XLSX_MIMETYPE

    def test_compare_requires_both_sources(self):
        assert self.client.get('/compare/tasks?old=x', headers=self.headers).status_code == 400
        assert self.client.get('/compare/tasks?old=x&new=y', headers=self.headers).status_code == 404

    def test_schema_analyze_and_apply(self):
        self._upload('deals', SCHEMA_CSV)

        dry_run = self.client.post('/schema/analyze', json={"table": "deals"}, headers=self.headers)
        assert dry_run.status_code == 200
        body = dry_run.get_json()
        assert body["importantFields"] == ["Region"]
        assert body["plannedSql"] == ['ALTER TABLE deals ADD COLUMN "region" VARCHAR(255);']

        applied = self.client.post('/schema/analyze', json={"table": "deals", "apply": True}, headers=self.headers)
        assert applied.status_code == 200
        assert applied.get_json()["addedColumns"] == ["region"]

        stored = self.client.get('/deals', headers=self.headers).get_json()
        assert sorted(d["dealId"] for d in stored) == ["1", "2"]

    def test_schema_unknown_table(self):
        response = self.client.post('/schema/analyze', json={"table": "leads"}, headers=self.headers)
        assert response.status_code == 400

    def test_bitrix_settings(self):
        response = self.client.get('/bitrix/settings', headers=self.headers)
        assert response.get_json()["configured"] is False

        response = self.client.post(
            '/bitrix/settings', json={"webhook_url": "https://portal.bitrix24.kz/rest/1/abc"}, headers=self.headers
        )
        assert response.get_json() == {"webhookUrl": "https://portal.bitrix24.kz/rest/1/abc/", "changed": True}

        response = self.client.post('/bitrix/settings', json={"webhook_url": "portal"}, headers=self.headers)
        assert response.status_code == 400

    def test_bitrix_import_needs_webhook(self):
        assert self.client.post('/bitrix/import/deals', headers=self.headers).status_code == 400
        assert self.client.post('/bitrix/import/leads', headers=self.headers).status_code == 404

    def test_bitrix_import_starts_job(self, mocker):
        self.client.post('/bitrix/settings', json={"webhook_url": "https://p.bitrix24.kz/rest/1/x"}, headers=self.headers)
        start_job = mocker.patch.object(bitrix, 'start_job', return_value='job123')

        response = self.client.post('/bitrix/import/tasks', headers=self.headers)
        try:
            assert response.status_code == 202
            assert response.get_json() == {"jobId": "job123", "status": "running"}
            assert start_job.call_args.args[0] == "bitrix_tasks"

            busy = self.client.post('/bitrix/import/tasks', headers=self.headers)
            assert busy.status_code == 409
        finally:
            start_job.call_args.kwargs["on_finish"]()

        assert not bitrix._loading["tasks"].locked()

    def test_job_status(self, app):
        assert self.client.get('/jobs/nope', headers=self.headers).status_code == 404

        db = create_db_manager(app.config["database"])
        try:
            create_job("job1", kind="bitrix_deals", db=db)
        finally:
            db.close()

        job = self.client.get('/jobs/job1', headers=self.headers).get_json()
        assert job["kind"] == "bitrix_deals"
        assert job["status"] == "running"
