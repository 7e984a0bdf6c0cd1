# app/routes/bitrix.py
import logging
import threading

from flask import Blueprint, current_app, jsonify, request

from services.auth import auth
from services.bitrix_client import BitrixClient
from services.bitrix_import import BitrixImporter
from services.config_service import WebhookConfigUpdater
from services.data_store import DataStore
from services.exceptions import DataProcessingError
from services.job_service import start_job
from services.snapshot_store import create_snapshot_store

bitrix_bp = Blueprint('bitrix', __name__, url_prefix='/bitrix')

logger = logging.getLogger(__name__)

IMPORT_KINDS = ("deals", "tasks", "all")

# One import of each kind at a time per process.
_loading = {kind: threading.Lock() for kind in IMPORT_KINDS}


def _webhook_updater() -> WebhookConfigUpdater:
    return WebhookConfigUpdater(current_app.extensions["config_manager"])


def _importer_settings() -> dict:
    cfg = current_app.config
    bitrix_cfg = cfg.get("bitrix", {})
    return {
        "sales_category_name": bitrix_cfg.get("sales_category_name") or cfg["BITRIX_SALES_CATEGORY_NAME"],
        "fallback_category_id": bitrix_cfg.get("fallback_category_id") or cfg["BITRIX_FALLBACK_CATEGORY_ID"],
        "department_field": bitrix_cfg.get("department_field"),
        "page_size": cfg["BITRIX_PAGE_SIZE"],
        "chunk_size": cfg["BITRIX_LOOKUP_CHUNK_SIZE"],
    }


@bitrix_bp.route('/settings', methods=['GET', 'POST'])
@auth.login_required
def settings():
    updater = _webhook_updater()

    if request.method == 'POST':
        payload = request.get_json(silent=True) or request.form
        try:
            changed = updater.update_webhook_url(payload.get("webhook_url", ""))
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        return jsonify({"webhookUrl": updater.get_webhook_url(), "changed": changed})

    url = updater.get_webhook_url()
    return jsonify({
        "webhookUrl": url,
        "configured": bool(url),
        "settings": _importer_settings(),
    })


@bitrix_bp.route('/import/<kind>', methods=['POST'])
@auth.login_required
def start_import(kind):
    if kind not in IMPORT_KINDS:
        return jsonify({"error": f"Unknown import kind: {kind}"}), 404

    webhook_url = _webhook_updater().get_webhook_url()
    if not webhook_url:
        return jsonify({"error": "Bitrix24 webhook URL is not configured"}), 400

    lock = _loading[kind]
    if not lock.acquire(blocking=False):
        return jsonify({"error": "Импорт уже выполняется"}), 409

    # Thread-safe copies of what the worker needs from the app
    db_path = current_app.config["database"]
    settings_copy = _importer_settings()
    timeout = current_app.config["BITRIX_TIMEOUT"]
    tz = current_app.config["TIMEZONE"]
    local_file = current_app.config["SNAPSHOT_LOCAL_FILE"]
    local_limit = current_app.config["SNAPSHOT_LOCAL_LIMIT"]

    def work(progress, db):
        importer = BitrixImporter(
            BitrixClient(webhook_url, timeout=timeout),
            snapshot_store=create_snapshot_store(db, local_file, local_limit=local_limit, tz=tz),
            data_store=DataStore(db),
            config=settings_copy,
            tz=tz,
        )
        run = {"deals": importer.import_deals, "tasks": importer.import_tasks, "all": importer.import_all}[kind]
        result = run(progress=progress)
        if not result.success:
            raise DataProcessingError(result.notification.message)
        return result.to_dict()

    try:
        job_id = start_job(f"bitrix_{kind}", db_path, work, on_finish=lock.release)
    except Exception:
        lock.release()
        raise

    logger.info(f"Started Bitrix24 {kind} import as job {job_id}")
    return jsonify({"jobId": job_id, "status": "running"}), 202

