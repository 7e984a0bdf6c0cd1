# app/routes/main.py
import logging

from flask import Blueprint, current_app, g, jsonify

from services.auth import auth
from services.data_store import DataStore
from services.job_service import get_job
from services.database import DatabaseError
from services.snapshot_store import create_snapshot_store

# Create Blueprint
main_routes_bp = Blueprint('main_routes', __name__)

# Get logger
logger = logging.getLogger(__name__)


def data_store() -> DataStore:
    """DataStore on the per-request connection."""
    return DataStore(g.db)


def snapshot_store():
    """Snapshot chain (database first, then the local JSON file) for this request."""
    return create_snapshot_store(
        g.db,
        current_app.config["SNAPSHOT_LOCAL_FILE"],
        local_limit=current_app.config["SNAPSHOT_LOCAL_LIMIT"],
        tz=current_app.config["TIMEZONE"],
    )


@main_routes_bp.route('/')
@auth.login_required
def homepage():
    store = data_store()
    latest_deals = store.get_latest_deal_file()
    latest_tasks = store.get_latest_task_file()
    stats = snapshot_store().snapshot_stats()
    return jsonify({
        "user": auth.current_user(),
        "latestDealFile": latest_deals.to_dict(include_records=False) if latest_deals else None,
        "latestTaskFile": latest_tasks.to_dict(include_records=False) if latest_tasks else None,
        "snapshots": stats.value if stats.success else None,
    })


@main_routes_bp.route('/health')
def health():
    try:
        g.db.execute_query("SELECT 1").fetchone()
        db_ok = True
    except DatabaseError as e:
        logger.error(f"Health check failed: {e}")
        db_ok = False
    return jsonify({"status": "ok" if db_ok else "degraded", "database": db_ok}), 200 if db_ok else 503


@main_routes_bp.route('/jobs/<job_id>')
@auth.login_required
def job_status(job_id):
    job = get_job(job_id)
    if not job:
        return jsonify({"error": "Unknown job ID"}), 404
    return jsonify(job)
