# app/routes/snapshots.py
import logging

from flask import Blueprint, current_app, jsonify, request

from app.routes.main import data_store, snapshot_store
from services.auth import auth
from services.calendar_utils import get_week_range, parse_day

snapshots_bp = Blueprint('snapshots', __name__, url_prefix='/snapshots')

logger = logging.getLogger(__name__)


def _failure(result, not_found="Снимок не найден"):
    if result.missing:
        return jsonify({"error": not_found}), 404
    return jsonify({"error": result.error}), 503


@snapshots_bp.route('', methods=['GET'])
@auth.login_required
def list_snapshots():
    result = snapshot_store().list_snapshots()
    if not result.success:
        return _failure(result)
    return jsonify({
        "snapshots": [s.to_dict() for s in result.value],
        "backend": result.backend,
    })


@snapshots_bp.route('/stats', methods=['GET'])
@auth.login_required
def snapshot_stats():
    result = snapshot_store().snapshot_stats()
    if not result.success:
        return _failure(result)
    return jsonify(result.value)


@snapshots_bp.route('', methods=['POST'])
@auth.login_required
def create_snapshot():
    """
    Capture a snapshot.

    JSON body (all optional):
        deals / tasks: record lists to store as-is
        deal_file / task_file: ids of stored files to take the records from
        week: any day of the week to tag, YYYY-MM-DD or DD.MM.YYYY
    Missing record sources fall back to the latest stored files.
    """
    payload = request.get_json(silent=True) or {}
    store = data_store()

    deals = payload.get("deals")
    if deals is None:
        source = store.get_deal_file(payload["deal_file"]) if payload.get("deal_file") else store.get_latest_deal_file()
        deals = [d.to_dict() for d in source.records] if source else []

    tasks = payload.get("tasks")
    if tasks is None:
        source = store.get_task_file(payload["task_file"]) if payload.get("task_file") else store.get_latest_task_file()
        tasks = [t.to_dict() for t in source.records] if source else []

    week = None
    if payload.get("week"):
        day = parse_day(payload["week"])
        if day is None:
            return jsonify({"error": f"Неверная дата: {payload['week']}"}), 400
        week = get_week_range(day)

    snapshots = snapshot_store()
    result = snapshots.create_snapshot(deals, tasks, week_range=week)
    if not result.success:
        return _failure(result)

    snapshots.cleanup_old_snapshots(current_app.config["SNAPSHOT_KEEP"])
    return jsonify(result.value.summary().to_dict()), 201


@snapshots_bp.route('/<snapshot_id>', methods=['GET'])
@auth.login_required
def get_snapshot(snapshot_id):
    result = snapshot_store().get_snapshot(snapshot_id)
    if not result.success:
        return _failure(result)
    return jsonify(result.value.to_dict())


@snapshots_bp.route('/week/<week_start>', methods=['GET'])
@auth.login_required
def get_snapshot_by_week(week_start):
    day = parse_day(week_start)
    if day is None:
        return jsonify({"error": f"Неверная дата: {week_start}"}), 400
    week = get_week_range(day)
    result = snapshot_store().get_snapshot_by_week(week.start)
    if not result.success:
        return _failure(result, not_found=f"Нет снимка за неделю {week.label}")
    return jsonify(result.value.to_dict())


@snapshots_bp.route('/<snapshot_id>', methods=['DELETE'])
@auth.login_required
def delete_snapshot(snapshot_id):
    result = snapshot_store().delete_snapshot(snapshot_id)
    if not result.success:
        return _failure(result)
    logger.info(f"Deleted snapshot {snapshot_id}")
    return jsonify({"deleted": snapshot_id})
