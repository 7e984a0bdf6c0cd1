# app/routes/compare.py
import logging

from flask import Blueprint, jsonify, request, send_file

from app.routes.main import data_store, snapshot_store
from services.auth import auth
from services.differ import compare_deals, compare_tasks
from services.excel import XLSX_MIMETYPE, comparison_to_workbook

compare_bp = Blueprint('compare', __name__, url_prefix='/compare')

logger = logging.getLogger(__name__)

SNAPSHOT_PREFIX = "snapshot:"


class SourceNotFound(LookupError):
    pass


def _load(ref: str, kind: str):
    """Records behind a file id or ``snapshot:<id>`` reference."""
    if ref.startswith(SNAPSHOT_PREFIX):
        result = snapshot_store().get_snapshot(ref[len(SNAPSHOT_PREFIX):])
        if not result.success:
            raise SourceNotFound(ref)
        return result.value.deals() if kind == "deals" else result.value.tasks()

    store = data_store()
    stored = store.get_deal_file(ref) if kind == "deals" else store.get_task_file(ref)
    if stored is None:
        raise SourceNotFound(ref)
    return stored.records


def _sources(kind: str):
    old_ref = request.args.get("old")
    new_ref = request.args.get("new")
    if not old_ref or not new_ref:
        return None, (jsonify({"error": "Укажите параметры old и new"}), 400)
    try:
        return (_load(old_ref, kind), _load(new_ref, kind)), None
    except SourceNotFound as e:
        return None, (jsonify({"error": f"Источник не найден: {e}"}), 404)


@compare_bp.route('/deals', methods=['GET'])
@auth.login_required
def deals():
    pair, error = _sources("deals")
    if error:
        return error
    return jsonify(compare_deals(*pair).to_dict())


@compare_bp.route('/tasks', methods=['GET'])
@auth.login_required
def tasks():
    pair, error = _sources("tasks")
    if error:
        return error
    return jsonify(compare_tasks(*pair).to_dict())


@compare_bp.route('/deals/export', methods=['GET'])
@auth.login_required
def export_deals():
    pair, error = _sources("deals")
    if error:
        return error
    output = comparison_to_workbook(compare_deals(*pair))
    return send_file(
        output,
        as_attachment=True,
        download_name="deals_comparison.xlsx",
        mimetype=XLSX_MIMETYPE,
    )


@compare_bp.route('/tasks/export', methods=['GET'])
@auth.login_required
def export_tasks():
    pair, error = _sources("tasks")
    if error:
        return error
    output = comparison_to_workbook(compare_tasks(*pair))
    return send_file(
        output,
        as_attachment=True,
        download_name="tasks_comparison.xlsx",
        mimetype=XLSX_MIMETYPE,
    )
