# app/routes/schema.py
import logging

from flask import Blueprint, jsonify, request

from app.routes.main import data_store
from services.auth import auth

schema_bp = Blueprint('schema', __name__, url_prefix='/schema')

logger = logging.getLogger(__name__)


@schema_bp.route('/analyze', methods=['POST'])
@auth.login_required
def analyze():
    """
    Report fields of a stored file that the table has no column for.

    JSON body:
        table: "deals" or "tasks"
        file_id: stored file to analyze (latest file of that kind if omitted)
        apply: save the file's records and add columns for the important fields
    """
    payload = request.get_json(silent=True) or {}
    table = payload.get("table", "deals")
    if table not in ("deals", "tasks"):
        return jsonify({"error": f"Unknown table: {table}"}), 400

    store = data_store()
    file_id = payload.get("file_id")
    if table == "deals":
        stored = store.get_deal_file(file_id) if file_id else store.get_latest_deal_file()
    else:
        stored = store.get_task_file(file_id) if file_id else store.get_latest_task_file()
    if stored is None:
        return jsonify({"error": "Файл не найден"}), 404

    if payload.get("apply"):
        save = store.save_deals if table == "deals" else store.save_tasks
        result = save(stored.records, apply_schema=True)
        status = 200 if result.success else 500
        return jsonify({"file": stored.id, **result.to_dict()}), status

    analysis = store.analyze(table, stored.records)
    plan = store.plan_columns(table, analysis)
    return jsonify({
        "file": stored.id,
        "analysis": analysis.to_dict(),
        "importantFields": analysis.important_fields,
        "plannedSql": plan.sql,
    })
