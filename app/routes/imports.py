# app/routes/imports.py
import logging

from flask import Blueprint, current_app, jsonify, request, send_file

from app.routes.main import data_store
from services import notifications
from services.auth import auth
from services.database import DatabaseError
from services.excel import XLSX_MIMETYPE, records_to_workbook
from services.exceptions import ImportValidationError
from services.upload import import_deals_csv, import_tasks_csv

imports_bp = Blueprint('imports', __name__)

logger = logging.getLogger(__name__)


def _import(importer, **kwargs):
    upload = request.files.get('file')
    mode = request.form.get('mode', 'replace')
    merge_into = request.form.get('merge_into') or None
    try:
        result = importer(data_store(), upload, mode=mode, merge_into=merge_into, **kwargs)
    except ImportValidationError as e:
        logger.warning(f"Rejected upload: {e.message}")
        return jsonify({"error": e.message}), 400
    except DatabaseError as e:
        note = notifications.error("Файл не сохранён", str(e))
        return jsonify({"error": note.message, "notification": note.to_dict()}), 500
    return jsonify(result.to_dict()), 201


@imports_bp.route('/deals/import', methods=['POST'])
@auth.login_required
def import_deals():
    return _import(import_deals_csv, tz=current_app.config["TIMEZONE"])


@imports_bp.route('/tasks/import', methods=['POST'])
@auth.login_required
def import_tasks():
    return _import(import_tasks_csv)


@imports_bp.route('/deals/files', methods=['GET'])
@auth.login_required
def list_deal_files():
    return jsonify([f.to_dict(include_records=False) for f in data_store().list_deal_files()])


@imports_bp.route('/tasks/files', methods=['GET'])
@auth.login_required
def list_task_files():
    return jsonify([f.to_dict(include_records=False) for f in data_store().list_task_files()])


@imports_bp.route('/deals/files/<file_id>', methods=['GET'])
@auth.login_required
def get_deal_file(file_id):
    stored = data_store().get_deal_file(file_id)
    if stored is None:
        return jsonify({"error": "Файл не найден"}), 404
    return jsonify(stored.to_dict())


@imports_bp.route('/tasks/files/<file_id>', methods=['GET'])
@auth.login_required
def get_task_file(file_id):
    stored = data_store().get_task_file(file_id)
    if stored is None:
        return jsonify({"error": "Файл не найден"}), 404
    return jsonify(stored.to_dict())


@imports_bp.route('/deals/files/<file_id>', methods=['DELETE'])
@auth.login_required
def delete_deal_file(file_id):
    if not data_store().delete_deal_file(file_id):
        return jsonify({"error": "Файл не найден"}), 404
    logger.info(f"Deleted deal file {file_id}")
    return jsonify({"deleted": file_id})


@imports_bp.route('/tasks/files/<file_id>', methods=['DELETE'])
@auth.login_required
def delete_task_file(file_id):
    if not data_store().delete_task_file(file_id):
        return jsonify({"error": "Файл не найден"}), 404
    logger.info(f"Deleted task file {file_id}")
    return jsonify({"deleted": file_id})


@imports_bp.route('/deals/files/<file_id>/export', methods=['GET'])
@auth.login_required
def export_deal_file(file_id):
    stored = data_store().get_deal_file(file_id)
    if stored is None:
        return jsonify({"error": "Файл не найден"}), 404
    output = records_to_workbook(stored.records, sheet_name="Сделки")
    return send_file(
        output,
        as_attachment=True,
        download_name=f"deals_{file_id[:8]}.xlsx",
        mimetype=XLSX_MIMETYPE,
    )


@imports_bp.route('/tasks/files/<file_id>/export', methods=['GET'])
@auth.login_required
def export_task_file(file_id):
    stored = data_store().get_task_file(file_id)
    if stored is None:
        return jsonify({"error": "Файл не найден"}), 404
    output = records_to_workbook(stored.records, sheet_name="Задачи")
    return send_file(
        output,
        as_attachment=True,
        download_name=f"tasks_{file_id[:8]}.xlsx",
        mimetype=XLSX_MIMETYPE,
    )


@imports_bp.route('/deals', methods=['GET'])
@auth.login_required
def stored_deals():
    """Deals kept in the deals table (Bitrix24 imports and applied schema runs)."""
    return jsonify([d.to_dict() for d in data_store().load_deals()])


@imports_bp.route('/tasks', methods=['GET'])
@auth.login_required
def stored_tasks():
    return jsonify([t.to_dict() for t in data_store().load_tasks()])
