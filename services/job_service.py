# services/job_service.py
"""Background jobs tracked in the ``jobs`` table (used for Bitrix24 imports)."""
import json
import logging
import threading
import uuid

from flask import g

from services.database import create_db_manager

logger = logging.getLogger(__name__)

RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
ABORTED = "aborted"
FINISHED = (COMPLETED, FAILED, ABORTED)


def create_job(job_id, kind=None, db=None):
    if db is None:
        db = g.db
    db.execute_query(
        "INSERT INTO jobs (id, kind, status, pct, log) VALUES (?, ?, ?, ?, ?)",
        (job_id, kind, RUNNING, 0, json.dumps([])),
    )
    db.commit()


def update_job(job_id, pct=None, message=None, error=None, result=None, done=False, db=None):
    """
    Append to the job log and move its status forward.

    Args:
        job_id: Job identifier
        pct: Progress percentage (0-100); None keeps the current value
        message: Log line to append
        error: Error message; marks the job failed
        result: JSON-serializable result
        done: Marks the job completed
    """
    if db is None:
        db = g.db
    row = db.execute_query("SELECT log, pct FROM jobs WHERE id=?", (job_id,)).fetchone()
    if row is None:
        logger.warning(f"update_job: unknown job {job_id}")
        return

    logs = json.loads(row["log"] or "[]")
    if message:
        logs.append(message)

    if error:
        status = FAILED
    elif done:
        status = COMPLETED
    else:
        status = RUNNING

    db.execute_query(
        "UPDATE jobs SET pct=?, log=?, error=?, result=?, status=?, updated_at=CURRENT_TIMESTAMP WHERE id=?",
        (
            row["pct"] if pct is None else pct,
            json.dumps(logs, ensure_ascii=False),
            error,
            json.dumps(result, ensure_ascii=False, default=str) if result is not None else None,
            status,
            job_id,
        ),
    )
    db.commit()


def get_job(job_id, db=None):
    """
    Returns dict with keys: id, kind, pct, log, done, error, result, status
    """
    if db is None:
        db = g.db
    row = db.execute_query("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
    if not row:
        return None

    result = None
    if row["result"]:
        try:
            result = json.loads(row["result"])
        except (json.JSONDecodeError, TypeError):
            result = row["result"]

    return {
        "id": row["id"],
        "kind": row["kind"],
        "pct": row["pct"] or 0,
        "log": json.loads(row["log"] or "[]"),
        "done": row["status"] in FINISHED,
        "error": row["error"],
        "result": result,
        "status": row["status"],
    }


def make_progress(job_id, db=None):
    """Progress callback (message, pct=None) that writes to the job row."""
    if db is None:
        db = g.db

    def progress(message, pct=None):
        update_job(job_id, pct=pct, message=message, db=db)

    return progress


def cleanup_stale_jobs(db):
    """Mark jobs left running by a previous process as aborted."""
    cursor = db.execute_query(
        "UPDATE jobs SET status=?, pct=0 WHERE status=?", (ABORTED, RUNNING)
    )
    db.commit()
    if cursor.rowcount:
        logger.info(f"Marked {cursor.rowcount} stale jobs as aborted")


def start_job(kind, db_path, work, on_finish=None):
    """
    Run ``work(progress, db)`` on a daemon thread with its own connection.

    ``work`` returns the JSON result stored on the job. ``on_finish`` runs in
    the thread after the job settles, whatever the outcome.

    Returns:
        str: The job id.
    """
    job_id = uuid.uuid4().hex
    setup_db = create_db_manager(db_path)
    try:
        create_job(job_id, kind=kind, db=setup_db)
    finally:
        setup_db.close()

    def runner():
        db = create_db_manager(db_path)
        try:
            try:
                import sentry_sdk
                with sentry_sdk.start_transaction(op="task", name=f"{kind}_job"):
                    _run(job_id, db, work)
            except ImportError:
                _run(job_id, db, work)
        finally:
            db.close()
            if on_finish is not None:
                on_finish()

    threading.Thread(name=f"{kind}-{job_id[:8]}", target=runner, daemon=True).start()
    return job_id


def _run(job_id, db, work):
    progress = make_progress(job_id, db)
    try:
        progress("Старт", 1)
        result = work(progress, db)
        update_job(job_id, pct=100, message="Готово", done=True, result=result, db=db)
    except Exception as e:
        logger.exception(f"Job {job_id} failed")
        update_job(job_id, pct=0, message=f"Ошибка: {e}", error=str(e), db=db)
