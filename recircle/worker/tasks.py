"""
Retention background tasks.
"""
import logging

from worker.celery_app import celery_app
from engine.errors import StorageFailure
from engine.retention import RetentionSweeper

logger = logging.getLogger("recircle.worker")


@celery_app.task(name="worker.tasks.sweep_expired_evidence")
def sweep_expired_evidence():
    """
    Delete evidence past the retention window.
    Runs daily via beat schedule. A storage outage is logged and reported in
    the result; the next scheduled run tries again.
    """
    logger.info("[SWEEP] Starting evidence retention sweep")
    try:
        result = RetentionSweeper().sweep()
    except StorageFailure as e:
        logger.error(f"[SWEEP] Retention sweep aborted, storage unavailable: {e}")
        return {"ok": False, "deleted_count": 0, "error": str(e)}

    logger.info(f"[SWEEP] Deleted {result.deleted_count} expired evidence records")
    return {"ok": True, **result.to_dict()}
