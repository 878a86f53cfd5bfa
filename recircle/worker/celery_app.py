"""
ReCircle Rewards — background worker.

Runs the evidence retention sweep on its own beat schedule, in its own
process, so a sweeper crash never touches request handling.

    celery -A worker.celery_app worker --beat --loglevel=info
"""

import logging
import os

from celery import Celery
from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(level=logging.INFO)

# ── Configuration ──────────────────────────────────────────────────────────────
CELERY_BROKER_URL     = os.getenv("CELERY_BROKER_URL", os.getenv("REDIS_URL", "redis://localhost:6379/0"))
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)
SWEEP_INTERVAL_SEC    = float(os.getenv("RETENTION_SWEEP_INTERVAL_SEC", "86400"))

celery_app = Celery(
    "recircle_worker",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
    include=["worker.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=1800,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    beat_schedule={
        "sweep-expired-evidence": {
            "task": "worker.tasks.sweep_expired_evidence",
            "schedule": SWEEP_INTERVAL_SEC,   # daily by default
        },
    },
)

if __name__ == "__main__":
    celery_app.start()
