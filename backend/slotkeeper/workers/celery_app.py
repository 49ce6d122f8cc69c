# backend/slotkeeper/workers/celery_app.py
from __future__ import annotations

import os

from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging

from ..config import settings
from ..logging_config import configure_logging

BROKER = settings.celery_broker_url or os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
BACKEND = settings.celery_result_backend or os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")

celery_app = Celery(
    "slotkeeper",
    broker=BROKER,
    backend=BACKEND,
    include=["slotkeeper.workers.reconcile_tasks"],
)

celery_app.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_reject_on_worker_lost=True,
    task_track_started=True,
    timezone="UTC",
)

# sweeps serialize on the store's write lock anyway; one queue, one worker is plenty
celery_app.conf.task_routes = {
    "slotkeeper.workers.reconcile_tasks.*": {"queue": "reconcile"},
}

celery_app.conf.beat_schedule = {
    "daily-slot-sweep": {
        "task": "slotkeeper.workers.reconcile_tasks.sweep_slots",
        "schedule": crontab(minute=0, hour=int(settings.sweep_hour_utc)),
    },
}


@setup_logging.connect
def _json_logging(**_kwargs) -> None:
    configure_logging()
