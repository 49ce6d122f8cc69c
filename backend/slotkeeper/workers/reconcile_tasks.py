# backend/slotkeeper/workers/reconcile_tasks.py
from __future__ import annotations

import logging
from typing import Optional

from ..bootstrap import Components, build_components
from ..errors import SnapshotFailed
from .celery_app import celery_app

log = logging.getLogger("slotkeeper.workers")


def run_sweep(components: Components, *, run_id: Optional[str] = None) -> dict:
    """
    Body of the beat task, callable without a broker.

    SnapshotFailed means nothing was written and the next sweep can try again,
    so it is reported. RollbackFailed is not: it has to reach an operator.
    """
    try:
        report = components.reconciler.sweep(run_id=run_id)
    except SnapshotFailed as e:
        log.error("sweep skipped: %s", e)
        return {"ok": False, "reason": "snapshot_failed", "error": str(e)}

    return {"ok": True, **report.as_dict()}


@celery_app.task(bind=True, name="slotkeeper.workers.reconcile_tasks.sweep_slots")
def sweep_slots(self) -> dict:
    """Daily reconciliation sweep. Uses the celery task id as the run id."""
    components = build_components()
    try:
        return run_sweep(components, run_id=getattr(self.request, "id", None))
    finally:
        components.dispose()
