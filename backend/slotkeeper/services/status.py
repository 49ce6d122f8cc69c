# backend/slotkeeper/services/status.py
from __future__ import annotations

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..domain.audit import action_histogram
from ..domain.metadata import hash_matches
from ..models import UNKNOWN_OWNER, AuditEntry, SafeSlot, Slot, SlotMetadata


def status_report(db: Session) -> dict[str, Any]:
    """
    Read-only snapshot of the pool for operators.

    suspicious   = slots with any "suspicious" audit entry, or whose metadata hash no longer matches
    needs_review = assigned slots with no owner or the unknown-owner placeholder
    """
    slots = list(db.scalars(select(Slot).order_by(Slot.slot_id)))
    metas = list(db.scalars(select(SlotMetadata)))

    per_project: dict[str, dict[str, int]] = {}
    for s in slots:
        p = per_project.setdefault(s.project_id, {"total": 0, "assigned": 0, "available": 0})
        p["total"] += 1
        if s.is_assigned:
            p["assigned"] += 1
        else:
            p["available"] += 1

    flagged = set(db.scalars(select(AuditEntry.slot_id).where(AuditEntry.action == "suspicious").distinct()))
    flagged.update(m.slot_id for m in metas if not hash_matches(m))

    assigned = sum(1 for s in slots if s.is_assigned)
    return {
        "total": len(slots),
        "assigned": assigned,
        "available": len(slots) - assigned,
        "metadata_rows": len(metas),
        "safe_slots": int(db.scalar(select(func.count()).select_from(SafeSlot)) or 0),
        "audit_actions": action_histogram(db),
        "suspicious": sorted(flagged),
        "needs_review": [s.slot_id for s in slots if s.is_assigned and (not s.user_id or s.user_id == UNKNOWN_OWNER)],
        "per_project": dict(sorted(per_project.items())),
    }
