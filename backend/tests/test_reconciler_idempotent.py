# backend/tests/test_reconciler_idempotent.py
from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select, update

from slotkeeper.domain.metadata import create_metadata
from slotkeeper.models import AuditEntry, Slot
from slotkeeper.services.safe_view import view_rows


def test_second_sweep_makes_no_corrections_and_keeps_the_view(session_factory, pool, allocator, reconciler, fake_engine):
    """
    Proof: every kind of drift at once, swept twice. The second pass finds
    nothing to correct, writes nothing, and rebuilds an identical view.
    """
    allocator.acquire("alice")
    fake_engine.add("FOLDER-P01-U3", 2)
    fake_engine.add(None)

    db = session_factory()
    try:
        create_metadata(
            db,
            slot_id="FOLDER-P02-U2",
            owner_user_id="bob",
            assigned_at=datetime(2025, 2, 2, 2, 2, 2),
            assigned_by="human",
        )
        db.execute(update(Slot).where(Slot.slot_id == "FOLDER-P02-U3").values(is_assigned=True, user_id=None))
        db.commit()
    finally:
        db.close()

    first = reconciler.sweep()
    assert first.corrections == 3

    db = session_factory()
    try:
        audit_after_first = db.scalar(select(func.count()).select_from(AuditEntry))
        view_after_first = view_rows(db)
    finally:
        db.close()

    second = reconciler.sweep()

    assert second.corrections == 0
    assert second.corrected == []
    assert second.audit_actions == {}
    assert second.safe_slots == first.safe_slots

    db = session_factory()
    try:
        assert db.scalar(select(func.count()).select_from(AuditEntry)) == audit_after_first
        assert view_rows(db) == view_after_first
    finally:
        db.close()
