# backend/slotkeeper/services/safe_view.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Mapping, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from ..db import session_scope
from ..models import SafeSlot, Slot, SlotMetadata
from .scanner import ContentScanner, ScanResult

log = logging.getLogger("slotkeeper.safe_view")

# -----------------------------------------------------------------------------
# Safe-slot view
# -----------------------------------------------------------------------------
# free in slots  AND  scan says a *known* zero  AND  no metadata row
#
# It is a candidate list for the allocator and nothing more. The allocator
# re-verifies every candidate before it commits, because this table is stale
# the moment anything else writes.
# -----------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def free_slot_ids(db: Session) -> list[str]:
    return list(db.scalars(select(Slot.slot_id).where(Slot.is_assigned.is_(False)).order_by(Slot.slot_id.asc())))


def rebuild_safe_view(db: Session, *, scans: Mapping[str, ScanResult]) -> list[str]:
    """
    Recompute the view inside the caller's transaction from current slot and
    metadata rows plus the given scan results. A free slot with no scan result
    is left out.
    """
    free = list(db.scalars(select(Slot).where(Slot.is_assigned.is_(False)).order_by(Slot.slot_id.asc())))
    with_meta = set(db.scalars(select(SlotMetadata.slot_id)))

    db.execute(delete(SafeSlot))

    now = _utcnow()
    safe: list[str] = []
    for s in free:
        if s.slot_id in with_meta:
            continue
        res = scans.get(s.slot_id)
        if res is None or not res.definitely_empty:
            continue
        db.add(SafeSlot(slot_id=s.slot_id, project_id=s.project_id, computed_at=now))
        safe.append(s.slot_id)

    db.flush()
    return safe


def refresh_safe_view(session_factory: sessionmaker[Session], scanner: ContentScanner) -> list[str]:
    """Standalone rebuild: read free ids, scan outside any transaction, then rebuild."""
    with session_factory() as db:
        ids = free_slot_ids(db)

    scans = scanner.scan_many(ids)

    with session_scope(session_factory) as db:
        safe = rebuild_safe_view(db, scans=scans)

    log.info("safe-slot view rebuilt: %d of %d free slots are safe", len(safe), len(ids))
    return safe


def candidates(db: Session, *, project_id: Optional[str], limit: int) -> list[SafeSlot]:
    stmt = select(SafeSlot).order_by(SafeSlot.slot_id.asc()).limit(int(limit))
    if project_id is not None:
        stmt = stmt.where(SafeSlot.project_id == str(project_id))
    return list(db.scalars(stmt))


def view_rows(db: Session) -> list[tuple[str, str]]:
    """(slot_id, project_id) pairs, sorted; for comparing two rebuilds."""
    return [
        (sid, pid)
        for sid, pid in db.execute(select(SafeSlot.slot_id, SafeSlot.project_id).order_by(SafeSlot.slot_id.asc())).all()
    ]


def drop_from_view(db: Session, *, slot_id: str) -> None:
    db.execute(delete(SafeSlot).where(SafeSlot.slot_id == str(slot_id)))
