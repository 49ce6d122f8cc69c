# backend/slotkeeper/services/provisioning.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from ..config import settings
from ..domain.audit import audit_write
from ..domain.metadata import all_metadata, create_metadata
from ..models import UNKNOWN_OWNER, Slot
from .guard import SnapshotGuard
from .safe_view import refresh_safe_view
from .scanner import ContentScanner

log = logging.getLogger("slotkeeper.provisioning")


@dataclass(frozen=True)
class ProvisionResult:
    created: int
    existing: int
    total: int
    safe_slots: Optional[int] = None


@dataclass(frozen=True)
class BackfillResult:
    backfilled: list[str] = field(default_factory=list)
    skipped_unknown_owner: list[str] = field(default_factory=list)


def pool_layout(*, project_count: int, slots_per_project: int) -> list[tuple[str, str]]:
    """(slot_id, project_id) for every slot in the configured pool, in allocation order."""
    out: list[tuple[str, str]] = []
    for p in range(1, int(project_count) + 1):
        project_id = settings.project_id_format.format(project=p)
        for s in range(1, int(slots_per_project) + 1):
            out.append((settings.slot_id_format.format(project=p, slot=s), project_id))
    return out


def _guard_for(session_factory: sessionmaker[Session], guard: Optional[SnapshotGuard]) -> SnapshotGuard:
    return guard or SnapshotGuard(
        session_factory,
        backup_dir=settings.backup_dir,
        keep_snapshots=settings.keep_snapshots,
    )


def provision_pool(
    session_factory: sessionmaker[Session],
    *,
    project_count: Optional[int] = None,
    slots_per_project: Optional[int] = None,
    guard: Optional[SnapshotGuard] = None,
    scanner: Optional[ContentScanner] = None,
) -> ProvisionResult:
    """
    Insert whatever slots of the pool are missing. Existing rows are never
    touched, so re-running is a no-op. With a scanner the safe-slot view is
    rebuilt afterwards; without one the view waits for the next sweep.
    """
    layout = pool_layout(
        project_count=project_count or settings.project_count,
        slots_per_project=slots_per_project or settings.slots_per_project,
    )

    def _insert(db: Session) -> int:
        have = set(db.scalars(select(Slot.slot_id)))
        n = 0
        for slot_id, project_id in layout:
            if slot_id in have:
                continue
            db.add(Slot(slot_id=slot_id, project_id=project_id, is_assigned=False, user_id=None))
            n += 1
        db.flush()
        return n

    created = _guard_for(session_factory, guard).with_snapshot_and_transaction(_insert, label="provision-pool")

    with session_factory() as db:
        total = len(list(db.scalars(select(Slot.slot_id))))

    safe = None
    if scanner is not None:
        safe = len(refresh_safe_view(session_factory, scanner))

    log.info("pool provisioned: %d created, %d already present", created, len(layout) - created)
    return ProvisionResult(created=created, existing=len(layout) - created, total=total, safe_slots=safe)


def backfill_metadata(
    session_factory: sessionmaker[Session],
    *,
    guard: Optional[SnapshotGuard] = None,
) -> BackfillResult:
    """
    Give every assigned slot that has a real owner but no metadata row its
    metadata, plus one "assigned" audit entry. For stores that predate the
    metadata table.

    Slots held by the unknown-owner placeholder are skipped: writing metadata
    for them would sign an owner nobody knows.
    """
    backfilled: list[str] = []
    skipped: list[str] = []

    def _backfill(db: Session) -> None:
        metas = all_metadata(db)
        rows = db.scalars(select(Slot).where(Slot.is_assigned.is_(True)).order_by(Slot.slot_id))
        for slot in list(rows):
            if slot.slot_id in metas:
                continue
            if not slot.user_id or slot.user_id == UNKNOWN_OWNER:
                skipped.append(slot.slot_id)
                continue
            create_metadata(
                db,
                slot_id=slot.slot_id,
                owner_user_id=slot.user_id,
                assigned_at=slot.assigned_at or slot.created_at,
                assigned_by="migration",
            )
            audit_write(
                db,
                slot_id=slot.slot_id,
                user_id=slot.user_id,
                action="assigned",
                details="metadata created during migration",
            )
            backfilled.append(slot.slot_id)

    _guard_for(session_factory, guard).with_snapshot_and_transaction(_backfill, label="backfill-metadata")

    if skipped:
        log.warning("backfill skipped %d slot(s) with no known owner: %s", len(skipped), skipped)
    log.info("metadata backfilled for %d slot(s)", len(backfilled))
    return BackfillResult(backfilled=backfilled, skipped_unknown_owner=skipped)
