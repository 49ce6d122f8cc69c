# backend/slotkeeper/domain/audit.py
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional, Sequence, Union

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..models import AUDIT_ACTIONS, AuditEntry


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _dumps(v: Union[str, dict[str, Any], None]) -> Optional[str]:
    if v is None:
        return None
    if isinstance(v, str):
        return v
    return json.dumps(v, sort_keys=True, default=str)


def audit_write(
    db: Session,
    *,
    slot_id: str,
    action: str,
    user_id: Optional[str] = None,
    details: Union[str, dict[str, Any], None] = None,
    commit: bool = False,
) -> AuditEntry:
    """
    Append one audit entry.

    - Does NOT commit by default (so allocator/reconciler bundle it with the write it describes).
    - Flushes so the row gets its id; entries are ordered by (created_at, id).
    - No update/delete counterpart exists.
    """
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"unknown audit action: {action}")

    row = AuditEntry(
        slot_id=str(slot_id),
        user_id=str(user_id) if user_id is not None else None,
        action=action,
        details=_dumps(details),
        created_at=_utcnow(),
    )
    db.add(row)
    db.flush()
    if commit:
        db.commit()
    return row


def latest_entry(db: Session, *, slot_id: str, actions: Optional[Sequence[str]] = None) -> Optional[AuditEntry]:
    """Most recent entry for the slot, optionally only among the given actions."""
    stmt = select(AuditEntry).where(AuditEntry.slot_id == str(slot_id))
    if actions is not None:
        stmt = stmt.where(AuditEntry.action.in_(list(actions)))
    return db.scalar(stmt.order_by(AuditEntry.created_at.desc(), AuditEntry.id.desc()).limit(1))


def latest_action(db: Session, *, slot_id: str) -> Optional[str]:
    row = latest_entry(db, slot_id=slot_id)
    return row.action if row is not None else None


def entries_for_slot(db: Session, *, slot_id: str) -> list[AuditEntry]:
    return list(
        db.scalars(
            select(AuditEntry)
            .where(AuditEntry.slot_id == str(slot_id))
            .order_by(AuditEntry.created_at.asc(), AuditEntry.id.asc())
        )
    )


def action_histogram(db: Session) -> dict[str, int]:
    rows = db.execute(select(AuditEntry.action, func.count(AuditEntry.id)).group_by(AuditEntry.action)).all()
    return {str(action): int(n) for action, n in rows}
