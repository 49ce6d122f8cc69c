# backend/slotkeeper/domain/metadata.py
from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import ASSIGNED_BY, SlotMetadata


def verification_hash(slot_id: str, owner_user_id: str, assigned_at: datetime) -> str:
    """
    Stable tamper-evidence fingerprint for a metadata row.
    Any hand edit of owner or assignment time makes it stop matching.
    """
    blob = f"{slot_id}:{owner_user_id}:{assigned_at.replace(microsecond=0).isoformat()}".encode("utf-8")
    return hashlib.sha256(blob).hexdigest()


def hash_matches(meta: SlotMetadata) -> bool:
    return meta.verification_hash == verification_hash(meta.slot_id, meta.owner_user_id, meta.assigned_at)


def get_metadata(db: Session, *, slot_id: str) -> Optional[SlotMetadata]:
    return db.scalar(select(SlotMetadata).where(SlotMetadata.slot_id == str(slot_id)))


def all_metadata(db: Session) -> dict[str, SlotMetadata]:
    return {m.slot_id: m for m in db.scalars(select(SlotMetadata))}


def create_metadata(
    db: Session,
    *,
    slot_id: str,
    owner_user_id: str,
    assigned_at: datetime,
    assigned_by: str,
) -> SlotMetadata:
    """
    Insert the metadata row for a fresh assignment. Flush-only, no commit.

    A second insert for the same slot fails on the primary key, which the
    allocator treats as losing the race.
    """
    if assigned_by not in ASSIGNED_BY:
        raise ValueError(f"unknown assigned_by: {assigned_by}")

    assigned_at = assigned_at.replace(microsecond=0)
    row = SlotMetadata(
        slot_id=str(slot_id),
        owner_user_id=str(owner_user_id),
        assigned_at=assigned_at,
        assigned_by=assigned_by,
        status="active",
        workflows_created=0,
        last_activity_at=assigned_at,
        verification_hash=verification_hash(slot_id, owner_user_id, assigned_at),
    )
    db.add(row)
    db.flush()
    return row
