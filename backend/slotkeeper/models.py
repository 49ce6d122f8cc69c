# backend/slotkeeper/models.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base

AUDIT_ACTIONS = ("assigned", "unassigned", "verified", "warning", "suspicious")
ASSIGNED_BY = ("human", "migration", "allocator", "reconciler")
METADATA_STATUSES = ("active", "archived")

# Owner recorded when the reconciler proves a slot is occupied but nobody can
# say by whom. Keeps is_assigned == (user_id is not None) true.
UNKNOWN_OWNER = "reconciler:unknown-owner"


# -----------------------------
# Allocation store
# -----------------------------
class Slot(Base):
    __tablename__ = "slots"
    __table_args__ = (Index("ix_slots_project_free", "project_id", "is_assigned"),)

    slot_id: Mapped[str] = mapped_column(String(80), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(80), nullable=False, index=True)

    is_assigned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    user_id: Mapped[Optional[str]] = mapped_column(String(160), nullable=True, index=True)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    def as_dict(self) -> dict:
        return {
            "slot_id": self.slot_id,
            "project_id": self.project_id,
            "is_assigned": bool(self.is_assigned),
            "user_id": self.user_id,
            "assigned_at": self.assigned_at.isoformat() if self.assigned_at else None,
        }


# -----------------------------
# Metadata store (assignment history, never removed)
# -----------------------------
class SlotMetadata(Base):
    __tablename__ = "slot_metadata"

    slot_id: Mapped[str] = mapped_column(String(80), ForeignKey("slots.slot_id"), primary_key=True)
    owner_user_id: Mapped[str] = mapped_column(String(160), nullable=False)
    assigned_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    assigned_by: Mapped[str] = mapped_column(String(20), nullable=False, default="allocator")  # human|migration|allocator|reconciler
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")  # active|archived

    workflows_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_activity_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    verification_hash: Mapped[str] = mapped_column(String(64), nullable=False)


# -----------------------------
# Audit log (append-only)
# -----------------------------
class AuditEntry(Base):
    __tablename__ = "audit_log"
    __table_args__ = (Index("ix_audit_log_slot_created", "slot_id", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slot_id: Mapped[str] = mapped_column(String(80), nullable=False, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(160), nullable=True)

    action: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


# -----------------------------
# Safe-slot view (derived, recomputable)
# -----------------------------
class SafeSlot(Base):
    __tablename__ = "safe_slot_view"

    slot_id: Mapped[str] = mapped_column(String(80), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(80), nullable=False, index=True)
    computed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
