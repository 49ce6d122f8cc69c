"""slot allocation store: slots, slot_metadata, audit_log, safe_slot_view

Revision ID: 0001_slot_allocation
Revises:
Create Date: 2026-10-19
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect

revision = "0001_slot_allocation"
down_revision = None
branch_labels = None
depends_on = None


def _insp():
    return inspect(op.get_bind())


def _has_table(name: str) -> bool:
    return name in _insp().get_table_names()


def _indexes(table: str) -> set[str]:
    if not _has_table(table):
        return set()
    return {i["name"] for i in _insp().get_indexes(table)}


def upgrade() -> None:
    # -----------------------------
    # slots
    # -----------------------------
    if not _has_table("slots"):
        op.create_table(
            "slots",
            sa.Column("slot_id", sa.String(length=80), primary_key=True),
            sa.Column("project_id", sa.String(length=80), nullable=False),
            sa.Column("is_assigned", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("user_id", sa.String(length=160), nullable=True),
            sa.Column("assigned_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
    ix = _indexes("slots")
    if "ix_slots_project_id" not in ix:
        op.create_index("ix_slots_project_id", "slots", ["project_id"])
    if "ix_slots_user_id" not in ix:
        op.create_index("ix_slots_user_id", "slots", ["user_id"])
    if "ix_slots_project_free" not in ix:
        op.create_index("ix_slots_project_free", "slots", ["project_id", "is_assigned"])

    # -----------------------------
    # slot_metadata (never deleted)
    # -----------------------------
    if not _has_table("slot_metadata"):
        op.create_table(
            "slot_metadata",
            sa.Column("slot_id", sa.String(length=80), sa.ForeignKey("slots.slot_id"), primary_key=True),
            sa.Column("owner_user_id", sa.String(length=160), nullable=False),
            sa.Column("assigned_at", sa.DateTime(), nullable=False),
            sa.Column("assigned_by", sa.String(length=20), nullable=False, server_default="allocator"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
            sa.Column("workflows_created", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_activity_at", sa.DateTime(), nullable=True),
            sa.Column("verification_hash", sa.String(length=64), nullable=False),
        )

    # -----------------------------
    # audit_log (append-only)
    # -----------------------------
    if not _has_table("audit_log"):
        op.create_table(
            "audit_log",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("slot_id", sa.String(length=80), nullable=False),
            sa.Column("user_id", sa.String(length=160), nullable=True),
            sa.Column("action", sa.String(length=20), nullable=False),
            sa.Column("details", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
    ix = _indexes("audit_log")
    if "ix_audit_log_slot_id" not in ix:
        op.create_index("ix_audit_log_slot_id", "audit_log", ["slot_id"])
    if "ix_audit_log_action" not in ix:
        op.create_index("ix_audit_log_action", "audit_log", ["action"])
    if "ix_audit_log_slot_created" not in ix:
        op.create_index("ix_audit_log_slot_created", "audit_log", ["slot_id", "created_at"])

    # -----------------------------
    # safe_slot_view (derived; rebuilt by every sweep)
    # -----------------------------
    if not _has_table("safe_slot_view"):
        op.create_table(
            "safe_slot_view",
            sa.Column("slot_id", sa.String(length=80), primary_key=True),
            sa.Column("project_id", sa.String(length=80), nullable=False),
            sa.Column("computed_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
    if "ix_safe_slot_view_project_id" not in _indexes("safe_slot_view"):
        op.create_index("ix_safe_slot_view_project_id", "safe_slot_view", ["project_id"])


def downgrade() -> None:
    op.drop_table("safe_slot_view")
    op.drop_index("ix_audit_log_slot_created", table_name="audit_log")
    op.drop_index("ix_audit_log_action", table_name="audit_log")
    op.drop_index("ix_audit_log_slot_id", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_table("slot_metadata")
    op.drop_index("ix_slots_project_free", table_name="slots")
    op.drop_index("ix_slots_user_id", table_name="slots")
    op.drop_index("ix_slots_project_id", table_name="slots")
    op.drop_table("slots")
