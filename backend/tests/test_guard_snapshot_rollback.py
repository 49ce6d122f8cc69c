# backend/tests/test_guard_snapshot_rollback.py
from __future__ import annotations

import pytest
from sqlalchemy import func, select, update

from slotkeeper.domain.audit import audit_write
from slotkeeper.errors import RollbackFailed, SnapshotFailed
from slotkeeper.models import AuditEntry, Slot, SlotMetadata
from slotkeeper.services.guard import SnapshotGuard, load_snapshot, restore_snapshot, take_snapshot
from slotkeeper.services.runtime_metrics import METRICS


def _snapshot_files(path) -> list:
    return sorted(path.glob("*.json")) if path.exists() else []


def test_success_commits_and_discards_snapshot(session_factory, pool, tmp_path):
    backups = tmp_path / "bk-ok"
    g = SnapshotGuard(session_factory, backup_dir=str(backups))

    def op(db):
        audit_write(db, slot_id="FOLDER-P01-U1", action="warning", details="guarded write")
        return "done"

    assert g.with_snapshot_and_transaction(op, label="test") == "done"
    assert _snapshot_files(backups) == []

    db = session_factory()
    try:
        assert db.scalar(select(func.count()).select_from(AuditEntry)) == 1
    finally:
        db.close()


def test_keep_snapshots_leaves_file_behind(session_factory, pool, tmp_path):
    backups = tmp_path / "bk-keep"
    g = SnapshotGuard(session_factory, backup_dir=str(backups), keep_snapshots=True)
    g.with_snapshot_and_transaction(lambda db: None)

    files = _snapshot_files(backups)
    assert len(files) == 1
    snap = load_snapshot(files[0])
    assert snap.row_counts() == {"slots": 6, "slot_metadata": 0, "audit_log": 0}


def test_failure_rolls_back_and_reraises_original(session_factory, pool, tmp_path):
    backups = tmp_path / "bk-fail"
    g = SnapshotGuard(session_factory, backup_dir=str(backups))

    def op(db):
        db.execute(update(Slot).where(Slot.slot_id == "FOLDER-P01-U1").values(is_assigned=True, user_id="x"))
        audit_write(db, slot_id="FOLDER-P01-U1", action="warning")
        raise KeyError("boom")

    with pytest.raises(KeyError):
        g.with_snapshot_and_transaction(op, label="failing")

    db = session_factory()
    try:
        assert db.get(Slot, "FOLDER-P01-U1").is_assigned is False
        assert db.scalar(select(func.count()).select_from(AuditEntry)) == 0
    finally:
        db.close()

    assert g.last_failed_snapshot is not None
    assert g.last_failed_snapshot.path is not None and g.last_failed_snapshot.path.exists()
    assert METRICS.get("guard_rollbacks") == 1


def test_snapshot_failure_means_op_never_runs(session_factory, pool, tmp_path):
    not_a_dir = tmp_path / "occupied"
    not_a_dir.write_text("x", encoding="utf-8")
    g = SnapshotGuard(session_factory, backup_dir=str(not_a_dir))
    called = []

    with pytest.raises(SnapshotFailed):
        g.with_snapshot_and_transaction(lambda db: called.append(1))
    assert called == []


def test_rollback_failure_raises_with_snapshot(session_factory, pool, caplog):
    g = SnapshotGuard(session_factory)

    def op(db):
        def broken_rollback():
            raise RuntimeError("connection lost during rollback")

        db.rollback = broken_rollback
        raise ValueError("op failed")

    with pytest.raises(RollbackFailed) as ei:
        g.with_snapshot_and_transaction(op, label="doomed")

    assert ei.value.snapshot is not None
    assert ei.value.snapshot.row_counts()["slots"] == 6
    assert isinstance(ei.value.__cause__, RuntimeError)
    assert any(r.levelname == "CRITICAL" for r in caplog.records)


def test_restore_snapshot_puts_rows_back(session_factory, pool, allocator):
    db = session_factory()
    try:
        snap = take_snapshot(db)
    finally:
        db.close()

    allocator.acquire("alice")

    db = session_factory()
    try:
        restore_snapshot(db, snap)
        db.commit()
    finally:
        db.close()

    db = session_factory()
    try:
        assert db.scalar(select(func.count()).select_from(Slot).where(Slot.is_assigned.is_(True))) == 0
        assert db.scalar(select(func.count()).select_from(SlotMetadata)) == 0
        assert db.scalar(select(func.count()).select_from(AuditEntry)) == 0
    finally:
        db.close()


def test_failed_sweep_leaves_store_untouched(session_factory, pool, reconciler, fake_engine, monkeypatch):
    import slotkeeper.services.reconciler as reconciler_mod

    fake_engine.add("FOLDER-P01-U1", 2)

    def broken_rebuild(db, *, scans):
        raise RuntimeError("view rebuild failed")

    monkeypatch.setattr(reconciler_mod, "rebuild_safe_view", broken_rebuild)

    with pytest.raises(RuntimeError):
        reconciler.sweep()

    db = session_factory()
    try:
        assert db.get(Slot, "FOLDER-P01-U1").is_assigned is False
        assert db.scalar(select(func.count()).select_from(AuditEntry)) == 0
    finally:
        db.close()
