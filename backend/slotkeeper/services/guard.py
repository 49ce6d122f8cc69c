# backend/slotkeeper/services/guard.py
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from ..errors import RollbackFailed, SnapshotFailed
from ..models import AuditEntry, Slot, SlotMetadata
from .runtime_metrics import METRICS

log = logging.getLogger("slotkeeper.guard")

T = TypeVar("T")

# tables the snapshot covers, in insert order (metadata references slots)
_SNAPSHOT_MODELS = (Slot, SlotMetadata, AuditEntry)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _row_to_dict(row: Any) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for col in row.__table__.columns:
        v = getattr(row, col.key)
        out[col.key] = v.isoformat() if isinstance(v, datetime) else v
    return out


def _row_from_dict(model: Any, data: dict[str, Any]) -> Any:
    kwargs: dict[str, Any] = {}
    for col in model.__table__.columns:
        if col.key not in data:
            continue
        v = data[col.key]
        if v is not None and col.type.python_type is datetime:
            v = datetime.fromisoformat(v)
        kwargs[col.key] = v
    return model(**kwargs)


@dataclass
class Snapshot:
    taken_at: datetime
    tables: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    path: Optional[Path] = None

    def row_counts(self) -> dict[str, int]:
        return {name: len(rows) for name, rows in self.tables.items()}

    def discard(self) -> None:
        if self.path is not None and self.path.exists():
            self.path.unlink()
        self.path = None


def take_snapshot(db: Session, *, backup_dir: Optional[str] = None) -> Snapshot:
    snap = Snapshot(taken_at=_utcnow())
    for model in _SNAPSHOT_MODELS:
        snap.tables[model.__tablename__] = [_row_to_dict(r) for r in db.scalars(select(model))]

    if backup_dir:
        d = Path(backup_dir)
        d.mkdir(parents=True, exist_ok=True)
        path = d / f"slotkeeper-snapshot-{snap.taken_at.strftime('%Y%m%d-%H%M%S-%f')}.json"
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(
            json.dumps({"taken_at": snap.taken_at.isoformat(), "tables": snap.tables}, default=str),
            encoding="utf-8",
        )
        os.replace(tmp, path)
        snap.path = path
    return snap


def load_snapshot(path: str | Path) -> Snapshot:
    p = Path(path)
    blob = json.loads(p.read_text(encoding="utf-8"))
    return Snapshot(taken_at=datetime.fromisoformat(blob["taken_at"]), tables=blob["tables"], path=p)


def restore_snapshot(db: Session, snapshot: Snapshot) -> None:
    """
    Operator path: put slots / metadata / audit back exactly as captured.
    Runs in the caller's transaction; the caller commits. Anything appended
    after the snapshot (including audit entries) is gone afterwards, so this
    is for recovering from RollbackFailed, not for routine use.
    """
    for model in reversed(_SNAPSHOT_MODELS):
        db.execute(delete(model))
    db.flush()
    for model in _SNAPSHOT_MODELS:
        for data in snapshot.tables.get(model.__tablename__, []):
            db.add(_row_from_dict(model, data))
        db.flush()


class SnapshotGuard:
    """
    snapshot -> one transaction -> commit, or rollback and re-raise.

    Wraps bulk provisioning and reconciler correction batches. Not used around
    acquire(): one snapshot per onboarding call would cost more than the
    conditional commit it protects.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        backup_dir: Optional[str] = None,
        keep_snapshots: bool = False,
    ) -> None:
        self._session_factory = session_factory
        self._backup_dir = backup_dir
        self._keep = bool(keep_snapshots)
        self.last_failed_snapshot: Optional[Snapshot] = None

    def with_snapshot_and_transaction(self, op: Callable[[Session], T], *, label: str = "guarded-op") -> T:
        # 1) snapshot, fail closed
        try:
            with self._session_factory() as snap_db:
                snapshot = take_snapshot(snap_db, backup_dir=self._backup_dir)
        except Exception as e:
            log.error("snapshot failed, %s aborted before any write: %s", label, e)
            raise SnapshotFailed(f"{label}: snapshot failed: {e}") from e

        log.info("snapshot taken for %s: %s", label, snapshot.row_counts())

        # 2) one transaction
        db = self._session_factory()
        try:
            result = op(db)
            db.commit()
        except Exception as op_err:
            METRICS.inc("guard_rollbacks")
            try:
                db.rollback()
            except Exception as rb_err:
                self.last_failed_snapshot = snapshot
                log.critical(
                    "ROLLBACK FAILED for %s; store may be partially written. restore from snapshot %s",
                    label,
                    snapshot.path or "(in-memory)",
                    exc_info=True,
                )
                raise RollbackFailed(
                    f"{label}: rollback failed after {type(op_err).__name__}: {rb_err}",
                    snapshot=snapshot,
                ) from rb_err
            finally:
                db.close()

            # keep the snapshot around for whoever investigates
            self.last_failed_snapshot = snapshot
            log.error("%s rolled back: %s: %s", label, type(op_err).__name__, op_err)
            raise
        else:
            db.close()

        # 3) success: snapshot no longer needed
        if not self._keep:
            snapshot.discard()
        return result
