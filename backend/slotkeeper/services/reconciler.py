# backend/slotkeeper/services/reconciler.py
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from ..config import settings
from ..domain.audit import audit_write, latest_entry
from ..domain.metadata import all_metadata, hash_matches
from ..models import UNKNOWN_OWNER, Slot, SlotMetadata
from ..run_context import run_scope
from .guard import SnapshotGuard
from .runtime_metrics import METRICS
from .safe_view import rebuild_safe_view
from .scanner import ContentScanner, ScanResult

log = logging.getLogger("slotkeeper.reconciler")

# -----------------------------------------------------------------------------
# Reconciler
# -----------------------------------------------------------------------------
#   A  free + engine rows                -> mark assigned, warning
#   B  free + metadata                   -> recover owner, mark assigned, warning
#   C  engine rows tagged to no slot     -> report only
#   D  assigned + known zero rows        -> verified ("likely new user"), never unassigned
#   E  rebuild safe-slot view
#
# Every correction moves a slot from free to assigned, through a conditional
# UPDATE that cannot overwrite an assignment acquire() just committed. Nothing
# here ever frees a slot.
# -----------------------------------------------------------------------------

# audit actions that describe the slot's assignment state; suspicious entries
# are commentary and don't reset the "already said this" checks
_STATE_ACTIONS = ("assigned", "unassigned", "verified", "warning")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class ReconciliationReport:
    run_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    slots_total: int = 0

    occupied_marked_free: int = 0  # A
    metadata_marked_free: int = 0  # B
    invariant_repairs: int = 0
    orphan_resources: Optional[int] = None  # C, None = engine unreadable
    orphan_sample: list[str] = field(default_factory=list)
    assigned_but_empty: int = 0  # D
    verified_written: int = 0
    suspicious_written: int = 0
    safe_slots: int = 0  # E

    corrected: list[str] = field(default_factory=list)
    needs_review: list[str] = field(default_factory=list)
    scan_unknown: list[str] = field(default_factory=list)
    audit_actions: dict[str, int] = field(default_factory=dict)

    @property
    def corrections(self) -> int:
        return self.occupied_marked_free + self.metadata_marked_free + self.invariant_repairs

    def as_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "slots_total": self.slots_total,
            "phases": {
                "A_occupied_marked_free": self.occupied_marked_free,
                "B_metadata_marked_free": self.metadata_marked_free,
                "C_orphan_resources": self.orphan_resources,
                "D_assigned_but_empty": self.assigned_but_empty,
                "E_safe_slots": self.safe_slots,
            },
            "invariant_repairs": self.invariant_repairs,
            "totals": {
                "corrections": self.corrections,
                "verified_written": self.verified_written,
                "suspicious_written": self.suspicious_written,
                "scan_unknown": len(self.scan_unknown),
                "needs_review": len(self.needs_review),
            },
            "corrected": list(self.corrected),
            "needs_review": list(self.needs_review),
            "scan_unknown": list(self.scan_unknown),
            "orphan_sample": list(self.orphan_sample),
            "audit_actions": dict(self.audit_actions),
        }


@dataclass(frozen=True)
class _SlotState:
    slot_id: str
    project_id: str
    is_assigned: bool
    user_id: Optional[str]


class Reconciler:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        scanner: ContentScanner,
        *,
        guard: Optional[SnapshotGuard] = None,
        orphan_sample_limit: Optional[int] = None,
    ) -> None:
        self._session_factory = session_factory
        self._scanner = scanner
        self._guard = guard or SnapshotGuard(
            session_factory,
            backup_dir=settings.backup_dir,
            keep_snapshots=settings.keep_snapshots,
        )
        self._orphan_limit = int(
            orphan_sample_limit if orphan_sample_limit is not None else settings.orphan_sample_limit
        )

    # ------------------------------------------------------------------
    # helpers (all run inside the correction transaction)
    # ------------------------------------------------------------------
    @staticmethod
    def _mark_assigned(db: Session, slot_id: str, owner: str, assigned_at: Optional[datetime]) -> bool:
        res = db.execute(
            update(Slot)
            .where(Slot.slot_id == slot_id, Slot.is_assigned.is_(False))
            .values(is_assigned=True, user_id=owner, assigned_at=assigned_at or _utcnow().replace(microsecond=0))
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1

    def _write(self, db: Session, written: Counter, **kw: Any) -> None:
        audit_write(db, **kw)
        written[kw["action"]] += 1

    # ------------------------------------------------------------------
    # phases
    # ------------------------------------------------------------------
    def _heal_free_slots(
        self,
        db: Session,
        report: ReconciliationReport,
        written: Counter,
        states: list[_SlotState],
        scans: dict[str, ScanResult],
    ) -> None:
        metas = all_metadata(db)
        for st in states:
            if st.is_assigned:
                continue
            scan = scans[st.slot_id]
            meta = metas.get(st.slot_id)

            # A: the engine says somebody lives here (only on a trustworthy reading)
            if scan.known and (scan.count or 0) > 0:
                owner = meta.owner_user_id if meta is not None else (st.user_id or UNKNOWN_OWNER)
                if self._mark_assigned(db, st.slot_id, owner, meta.assigned_at if meta is not None else None):
                    report.occupied_marked_free += 1
                    report.corrected.append(st.slot_id)
                    self._write(
                        db,
                        written,
                        slot_id=st.slot_id,
                        user_id=None if owner == UNKNOWN_OWNER else owner,
                        action="warning",
                        details=f"contains {scan.count} engine resource(s) but was marked free; marked assigned",
                    )
                    log.warning("phase A correction", extra={"slot_id": st.slot_id, "phase": "A", "scan_count": scan.count})
                continue

            # B: an assignment was recorded even if the slots row forgot it
            if meta is not None:
                if self._mark_assigned(db, st.slot_id, meta.owner_user_id, meta.assigned_at):
                    report.metadata_marked_free += 1
                    report.corrected.append(st.slot_id)
                    self._write(
                        db,
                        written,
                        slot_id=st.slot_id,
                        user_id=meta.owner_user_id,
                        action="warning",
                        details=f"metadata shows owner {meta.owner_user_id} but slot was marked free; owner recovered",
                    )
                    log.warning("phase B correction", extra={"slot_id": st.slot_id, "phase": "B", "user_id": meta.owner_user_id})
                continue

            # free but still carrying an owner id: trust the owner, not the flag
            if st.user_id is not None:
                if self._mark_assigned(db, st.slot_id, st.user_id, None):
                    report.invariant_repairs += 1
                    report.corrected.append(st.slot_id)
                    self._write(
                        db,
                        written,
                        slot_id=st.slot_id,
                        user_id=st.user_id,
                        action="warning",
                        details=f"marked free while still naming user {st.user_id}; marked assigned",
                    )

    def _repair_ownerless(self, db: Session, report: ReconciliationReport, written: Counter) -> None:
        """Assigned with no user id (out-of-band edit). Fill in the owner, never free it."""
        metas = all_metadata(db)
        rows = db.scalars(select(Slot).where(Slot.is_assigned.is_(True), Slot.user_id.is_(None)).order_by(Slot.slot_id))
        for slot in list(rows):
            meta = metas.get(slot.slot_id)
            owner = meta.owner_user_id if meta is not None else UNKNOWN_OWNER
            res = db.execute(
                update(Slot)
                .where(Slot.slot_id == slot.slot_id, Slot.is_assigned.is_(True), Slot.user_id.is_(None))
                .values(user_id=owner)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 1:
                report.invariant_repairs += 1
                report.corrected.append(slot.slot_id)
                self._write(
                    db,
                    written,
                    slot_id=slot.slot_id,
                    user_id=None if owner == UNKNOWN_OWNER else owner,
                    action="warning",
                    details=f"assigned without a user id; owner set to {owner}",
                )

    def _note_assigned_but_empty(
        self,
        db: Session,
        report: ReconciliationReport,
        written: Counter,
        scans: dict[str, ScanResult],
    ) -> None:
        # D: recency and vacancy look the same from here, so only ever note it
        assigned = db.scalars(
            select(Slot)
            .where(Slot.is_assigned.is_(True))
            .order_by(Slot.slot_id)
            .execution_options(populate_existing=True)
        )
        for slot in list(assigned):
            scan = scans.get(slot.slot_id)
            if scan is None or not scan.definitely_empty:
                continue
            report.assigned_but_empty += 1

            last = latest_entry(db, slot_id=slot.slot_id, actions=_STATE_ACTIONS)
            if last is not None and last.action in ("assigned", "verified"):
                continue
            self._write(
                db,
                written,
                slot_id=slot.slot_id,
                user_id=None if slot.user_id == UNKNOWN_OWNER else slot.user_id,
                action="verified",
                details="assigned with no engine resources yet; likely new user",
            )
            report.verified_written += 1

    def _flag_suspicious_metadata(self, db: Session, report: ReconciliationReport, written: Counter) -> None:
        slots = {s.slot_id: s for s in db.scalars(select(Slot).execution_options(populate_existing=True))}
        for meta in db.scalars(select(SlotMetadata).order_by(SlotMetadata.slot_id)):
            problems: list[str] = []
            if not hash_matches(meta):
                problems.append("metadata verification hash mismatch")
            slot = slots.get(meta.slot_id)
            if slot is not None and slot.user_id not in (None, UNKNOWN_OWNER) and slot.user_id != meta.owner_user_id:
                problems.append(f"metadata owner {meta.owner_user_id} != slot user {slot.user_id}")
            if not problems:
                continue

            if meta.slot_id not in report.needs_review:
                report.needs_review.append(meta.slot_id)

            details = "; ".join(problems)
            prev = latest_entry(db, slot_id=meta.slot_id, actions=("suspicious",))
            if prev is not None and prev.details == details:
                continue
            self._write(db, written, slot_id=meta.slot_id, user_id=meta.owner_user_id, action="suspicious", details=details)
            report.suspicious_written += 1
            log.warning("suspicious metadata: %s", details, extra={"slot_id": meta.slot_id})

    # ------------------------------------------------------------------
    # sweep
    # ------------------------------------------------------------------
    def sweep(self, *, run_id: Optional[str] = None) -> ReconciliationReport:
        """
        One bounded pass over the whole pool. Safe to run next to acquire():
        it only ever strengthens occupancy. Two sweeps in a row with nothing
        changing in between make no corrections the second time.
        """
        with run_scope(run_id) as rid:
            report = ReconciliationReport(run_id=rid, started_at=_utcnow())
            METRICS.inc("sweep_runs")

            with self._session_factory() as db:
                states = [
                    _SlotState(slot_id=s.slot_id, project_id=s.project_id, is_assigned=bool(s.is_assigned), user_id=s.user_id)
                    for s in db.scalars(select(Slot).order_by(Slot.slot_id))
                ]
            report.slots_total = len(states)
            slot_ids = [s.slot_id for s in states]

            # engine reads happen before the correction transaction opens
            scans = self._scanner.scan_many(slot_ids)
            report.scan_unknown = [sid for sid in slot_ids if not scans[sid].known]
            for sid in report.scan_unknown:
                log.warning("scan unknown; slot kept out of the safe view and phase A", extra={"slot_id": sid})

            # C: report only
            orphans = self._scanner.orphans(slot_ids, sample_limit=self._orphan_limit)
            if orphans is not None:
                report.orphan_resources = orphans.count
                report.orphan_sample = list(orphans.sample)
                if orphans.count:
                    log.warning("orphan engine resources: %d (sample %s)", orphans.count, orphans.sample, extra={"phase": "C"})

            written: Counter = Counter()

            def _corrections(db: Session) -> int:
                self._heal_free_slots(db, report, written, states, scans)
                self._repair_ownerless(db, report, written)
                db.flush()
                self._note_assigned_but_empty(db, report, written, scans)
                self._flag_suspicious_metadata(db, report, written)
                db.flush()
                return len(rebuild_safe_view(db, scans=scans))

            report.safe_slots = self._guard.with_snapshot_and_transaction(_corrections, label="reconciler-sweep")

            with self._session_factory() as db:
                for s in db.scalars(
                    select(Slot).where(Slot.is_assigned.is_(True), Slot.user_id == UNKNOWN_OWNER).order_by(Slot.slot_id)
                ):
                    if s.slot_id not in report.needs_review:
                        report.needs_review.append(s.slot_id)

            report.audit_actions = dict(sorted(written.items()))
            report.finished_at = _utcnow()
            METRICS.inc("sweep_corrections", report.corrections)

            log.info(
                "sweep finished: %d correction(s), %d safe slot(s), %d unknown scan(s)",
                report.corrections,
                report.safe_slots,
                len(report.scan_unknown),
            )
            return report
