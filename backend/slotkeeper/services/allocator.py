# backend/slotkeeper/services/allocator.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from ..config import settings
from ..domain.audit import audit_write, latest_action
from ..domain.metadata import create_metadata, get_metadata, hash_matches
from ..errors import NoAvailableSlots, TransactionConflict, UnknownSlot
from ..models import UNKNOWN_OWNER, Slot
from .placement import project_order
from .runtime_metrics import METRICS
from .safe_view import candidates, drop_from_view
from .scanner import ContentScanner

log = logging.getLogger("slotkeeper.allocator")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _is_contention(e: Exception) -> bool:
    msg = str(e).lower()
    return any(s in msg for s in ("database is locked", "deadlock", "could not serialize", "lock timeout"))


@dataclass(frozen=True)
class VerificationResult:
    slot_id: str
    is_safe: bool
    layers: dict[str, bool]
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    scan_count: Optional[int] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "slot_id": self.slot_id,
            "is_safe": self.is_safe,
            "layers": dict(self.layers),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "scan_count": self.scan_count,
        }


class Allocator:
    """
    Hands out slots.

    acquire() reads a few candidates from the safe-slot view, re-checks each
    one against every signal, and commits the first survivor with a
    conditional UPDATE. Losing a race just moves on to the next candidate.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        scanner: ContentScanner,
        *,
        max_candidates: Optional[int] = None,
        placement: Optional[Callable[[Session], list[str]]] = None,
    ) -> None:
        self._session_factory = session_factory
        self._scanner = scanner
        self._k = int(max_candidates if max_candidates is not None else settings.acquire_max_candidates)
        self._placement = placement or project_order
        if self._k < 1:
            raise ValueError("max_candidates must be >= 1")

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    def _candidate_ids(self, project_id: Optional[str]) -> list[str]:
        with self._session_factory() as db:
            if project_id is not None:
                return [c.slot_id for c in candidates(db, project_id=project_id, limit=self._k)]

            out: list[str] = []
            for pid in self._placement(db):
                for c in candidates(db, project_id=pid, limit=self._k - len(out)):
                    out.append(c.slot_id)
                if len(out) >= self._k:
                    break
            return out

    def current_slot(self, user_id: str) -> Optional[Slot]:
        """The slot this user already holds, if any. Leases don't expire."""
        with self._session_factory() as db:
            return db.scalar(
                select(Slot)
                .where(Slot.user_id == str(user_id), Slot.is_assigned.is_(True))
                .order_by(Slot.assigned_at.asc(), Slot.slot_id.asc())
                .limit(1)
            )

    def verify_slot(self, slot_id: str) -> VerificationResult:
        """
        Four independent checks, all of which must pass:
          database  - slots row still says free
          content   - scanner reports a known zero
          metadata  - no metadata row
          audit     - latest audit action is not "assigned"
        Read-only.
        """
        with self._session_factory() as db:
            slot = db.get(Slot, str(slot_id))
            if slot is None:
                raise UnknownSlot(str(slot_id))
            is_assigned = bool(slot.is_assigned)
            slot_user = slot.user_id
            meta = get_metadata(db, slot_id=slot_id)
            meta_owner = meta.owner_user_id if meta is not None else None
            meta_hash_ok = hash_matches(meta) if meta is not None else True
            last = latest_action(db, slot_id=slot_id)

        # scan outside the store transaction so a slow engine never holds our write lock
        scan = self._scanner.scan(str(slot_id))

        layers = {
            "database": not is_assigned,
            "content": scan.definitely_empty,
            "metadata": meta is None,
            "audit": last != "assigned",
        }
        errors: list[str] = []
        warnings: list[str] = []

        if is_assigned:
            errors.append(f"slot is marked assigned to {slot_user}")
        if scan.count is None:
            errors.append(f"content scan unknown ({scan.reason}); treating as occupied")
        elif scan.count > 0:
            errors.append(f"slot is referenced by {scan.count} engine resource(s)")
        if meta is not None:
            errors.append(f"metadata exists (owner {meta_owner})")
            if not meta_hash_ok:
                warnings.append("metadata verification hash does not match")
            if slot_user is not None and slot_user != UNKNOWN_OWNER and meta_owner != slot_user:
                warnings.append(f"metadata owner {meta_owner} does not match slot user {slot_user}")
        if last == "assigned":
            errors.append("latest audit action is 'assigned'")
        if is_assigned and slot_user == UNKNOWN_OWNER:
            warnings.append("slot held by unknown owner; needs manual review")

        return VerificationResult(
            slot_id=str(slot_id),
            is_safe=all(layers.values()),
            layers=layers,
            errors=errors,
            warnings=warnings,
            scan_count=scan.count,
        )

    # ------------------------------------------------------------------
    # write
    # ------------------------------------------------------------------
    def _commit(self, slot_id: str, user_id: str) -> Slot:
        db = self._session_factory()
        try:
            now = _utcnow().replace(microsecond=0)
            res = db.execute(
                update(Slot)
                .where(Slot.slot_id == slot_id, Slot.is_assigned.is_(False))
                .values(is_assigned=True, user_id=user_id, assigned_at=now)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                raise TransactionConflict(slot_id)

            create_metadata(db, slot_id=slot_id, owner_user_id=user_id, assigned_at=now, assigned_by="allocator")
            audit_write(
                db,
                slot_id=slot_id,
                user_id=user_id,
                action="assigned",
                details="safe assignment after multi-layer verification",
            )
            drop_from_view(db, slot_id=slot_id)

            slot = db.get(Slot, slot_id)
            db.commit()
            return slot
        except TransactionConflict:
            db.rollback()
            raise
        except IntegrityError as e:
            # metadata primary key: somebody else finished first
            db.rollback()
            raise TransactionConflict(slot_id, reason="metadata already written") from e
        except OperationalError as e:
            db.rollback()
            if _is_contention(e):
                raise TransactionConflict(slot_id, reason="store busy") from e
            raise
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def acquire(self, user_id: str, project_id: Optional[str] = None) -> Slot:
        """
        Assign one slot to user_id, optionally inside project_id.

        Raises NoAvailableSlots once K candidates are used up. Never retries
        beyond that and never leaves partial state: each commit is one
        transaction.
        """
        user_id = str(user_id or "").strip()
        if not user_id:
            raise ValueError("user_id is required")
        if user_id == UNKNOWN_OWNER:
            raise ValueError(f"{UNKNOWN_OWNER} is reserved")

        ids = self._candidate_ids(project_id)
        attempts = 0
        for sid in ids[: self._k]:
            attempts += 1
            try:
                v = self.verify_slot(sid)
            except UnknownSlot:
                log.warning("safe-slot view lists a slot the store doesn't have", extra={"slot_id": sid})
                continue

            if not v.is_safe:
                METRICS.inc("acquire_rejected")
                log.info(
                    "candidate rejected: %s",
                    "; ".join(v.errors),
                    extra={"slot_id": sid, "user_id": user_id, "project_id": project_id},
                )
                continue

            try:
                slot = self._commit(sid, user_id)
            except TransactionConflict as c:
                METRICS.inc("acquire_conflict")
                log.info("lost race: %s", c.reason, extra={"slot_id": sid, "user_id": user_id})
                continue

            METRICS.inc("acquire_success")
            log.info(
                "slot assigned",
                extra={"slot_id": slot.slot_id, "user_id": user_id, "project_id": slot.project_id},
            )
            return slot

        METRICS.inc("acquire_exhausted")
        log.warning("no available slots", extra={"user_id": user_id, "project_id": project_id})
        raise NoAvailableSlots(user_id=user_id, project_id=project_id, attempts=attempts)
