# backend/slotkeeper/errors.py
from __future__ import annotations

from typing import Any, Optional


class SlotkeeperError(Exception):
    """Base for every error this package raises on purpose."""


class NoAvailableSlots(SlotkeeperError):
    """
    Normal outcome when every candidate was rejected or lost to a concurrent winner.
    The caller decides whether to grow the pool or queue the user.
    """

    def __init__(self, *, user_id: str, project_id: Optional[str], attempts: int) -> None:
        self.user_id = user_id
        self.project_id = project_id
        self.attempts = attempts
        scope = project_id or "any project"
        super().__init__(f"no available slots in {scope} for user {user_id} after {attempts} candidate(s)")


class TransactionConflict(SlotkeeperError):
    """The conditional commit found the slot already taken. Never escapes acquire()."""

    def __init__(self, slot_id: str, reason: str = "slot no longer free") -> None:
        self.slot_id = slot_id
        self.reason = reason
        super().__init__(f"{slot_id}: {reason}")


class EngineUnreachable(SlotkeeperError):
    """The workflow engine's database could not be queried."""


class ScanDegraded(SlotkeeperError):
    """The engine answered, but not in a shape we can trust (missing table/column, bad tags)."""


class UnknownSlot(SlotkeeperError):
    def __init__(self, slot_id: str) -> None:
        self.slot_id = slot_id
        super().__init__(f"unknown slot: {slot_id}")


class SnapshotFailed(SlotkeeperError):
    """Pre-operation snapshot could not be taken; the wrapped operation did not run."""


class RollbackFailed(SlotkeeperError):
    """
    Rolling back a failed guarded operation itself failed.
    The store may be partially mutated: page someone and restore from `snapshot`.
    """

    def __init__(self, message: str, *, snapshot: Optional[Any] = None) -> None:
        self.snapshot = snapshot
        super().__init__(message)
