# backend/tests/test_allocator_mutual_exclusion.py
from __future__ import annotations

import threading

from sqlalchemy import func, select

from slotkeeper.errors import NoAvailableSlots
from slotkeeper.models import AuditEntry, Slot, SlotMetadata
from slotkeeper.services.allocator import Allocator


def test_concurrent_acquires_never_share_a_slot(session_factory, pool, scanner):
    """
    Proof: 10 users racing for 6 slots. Every winner holds a distinct slot,
    every slot has at most one owner, metadata and exactly one "assigned" entry.
    """
    alloc = Allocator(session_factory, scanner, max_candidates=6)
    barrier = threading.Barrier(10)
    won: dict[str, str] = {}
    lost: list[str] = []
    errors: list[BaseException] = []
    lock = threading.Lock()

    def worker(user: str) -> None:
        barrier.wait()
        try:
            slot = alloc.acquire(user)
        except NoAvailableSlots:
            with lock:
                lost.append(user)
        except BaseException as e:  # surfaced below
            with lock:
                errors.append(e)
        else:
            with lock:
                won[user] = slot.slot_id

    threads = [threading.Thread(target=worker, args=(f"user-{i}",)) for i in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert errors == []
    assert len(won) + len(lost) == 10
    assert len(won) <= 6
    assert len(set(won.values())) == len(won)

    db = session_factory()
    try:
        assigned = db.scalars(select(Slot).where(Slot.is_assigned.is_(True))).all()
        assert {s.slot_id: s.user_id for s in assigned} == {sid: user for user, sid in won.items()}

        assert db.scalar(select(func.count()).select_from(SlotMetadata)) == len(won)
        per_slot = dict(
            db.execute(
                select(AuditEntry.slot_id, func.count(AuditEntry.id))
                .where(AuditEntry.action == "assigned")
                .group_by(AuditEntry.slot_id)
            ).all()
        )
        assert set(per_slot.values()) <= {1}
        assert set(per_slot) == set(won.values())
    finally:
        db.close()
