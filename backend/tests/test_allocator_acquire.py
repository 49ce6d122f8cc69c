# backend/tests/test_allocator_acquire.py
from __future__ import annotations

import pytest
from sqlalchemy import select

from slotkeeper.domain.audit import entries_for_slot, latest_action
from slotkeeper.domain.metadata import get_metadata, hash_matches
from slotkeeper.errors import NoAvailableSlots
from slotkeeper.models import UNKNOWN_OWNER, SafeSlot, Slot
from slotkeeper.services.allocator import Allocator
from slotkeeper.services.provisioning import provision_pool
from slotkeeper.services.runtime_metrics import METRICS


def test_two_slot_pool_third_user_gets_no_available_slots(session_factory, scanner, guard):
    provision_pool(session_factory, project_count=1, slots_per_project=2, guard=guard, scanner=scanner)
    alloc = Allocator(session_factory, scanner, max_candidates=5)

    a = alloc.acquire("userA")
    b = alloc.acquire("userB")
    assert a.slot_id == "FOLDER-P01-U1"
    assert b.slot_id == "FOLDER-P01-U2"

    with pytest.raises(NoAvailableSlots) as ei:
        alloc.acquire("userC")
    assert ei.value.user_id == "userC"
    assert ei.value.attempts == 0
    assert METRICS.get("acquire_success") == 2
    assert METRICS.get("acquire_exhausted") == 1


def test_acquire_writes_slot_metadata_audit_and_drops_view_row(session_factory, pool, allocator):
    slot = allocator.acquire("alice")

    db = session_factory()
    try:
        row = db.get(Slot, slot.slot_id)
        assert row.is_assigned is True
        assert row.user_id == "alice"
        assert row.assigned_at is not None

        meta = get_metadata(db, slot_id=slot.slot_id)
        assert meta is not None
        assert meta.owner_user_id == "alice"
        assert meta.assigned_by == "allocator"
        assert meta.status == "active"
        assert hash_matches(meta)

        entries = entries_for_slot(db, slot_id=slot.slot_id)
        assert [e.action for e in entries] == ["assigned"]
        assert entries[0].user_id == "alice"

        assert db.get(SafeSlot, slot.slot_id) is None
    finally:
        db.close()


def test_acquire_spreads_users_across_projects(pool, allocator):
    first = allocator.acquire("u1")
    second = allocator.acquire("u2")
    third = allocator.acquire("u3")

    # least-loaded project first, ties broken by project id
    assert first.project_id == "CLIXEN-PROJ-01"
    assert second.project_id == "CLIXEN-PROJ-02"
    assert third.project_id == "CLIXEN-PROJ-01"
    assert third.slot_id == "FOLDER-P01-U2"


def test_acquire_scoped_to_project(pool, allocator):
    slot = allocator.acquire("bob", project_id="CLIXEN-PROJ-02")
    assert slot.slot_id == "FOLDER-P02-U1"

    allocator.acquire("carol", project_id="CLIXEN-PROJ-02")
    allocator.acquire("dave", project_id="CLIXEN-PROJ-02")
    with pytest.raises(NoAvailableSlots) as ei:
        allocator.acquire("erin", project_id="CLIXEN-PROJ-02")
    assert ei.value.project_id == "CLIXEN-PROJ-02"


def test_stale_view_entry_with_engine_rows_is_skipped(session_factory, pool, allocator, fake_engine):
    # view was built while P01-U1 looked empty; rows appeared since
    fake_engine.add("FOLDER-P01-U1", 2)

    slot = allocator.acquire("alice")
    assert slot.slot_id == "FOLDER-P01-U2"
    assert METRICS.get("acquire_rejected") == 1

    db = session_factory()
    try:
        stale = db.get(Slot, "FOLDER-P01-U1")
        assert stale.is_assigned is False
        assert entries_for_slot(db, slot_id="FOLDER-P01-U1") == []
    finally:
        db.close()


def test_engine_down_means_nothing_is_assigned(session_factory, pool, allocator, fake_engine):
    fake_engine.unreachable = True

    with pytest.raises(NoAvailableSlots) as ei:
        allocator.acquire("alice")
    assert ei.value.attempts == 5
    assert METRICS.get("acquire_rejected") == 5

    db = session_factory()
    try:
        assert db.scalars(select(Slot).where(Slot.is_assigned.is_(True))).all() == []
    finally:
        db.close()


def test_acquire_rejects_blank_and_reserved_user_ids(pool, allocator):
    with pytest.raises(ValueError):
        allocator.acquire("   ")
    with pytest.raises(ValueError):
        allocator.acquire(UNKNOWN_OWNER)


def test_current_slot_returns_the_users_lease(session_factory, pool, allocator):
    assert allocator.current_slot("alice") is None
    slot = allocator.acquire("alice")

    held = allocator.current_slot("alice")
    assert held is not None
    assert held.slot_id == slot.slot_id

    # acquire is not a lookup: a second call hands out a second slot
    again = allocator.acquire("alice")
    assert again.slot_id != slot.slot_id

    db = session_factory()
    try:
        assert latest_action(db, slot_id=again.slot_id) == "assigned"
    finally:
        db.close()


def test_custom_placement_order_is_used(session_factory, pool, scanner):
    alloc = Allocator(
        session_factory,
        scanner,
        max_candidates=2,
        placement=lambda db: ["CLIXEN-PROJ-02", "CLIXEN-PROJ-01"],
    )
    assert alloc.acquire("zed").slot_id == "FOLDER-P02-U1"


@pytest.mark.parametrize("k", [0, -1])
def test_non_positive_candidate_limit_is_rejected(session_factory, scanner, k):
    with pytest.raises(ValueError):
        Allocator(session_factory, scanner, max_candidates=k)
