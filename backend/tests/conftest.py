# backend/tests/conftest.py
from __future__ import annotations

from typing import Iterable, Optional

import pytest

from slotkeeper.db import init_db, make_engine, make_session_factory
from slotkeeper.errors import EngineUnreachable, ScanDegraded
from slotkeeper.services.allocator import Allocator
from slotkeeper.services.guard import SnapshotGuard
from slotkeeper.services.provisioning import provision_pool
from slotkeeper.services.reconciler import Reconciler
from slotkeeper.services.runtime_metrics import METRICS
from slotkeeper.services.scanner import ContentScanner


class FakeEngineResources:
    """
    In-memory stand-in for the workflow engine's resource table.

    rows: (resource_id, tags). Toggles let a test break the engine the ways a
    real one breaks: table dropped, connection gone, column renamed.
    """

    def __init__(self) -> None:
        self.rows: list[tuple[str, list[str]]] = []
        self.table_missing = False
        self.unreachable = False
        self.degraded = False
        self.count_override: dict[str, object] = {}
        self._seq = 0

    def add(self, slot_id: Optional[str], n: int = 1) -> None:
        for _ in range(n):
            self._seq += 1
            self.rows.append((f"wf-{self._seq}", [slot_id] if slot_id else []))

    def _check(self) -> None:
        if self.unreachable:
            raise EngineUnreachable("connection refused")
        if self.degraded:
            raise ScanDegraded("workflow_entity is missing column(s): ['tags']")

    def resource_table_exists(self) -> bool:
        if self.unreachable:
            raise EngineUnreachable("connection refused")
        return not self.table_missing

    def count_resources_for_slot(self, slot_id: str) -> int:
        self._check()
        if slot_id in self.count_override:
            return self.count_override[slot_id]  # type: ignore[return-value]
        return sum(1 for _, tags in self.rows if slot_id in tags)

    def iter_resource_tags(self) -> Iterable[tuple[str, list[str]]]:
        self._check()
        return list(self.rows)


@pytest.fixture(autouse=True)
def _reset_metrics():
    METRICS.reset()
    yield
    METRICS.reset()


@pytest.fixture()
def store_engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'store.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(store_engine):
    return make_session_factory(store_engine)


@pytest.fixture()
def fake_engine() -> FakeEngineResources:
    return FakeEngineResources()


@pytest.fixture()
def scanner(fake_engine) -> ContentScanner:
    return ContentScanner(fake_engine)


@pytest.fixture()
def guard(session_factory, tmp_path) -> SnapshotGuard:
    return SnapshotGuard(session_factory, backup_dir=str(tmp_path / "backups"))


@pytest.fixture()
def pool(session_factory, scanner, guard):
    """2 projects x 3 slots: FOLDER-P01-U1..U3, FOLDER-P02-U1..U3, all free and safe."""
    return provision_pool(session_factory, project_count=2, slots_per_project=3, guard=guard, scanner=scanner)


@pytest.fixture()
def allocator(session_factory, scanner) -> Allocator:
    return Allocator(session_factory, scanner, max_candidates=5)


@pytest.fixture()
def reconciler(session_factory, scanner, guard) -> Reconciler:
    return Reconciler(session_factory, scanner, guard=guard, orphan_sample_limit=5)
