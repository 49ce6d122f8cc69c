# backend/slotkeeper/bootstrap.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import Settings, settings as default_settings
from .db import make_engine, make_session_factory
from .services.allocator import Allocator
from .services.guard import SnapshotGuard
from .services.reconciler import Reconciler
from .services.scanner import ContentScanner, SqlEngineResources


@dataclass
class Components:
    store_engine: Engine
    workflow_engine: Engine
    session_factory: sessionmaker[Session]
    scanner: ContentScanner
    guard: SnapshotGuard
    allocator: Allocator
    reconciler: Reconciler

    def dispose(self) -> None:
        self.store_engine.dispose()
        self.workflow_engine.dispose()


def build_components(cfg: Optional[Settings] = None) -> Components:
    """Wire store, engine reader, guard, allocator and reconciler from settings (CLI + celery)."""
    cfg = cfg or default_settings

    store_engine = make_engine(cfg.database_url)
    # opened mode=ro: no pragmas, no file created for a missing path
    workflow_engine = make_engine(cfg.engine_database_url, read_only=True)

    session_factory = make_session_factory(store_engine)
    scanner = ContentScanner(
        SqlEngineResources(
            workflow_engine,
            table_name=cfg.engine_resource_table,
            tag_column=cfg.engine_tag_column,
            id_column=cfg.engine_id_column,
        )
    )
    guard = SnapshotGuard(session_factory, backup_dir=cfg.backup_dir, keep_snapshots=cfg.keep_snapshots)

    return Components(
        store_engine=store_engine,
        workflow_engine=workflow_engine,
        session_factory=session_factory,
        scanner=scanner,
        guard=guard,
        allocator=Allocator(session_factory, scanner, max_candidates=cfg.acquire_max_candidates),
        reconciler=Reconciler(session_factory, scanner, guard=guard, orphan_sample_limit=cfg.orphan_sample_limit),
    )
