# backend/slotkeeper/services/scanner.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Protocol

from sqlalchemy import Engine, column, func, inspect, select, table
from sqlalchemy.exc import SQLAlchemyError

from ..errors import EngineUnreachable, ScanDegraded
from .runtime_metrics import METRICS

log = logging.getLogger("slotkeeper.scanner")


# -----------------------------------------------------------------------------
# Engine collaborator
# -----------------------------------------------------------------------------
# The workflow engine owns its schema and can change it under us (upgrades,
# imports). Everything here is read-only; nothing in this package writes to
# engine tables.
# -----------------------------------------------------------------------------
class EngineResources(Protocol):
    def resource_table_exists(self) -> bool: ...

    def count_resources_for_slot(self, slot_id: str) -> int: ...

    def iter_resource_tags(self) -> Iterable[tuple[str, list[str]]]: ...


def parse_tags(raw: Any) -> list[str]:
    """
    Engine tag columns hold a JSON array, either of plain strings or of
    {"id": ..., "name": ...} objects. Anything else yields no tags.
    """
    if raw is None:
        return []
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw) if raw.strip() else []
        except ValueError:
            return []
    if not isinstance(raw, list):
        return []

    out: list[str] = []
    for item in raw:
        if isinstance(item, str):
            out.append(item)
        elif isinstance(item, dict):
            for k in ("id", "name"):
                if item.get(k):
                    out.append(str(item[k]))
    return out


def _like_escape(s: str) -> str:
    return s.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SqlEngineResources:
    """
    Reads the engine's resource table (default: workflow_entity.tags) through a
    separate SQLAlchemy engine.

    Schema is probed on every call: a missing table is a clean "no", a missing
    tag column is ScanDegraded, a dead connection is EngineUnreachable.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        table_name: str = "workflow_entity",
        tag_column: str = "tags",
        id_column: str = "id",
    ) -> None:
        self._engine = engine
        self._table_name = table_name
        self._tag_column = tag_column
        self._id_column = id_column

    def _table(self):
        return table(self._table_name, column(self._id_column), column(self._tag_column))

    def resource_table_exists(self) -> bool:
        try:
            return self._table_name in inspect(self._engine).get_table_names()
        except SQLAlchemyError as e:
            raise EngineUnreachable(f"engine schema probe failed: {e}") from e

    def _require_columns(self) -> None:
        try:
            cols = {c["name"] for c in inspect(self._engine).get_columns(self._table_name)}
        except SQLAlchemyError as e:
            raise EngineUnreachable(f"engine column probe failed: {e}") from e
        missing = {self._tag_column, self._id_column} - cols
        if missing:
            raise ScanDegraded(f"{self._table_name} is missing column(s): {sorted(missing)}")

    def count_resources_for_slot(self, slot_id: str) -> int:
        self._require_columns()
        t = self._table()
        # tags are stored as JSON text; match the quoted id so P01-U1 never matches P01-U10
        pattern = f'%"{_like_escape(str(slot_id))}"%'
        stmt = select(func.count()).select_from(t).where(t.c[self._tag_column].like(pattern, escape="\\"))
        try:
            with self._engine.connect() as conn:
                return int(conn.execute(stmt).scalar() or 0)
        except SQLAlchemyError as e:
            raise EngineUnreachable(f"engine count failed for {slot_id}: {e}") from e

    def iter_resource_tags(self) -> Iterable[tuple[str, list[str]]]:
        self._require_columns()
        t = self._table()
        stmt = select(t.c[self._id_column], t.c[self._tag_column])
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(stmt).all()
        except SQLAlchemyError as e:
            raise EngineUnreachable(f"engine tag listing failed: {e}") from e
        return [(str(rid), parse_tags(raw)) for rid, raw in rows]


# -----------------------------------------------------------------------------
# Scanner
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ScanResult:
    slot_id: str
    count: Optional[int]  # None = unknown
    reason: Optional[str] = None

    @property
    def known(self) -> bool:
        return self.count is not None

    @property
    def definitely_empty(self) -> bool:
        return self.count == 0

    @property
    def maybe_occupied(self) -> bool:
        # unknown counts as occupied; a failed scan never frees anything
        return self.count is None or self.count > 0


@dataclass(frozen=True)
class OrphanReport:
    count: int
    sample: list[str] = field(default_factory=list)


class ContentScanner:
    def __init__(self, resources: EngineResources) -> None:
        self._resources = resources

    def _unknown(self, slot_id: str, reason: str) -> ScanResult:
        METRICS.inc("scan_unknown")
        log.warning("scan degraded to unknown: %s", reason, extra={"slot_id": slot_id})
        return ScanResult(slot_id=slot_id, count=None, reason=reason)

    def _probe(self) -> Optional[str]:
        """None when the resource table is usable, otherwise why not."""
        try:
            if not self._resources.resource_table_exists():
                return "resource table missing"
        except (EngineUnreachable, ScanDegraded) as e:
            return f"{type(e).__name__}: {e}"
        except Exception as e:
            return f"probe error {type(e).__name__}: {e}"
        return None

    def _count(self, slot_id: str) -> ScanResult:
        try:
            n = self._resources.count_resources_for_slot(slot_id)
        except (EngineUnreachable, ScanDegraded) as e:
            return self._unknown(slot_id, f"{type(e).__name__}: {e}")
        except Exception as e:
            return self._unknown(slot_id, f"scan error {type(e).__name__}: {e}")

        if isinstance(n, bool) or not isinstance(n, int) or n < 0:
            return self._unknown(slot_id, f"implausible count {n!r}")
        return ScanResult(slot_id=slot_id, count=n)

    def scan(self, slot_id: str) -> ScanResult:
        """
        Count engine rows tagged with slot_id.

        Any doubt (table gone, column renamed, engine down, nonsense count)
        comes back as count=None. Callers must read that as "maybe occupied".
        """
        why = self._probe()
        if why is not None:
            return self._unknown(slot_id, why)
        return self._count(slot_id)

    def scan_many(self, slot_ids: Iterable[str]) -> dict[str, ScanResult]:
        """Whole-pool scan with a single schema probe."""
        ids = list(slot_ids)
        why = self._probe()
        if why is not None:
            return {sid: self._unknown(sid, why) for sid in ids}
        return {sid: self._count(sid) for sid in ids}

    def orphans(self, known_slot_ids: Iterable[str], *, sample_limit: int = 20) -> Optional[OrphanReport]:
        """
        Engine rows whose tags reference no known slot (untagged rows included).
        Report-only: ownership of an orphan is ambiguous. None when the engine
        can't be read.
        """
        why = self._probe()
        if why is not None:
            log.warning("orphan scan skipped: %s", why)
            return None
        known = set(known_slot_ids)
        try:
            rows = list(self._resources.iter_resource_tags())
        except (EngineUnreachable, ScanDegraded) as e:
            log.warning("orphan scan skipped: %s: %s", type(e).__name__, e)
            return None
        except Exception as e:
            log.warning("orphan scan skipped: %s: %s", type(e).__name__, e)
            return None

        orphan_ids = [rid for rid, tags in rows if not known.intersection(tags)]
        return OrphanReport(count=len(orphan_ids), sample=sorted(orphan_ids)[: max(0, int(sample_limit))])
