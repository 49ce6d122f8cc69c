# backend/slotkeeper/cli/__main__.py
from __future__ import annotations

import argparse
import json
from typing import Any, Optional, Sequence

from ..bootstrap import build_components
from ..db import init_db, session_scope
from ..errors import NoAvailableSlots, UnknownSlot
from ..logging_config import configure_logging
from ..run_context import run_scope
from ..services.guard import load_snapshot, restore_snapshot
from ..services.provisioning import backfill_metadata, provision_pool
from ..services.runtime_metrics import METRICS
from ..services.status import status_report


def _print(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="slotkeeper")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init-db", help="create store tables (first boot / local dev)")

    pr = sub.add_parser("provision", help="insert any missing pool slots")
    pr.add_argument("--projects", type=int, default=None)
    pr.add_argument("--slots", type=int, default=None)
    pr.add_argument("--no-view", action="store_true", help="skip the safe-slot view rebuild")

    sub.add_parser("backfill", help="write metadata for assigned slots that have none")

    ac = sub.add_parser("acquire", help="assign a slot to a user")
    ac.add_argument("user_id")
    ac.add_argument("--project", default=None)

    ve = sub.add_parser("verify", help="run the four safety checks on one slot")
    ve.add_argument("slot_id")

    sub.add_parser("sweep", help="run one reconciliation sweep now")
    sub.add_parser("status", help="pool summary")

    rs = sub.add_parser("restore", help="put the store back to a saved snapshot file")
    rs.add_argument("snapshot_path")

    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parser().parse_args(argv)
    configure_logging()
    c = build_components()

    try:
        with run_scope() as rid:
            if args.cmd == "init-db":
                init_db(c.store_engine)
                _print({"ok": True, "run_id": rid})
                return 0

            if args.cmd == "provision":
                res = provision_pool(
                    c.session_factory,
                    project_count=args.projects,
                    slots_per_project=args.slots,
                    guard=c.guard,
                    scanner=None if args.no_view else c.scanner,
                )
                _print({"ok": True, "created": res.created, "existing": res.existing, "total": res.total, "safe_slots": res.safe_slots})
                return 0

            if args.cmd == "backfill":
                bf = backfill_metadata(c.session_factory, guard=c.guard)
                _print({"ok": True, "backfilled": bf.backfilled, "skipped_unknown_owner": bf.skipped_unknown_owner})
                return 0

            if args.cmd == "acquire":
                try:
                    slot = c.allocator.acquire(args.user_id, project_id=args.project)
                except NoAvailableSlots as e:
                    _print({"ok": False, "reason": "no_available_slots", "error": str(e), "attempts": e.attempts})
                    return 2
                _print({"ok": True, **slot.as_dict()})
                return 0

            if args.cmd == "verify":
                try:
                    v = c.allocator.verify_slot(args.slot_id)
                except UnknownSlot as e:
                    _print({"ok": False, "reason": "unknown_slot", "error": str(e)})
                    return 2
                _print({"ok": True, **v.as_dict()})
                return 0

            if args.cmd == "sweep":
                report = c.reconciler.sweep(run_id=rid)
                _print({"ok": True, **report.as_dict(), "metrics": METRICS.snapshot()})
                return 0

            if args.cmd == "status":
                with c.session_factory() as db:
                    _print({"ok": True, **status_report(db)})
                return 0

            if args.cmd == "restore":
                snap = load_snapshot(args.snapshot_path)
                with session_scope(c.session_factory) as db:
                    restore_snapshot(db, snap)
                _print({"ok": True, "restored": snap.row_counts(), "taken_at": snap.taken_at.isoformat()})
                return 0
    finally:
        c.dispose()

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
