# backend/tests/test_cli.py
from __future__ import annotations

import json

import pytest
from sqlalchemy import create_engine, text

from slotkeeper.cli.__main__ import main
from slotkeeper.config import settings


@pytest.fixture()
def cli_env(tmp_path, monkeypatch):
    engine_db = tmp_path / "engine.sqlite"
    eng = create_engine(f"sqlite:///{engine_db}")
    with eng.begin() as conn:
        conn.execute(text("CREATE TABLE workflow_entity (id TEXT PRIMARY KEY, tags TEXT)"))
    eng.dispose()

    monkeypatch.setattr(settings, "database_url", f"sqlite:///{tmp_path / 'store.db'}")
    monkeypatch.setattr(settings, "engine_database_url", f"sqlite:///{engine_db}")
    monkeypatch.setattr(settings, "backup_dir", str(tmp_path / "backups"))
    monkeypatch.setattr("slotkeeper.cli.__main__.configure_logging", lambda: None)
    return tmp_path


def _run(capsys, *argv) -> tuple[int, dict]:
    code = main(list(argv))
    return code, json.loads(capsys.readouterr().out)


def test_operator_flow(cli_env, capsys):
    code, out = _run(capsys, "init-db")
    assert code == 0 and out["ok"] is True

    code, out = _run(capsys, "provision", "--projects", "1", "--slots", "2")
    assert code == 0
    assert (out["created"], out["total"], out["safe_slots"]) == (2, 2, 2)

    code, out = _run(capsys, "acquire", "alice")
    assert code == 0
    assert out["slot_id"] == "FOLDER-P01-U1"
    assert out["user_id"] == "alice"

    code, out = _run(capsys, "verify", "FOLDER-P01-U2")
    assert code == 0 and out["is_safe"] is True

    code, out = _run(capsys, "sweep")
    assert code == 0
    assert out["totals"]["corrections"] == 0

    code, out = _run(capsys, "status")
    assert code == 0
    assert (out["assigned"], out["available"]) == (1, 1)

    assert _run(capsys, "acquire", "bob")[0] == 0
    code, out = _run(capsys, "acquire", "carol")
    assert code == 2
    assert out["reason"] == "no_available_slots"


def test_verify_unknown_slot_exits_nonzero(cli_env, capsys):
    _run(capsys, "init-db")
    code, out = _run(capsys, "verify", "FOLDER-P42-U1")
    assert code == 2
    assert out["reason"] == "unknown_slot"


def test_backfill_and_restore(cli_env, capsys, monkeypatch):
    monkeypatch.setattr(settings, "keep_snapshots", True)
    _run(capsys, "init-db")
    _run(capsys, "provision", "--projects", "1", "--slots", "1", "--no-view")

    code, out = _run(capsys, "backfill")
    assert code == 0 and out["backfilled"] == []

    snapshots = sorted((cli_env / "backups").glob("*.json"))
    assert snapshots

    code, out = _run(capsys, "restore", str(snapshots[0]))
    assert code == 0
    # first snapshot was taken before provisioning inserted anything
    assert out["restored"]["slots"] == 0
