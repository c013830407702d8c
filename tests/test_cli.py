"""
tests/test_cli.py -- Tests for the administrative command line in main.py.

Each test points get_settings() at a fresh SQLite file so commands run against
a real store, then reads the printed output.
"""

from __future__ import annotations

import json

import pytest

import main
from conftest import build_settings


@pytest.fixture
def cli(tmp_path, monkeypatch, capsys):
    settings = build_settings(database_url=f"sqlite:///{tmp_path / 'warden.db'}")
    monkeypatch.setattr(main, "get_settings", lambda: settings)

    def run(*argv: str) -> tuple[int, str]:
        code = main.main(list(argv))
        return code, capsys.readouterr().out

    return run


def test_bootstrap_and_show_permissions(cli):
    assert cli("create-permission", "device.read", "--description", "Read telemetry")[0] == 0
    assert cli("create-permission", "device.configure")[0] == 0
    code, out = cli("create-role", "nurse", "--permission", "device.read")
    assert code == 0 and "(id 1)" in out
    assert cli("create-role", "senior_nurse", "--permission", "device.configure")[0] == 0
    assert cli("add-edge", "1", "2")[0] == 0
    assert cli("create-user", "sophie", "--password", "correct-horse-battery")[0] == 0
    assert cli("assign-role", "1", "2")[0] == 0

    code, out = cli("permissions", "1", "--json")
    assert code == 0
    assert json.loads(out) == {
        "user_id": 1,
        "permissions": ["device.configure", "device.read"],
        "roles": ["nurse", "senior_nurse"],
    }


def test_override_and_clear(cli):
    cli("create-permission", "report.export")
    cli("create-user", "gary", "--password", "correct-horse-battery")

    code, out = cli("override", "1", "report.export", "grant", "--notes", "quarter end")
    assert code == 0 and "Grant override" in out
    assert json.loads(cli("permissions", "1", "--json")[1])["permissions"] == ["report.export"]

    code, out = cli("override", "1", "report.export", "clear")
    assert code == 0 and "Cleared 1" in out
    assert "(no permissions)" in cli("permissions", "1")[1]


def test_cycle_is_reported(cli):
    cli("create-role", "a")
    cli("create-role", "b")
    assert cli("add-edge", "1", "2")[0] == 0
    code, out = cli("add-edge", "2", "1")
    assert code == 1
    assert "[!]" in out


def test_duplicate_edge_is_noop(cli):
    cli("create-role", "a")
    cli("create-role", "b")
    cli("add-edge", "1", "2")
    code, out = cli("add-edge", "1", "2")
    assert code == 0 and "already present" in out


def test_duplicate_records(cli):
    cli("create-permission", "device.read")
    code, out = cli("create-permission", "device.read")
    assert code == 1 and "already exists" in out
    cli("create-role", "nurse")
    code, out = cli("create-role", "nurse")
    assert code == 1 and "already exists" in out


def test_grant_role_permission_requires_definition(cli):
    cli("create-role", "nurse")
    code, out = cli("grant-role-permission", "1", "device.read")
    assert code == 1 and "not defined" in out
    cli("create-permission", "device.read")
    code, out = cli("grant-role-permission", "1", "device.read")
    assert code == 0 and "now grants device.read" in out


def test_sweep_sessions(cli):
    code, out = cli("sweep-sessions")
    assert code == 0 and "Deactivated 0" in out


def test_invalid_timestamp_is_rejected(cli):
    with pytest.raises(SystemExit):
        cli("assign-role", "1", "1", "--until", "next tuesday")
