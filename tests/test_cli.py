"""CLI surface, JSON output and exit-code tests."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

import schema_steward.cli as cli_mod
from schema_steward.context import StewardContext
from schema_steward.groups import BUILTIN_GROUPS
from schema_steward.workflow import WorkflowResult

runner = CliRunner()


@pytest.fixture(autouse=True)
def steward_env(tmp_path, monkeypatch, seed, employee_rows):
    class SeededContext(StewardContext):
        """Each mem:// connection is a fresh database; seed it on connect."""

        async def connect(self) -> None:
            await super().connect()
            await seed(self.db, "employee", employee_rows)

    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("STEWARD_BACKUP_DIR", str(tmp_path / "backups"))
    monkeypatch.setenv("STEWARD_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("STEWARD_PAGE_SIZE", "2")
    monkeypatch.setenv("STEWARD_LOG_LEVEL", "ERROR")
    monkeypatch.setattr(
        cli_mod, "_get_context", lambda: SeededContext.from_config(cli_mod._load_config())
    )
    return tmp_path


def test_version():
    result = runner.invoke(cli_mod.app, ["version"])
    assert result.exit_code == 0
    assert "Schema Steward v" in result.stdout


def test_help_lists_commands():
    result = runner.invoke(cli_mod.app, ["--help"])
    assert result.exit_code == 0
    for command in ("invoke", "inspect", "consolidate", "verify", "drop", "backup"):
        assert command in result.stdout


def test_groups_json():
    result = runner.invoke(cli_mod.app, ["groups", "--json"])
    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert [g["name"] for g in payload] == list(BUILTIN_GROUPS)


def test_unknown_group_is_usage_error():
    result = runner.invoke(cli_mod.app, ["invoke", "employee", "-g", "nope"])
    assert result.exit_code == 2
    assert "Unknown group" in result.stdout


def test_invoke_json_with_confirm_drop():
    result = runner.invoke(cli_mod.app, ["invoke", "employee", "--confirm-drop", "--json"])

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["final_state"] == "complete"
    assert payload["exit_code"] == 0
    assert payload["summary"]["failed"] == 0
    assert payload["summary"]["succeeded"] > 0
    assert payload["report"]["table"] == "employee"
    assert Path(payload["backup"]["data_path"]).exists()


def test_invoke_without_confirm_reports_only():
    result = runner.invoke(cli_mod.app, ["invoke", "employee"])
    assert result.exit_code == 0
    assert "verified_safe" in result.stdout
    assert "Report only" in result.stdout


def test_invoke_precondition_exits_nonzero(monkeypatch):
    async def fake_run_workflow(ctx, table, groups, **kwargs):
        return WorkflowResult(
            table=table,
            precondition="verification failed for: contact_info",
            precondition_details=["contact_info: 2 record(s) with legacy data have no target"],
        )

    monkeypatch.setattr("schema_steward.workflow.run_workflow", fake_run_workflow)

    result = runner.invoke(cli_mod.app, ["invoke", "employee", "--confirm-drop"])

    assert result.exit_code == 1
    assert "PRECONDITION VIOLATION" in result.stdout
    assert "contact_info" in result.stdout


def test_inspect_json():
    result = runner.invoke(cli_mod.app, ["inspect", "employee", "--json"])
    assert result.exit_code == 0
    [inspection] = json.loads(result.stdout)
    assert inspection["row_count"] == 5
    assert "mobile" in inspection["columns"]


def test_drop_resume_without_progress_file():
    result = runner.invoke(cli_mod.app, ["drop", "employee", "--resume"])
    assert result.exit_code == 1
    assert "No drop in progress" in result.stdout


def test_backup_verify_detects_tampering():
    created = runner.invoke(cli_mod.app, ["backup", "create", "employee", "--json"])
    assert created.exit_code == 0
    data_path = Path(json.loads(created.stdout)["data_path"])

    ok = runner.invoke(cli_mod.app, ["backup", "verify", str(data_path)])
    assert ok.exit_code == 0
    assert "OK" in ok.stdout

    data_path.write_text(data_path.read_text().replace("Aina", "Anna"))
    tampered = runner.invoke(cli_mod.app, ["backup", "verify", str(data_path)])
    assert tampered.exit_code == 1
    assert "backup checksum mismatch" in tampered.stdout


def test_backup_restore_needs_confirm():
    runner.invoke(cli_mod.app, ["backup", "create", "employee"])
    result = runner.invoke(cli_mod.app, ["backup", "restore", "employee", "--column", "mobile"])
    assert result.exit_code == 0
    assert "Would restore" in result.stdout


def test_config_show_masks_passwords(monkeypatch):
    monkeypatch.setenv("STEWARD_SERVICE_PASS", "hunter2")
    result = runner.invoke(cli_mod.app, ["config", "show"])
    assert result.exit_code == 0
    assert "hunter2" not in result.stdout
    assert "********" in result.stdout
