"""Tests for the ``conductor`` command line."""

from __future__ import annotations

import json

import pytest
import structlog
from typer.testing import CliRunner

from conductor.cli import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def quiet_env(monkeypatch, tmp_path):
    monkeypatch.setenv("CONDUCTOR_LOG_LEVEL", "WARNING")
    monkeypatch.setenv("CONDUCTOR_SCHEDULER_ENABLED", "false")
    monkeypatch.delenv("CONDUCTOR_DATABASE_PATH", raising=False)
    yield
    structlog.reset_defaults()


class TestTypes:
    def test_json_lists_builtin_types(self):
        result = runner.invoke(app, ["types", "--json"])
        assert result.exit_code == 0, result.output
        names = {entry["name"] for entry in json.loads(result.stdout)}
        assert {"http_check", "command", "backup", "delay"} <= names

    def test_table(self):
        result = runner.invoke(app, ["types"])
        assert result.exit_code == 0
        assert "disk_check" in result.stdout


class TestSubmit:
    def test_success_json(self):
        result = runner.invoke(app, ["submit", "delay", "-c", '{"seconds": 0}', "-p", "high", "--json", "--wait", "10"])
        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout)
        assert payload["status"] == "succeeded"
        assert payload["priority"] == 1
        assert payload["output"] == {"waited_seconds": 0.0}

    def test_failed_execution_exits_non_zero(self):
        result = runner.invoke(app, ["submit", "delay", "-c", '{"seconds": -1}', "--json", "--wait", "10"])
        assert result.exit_code == 1
        assert json.loads(result.stdout)["error_type"] == "ValidationError"

    def test_bad_priority(self):
        result = runner.invoke(app, ["submit", "delay", "-c", '{"seconds": 0}', "-p", "urgent"])
        assert result.exit_code == 1

    def test_invalid_json(self):
        result = runner.invoke(app, ["submit", "delay", "-c", "{not json"])
        assert result.exit_code == 1

    def test_persists_to_database(self, tmp_path):
        db = str(tmp_path / "c.db")
        submitted = runner.invoke(app, ["submit", "delay", "-c", '{"seconds": 0}', "-d", db, "--json"])
        assert submitted.exit_code == 0, submitted.output

        listed = runner.invoke(app, ["list", "-d", db, "--json"])
        assert listed.exit_code == 0, listed.output
        page = json.loads(listed.stdout)
        assert page["total"] == 1
        assert page["items"][0]["task_type"] == "delay"

        stats = runner.invoke(app, ["stats", "-d", db, "--json"])
        assert json.loads(stats.stdout)["by_status"]["succeeded"] == 1


class TestList:
    def test_unknown_status(self):
        result = runner.invoke(app, ["list", "--status", "exploded"])
        assert result.exit_code == 1

    def test_empty_table(self):
        result = runner.invoke(app, ["list"])
        assert result.exit_code == 0
        assert "No items" in result.stdout


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert result.stdout.startswith("conductor ")


def test_no_args_shows_help():
    result = runner.invoke(app, [])
    assert "submit" in result.output
