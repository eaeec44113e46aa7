"""Tests for the CLI."""

import os
import tempfile
from pathlib import Path

import pytest
from click.testing import CliRunner

from site_ledger.cli import main


@pytest.fixture
def cli_env():
    """Point the CLI at a temp database."""
    with tempfile.TemporaryDirectory() as tmp:
        env = {
            "SL_DB_PATH": str(Path(tmp) / "test.db"),
            "SL_RETRY_BACKOFF": "0",
        }
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            os.environ[k] = v

        yield CliRunner()

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


class TestCLI:
    def test_help(self, cli_env):
        result = cli_env.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "site-ledger" in result.output

    def test_item_flow(self, cli_env):
        runner = cli_env
        result = runner.invoke(main, ["init", "Harbour View"])
        assert result.exit_code == 0
        assert "harbour-view" in result.output

        result = runner.invoke(main, ["item", "add", "Pour slab", "--project", "harbour-view", "-p", "high"])
        assert result.exit_code == 0
        assert "pour-slab" in result.output

        result = runner.invoke(main, ["item", "list", "--project", "harbour-view"])
        assert result.exit_code == 0
        assert "pour-slab" in result.output
        assert "todo" in result.output

        result = runner.invoke(main, ["item", "status", "pour-slab", "active"])
        assert result.exit_code == 0
        assert "active" in result.output

    def test_completion_flow(self, cli_env):
        runner = cli_env
        runner.invoke(main, ["init", "Depot"])
        runner.invoke(main, ["user", "add", "alice", "--name", "Alice"])
        runner.invoke(main, ["stock", "add", "Cement", "-q", "100", "--unit", "bags"])
        runner.invoke(main, ["item", "add", "Foundation", "--project", "depot", "-p", "critical"])
        runner.invoke(main, ["material", "request", "Cement", "20", "--project", "depot", "--item", "foundation"])
        result = runner.invoke(main, ["material", "approve", "1"])
        assert "approved" in result.output

        result = runner.invoke(main, ["item", "done", "foundation", "--actor", "alice"])
        assert result.exit_code == 0
        assert "XP awarded: 100" in result.output
        assert "Deducted 20 of Cement" in result.output

        result = runner.invoke(main, ["stock", "list"])
        assert "Cement: 80 bags" in result.output

        result = runner.invoke(main, ["user", "show", "alice"])
        assert "100 XP, level 1" in result.output

        result = runner.invoke(main, ["item", "done", "foundation", "--actor", "alice"])
        assert result.exit_code == 1
        assert "already done" in result.output

    def test_partial_failure_reported(self, cli_env):
        runner = cli_env
        runner.invoke(main, ["init", "Depot"])
        runner.invoke(main, ["item", "add", "Kerbs", "--project", "depot"])
        runner.invoke(main, ["material", "request", "Granite", "4", "--project", "depot", "--item", "kerbs"])
        runner.invoke(main, ["material", "approve", "1"])

        result = runner.invoke(main, ["item", "done", "kerbs"])
        assert result.exit_code == 0
        assert "Not settled #1 Granite" in result.output
        assert "inventory:1" in result.output

    def test_stats_recalc(self, cli_env):
        runner = cli_env
        runner.invoke(main, ["init", "Depot"])
        runner.invoke(main, ["item", "add", "One", "--project", "depot"])
        result = runner.invoke(main, ["stats", "recalc", "depot"])
        assert result.exit_code == 0
        assert "0/1 done" in result.output

        result = runner.invoke(main, ["stats", "recalc", "--all"])
        assert "Synced 1 projects." in result.output

        result = runner.invoke(main, ["stats", "show", "depot"])
        assert "0/1 done" in result.output

    def test_recalc_requires_target(self, cli_env):
        result = cli_env.invoke(main, ["stats", "recalc"])
        assert result.exit_code == 1

    def test_activity_and_rfi(self, cli_env):
        runner = cli_env
        runner.invoke(main, ["init", "Depot"])
        result = runner.invoke(main, ["rfi", "raise", "Door height?", "--project", "depot", "--by", "sam"])
        assert "RFI #1 raised" in result.output
        result = runner.invoke(main, ["activity", "depot"])
        assert "RFI Raised: Door height?" in result.output
        result = runner.invoke(main, ["rfi", "answer", "1", "2.1m"])
        assert result.exit_code == 0
        result = runner.invoke(main, ["rfi", "list", "--project", "depot"])
        assert "[answered]" in result.output

    def test_missing_item(self, cli_env):
        result = cli_env.invoke(main, ["item", "done", "ghost"])
        assert result.exit_code == 1
        assert "not found" in result.output
