"""Tests for CLI entry point."""

from __future__ import annotations

import json
from pathlib import Path

from click.testing import CliRunner

from anvil.__main__ import cli
from anvil.state.memory import MemoryEntry, MemoryState, memory_file_path


class TestCLI:
    """Test CLI commands."""

    def test_help(self):
        runner = CliRunner()
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "Anvil" in result.output

    def test_version(self):
        runner = CliRunner()
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_run_help(self):
        runner = CliRunner()
        result = runner.invoke(cli, ["run", "--help"])
        assert result.exit_code == 0
        assert "--workspace" in result.output
        assert "--active-file" in result.output

    def test_bad_config_exits(self, tmp_path: Path):
        config_file = tmp_path / "anvil.toml"
        config_file.write_text("[model\n")
        runner = CliRunner()
        result = runner.invoke(cli, ["--config", str(config_file), "health"])
        assert result.exit_code == 1
        assert "Configuration error" in result.output


class TestLocalCommands:
    def test_plan_local(self):
        runner = CliRunner()
        result = runner.invoke(cli, ["plan", "--local", "fix the bug"])
        assert result.exit_code == 0
        payload = json.loads(result.output)
        assert payload["kind"] == "plan"
        assert payload["steps"][1] == "Carry out the request: fix the bug."

    def test_plan_local_clarification(self):
        runner = CliRunner()
        result = runner.invoke(cli, ["plan", "--local", "it"])
        assert result.exit_code == 0
        assert json.loads(result.output)["kind"] == "clarification"

    def test_next_action_local(self, tmp_path: Path):
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "app.ts").write_text("")
        runner = CliRunner()
        result = runner.invoke(cli, [
            "next-action", "--local", "--workspace", str(tmp_path), "--prior", "1",
            "read src/app.ts and run tests",
        ])
        assert result.exit_code == 0
        assert json.loads(result.output) == {"tool": "read_file", "path": "src/app.ts"}


class TestMemoryShow:
    def test_empty(self, tmp_path: Path):
        runner = CliRunner()
        result = runner.invoke(cli, ["memory", "show", "--workspace", str(tmp_path)])
        assert result.exit_code == 0
        assert "No project memory." in result.output

    def test_shows_entries(self, tmp_path: Path):
        path = memory_file_path(tmp_path)
        path.parent.mkdir(parents=True)
        state = MemoryState(entries=[MemoryEntry(instruction="add login", files_changed=["src/login.ts"])])
        path.write_text(json.dumps(state.to_dict()))

        runner = CliRunner()
        result = runner.invoke(cli, ["memory", "show", "--workspace", str(tmp_path)])
        assert result.exit_code == 0
        assert "add login" in result.output
        assert "Files changed: src/login.ts" in result.output
