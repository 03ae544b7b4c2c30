"""Tests for the engram command line interface."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner
from rich.console import Console

from engram.main import cli


@pytest.fixture
def config_file(temp_dir: Path) -> Path:
    """Write a YAML config pointing at a temporary database."""
    path = temp_dir / "engram.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "engram": {"data_dir": str(temp_dir), "log_level": "WARNING"},
                "embedding": {"embedding_dim": 16},
                "store": {"db_path": "cli.db"},
            }
        )
    )
    return path


@pytest.fixture
def runner(fake_provider):
    """CliRunner with the embedding provider replaced by the fake."""
    # Wide console so tables are not wrapped
    with (
        patch("engram.memory.manager.create_embedding_provider", return_value=fake_provider),
        patch("engram.main.console", Console(width=200)),
    ):
        yield CliRunner()


def _store(runner: CliRunner, config_file: Path, *args: str) -> str:
    result = runner.invoke(cli, ["-c", str(config_file), "store", *args])
    assert result.exit_code == 0, result.output
    return result.output.split("Stored memory ")[1].split()[0]


class TestStoreCommand:
    """Tests for `engram store`."""

    def test_store(self, runner: CliRunner, config_file: Path) -> None:
        """Test storing prints the new id."""
        result = runner.invoke(cli, ["-c", str(config_file), "store", "u1", "I prefer dark mode"])

        assert result.exit_code == 0
        assert "Stored memory" in result.output

    def test_invalid_type_rejected(self, runner: CliRunner, config_file: Path) -> None:
        """Test unknown types are rejected by the option parser."""
        result = runner.invoke(cli, ["-c", str(config_file), "store", "u1", "x", "--type", "hobby"])
        assert result.exit_code == 2

    def test_embedding_failure_exits(self, runner: CliRunner, config_file: Path, fake_provider) -> None:
        """Test engine errors are reported with a non-zero exit code."""
        fake_provider.fail = True

        result = runner.invoke(cli, ["-c", str(config_file), "store", "u1", "I prefer dark mode"])

        assert result.exit_code == 1
        assert "embedding service down" in result.output


class TestSearchCommand:
    """Tests for `engram search` and `engram context`."""

    def test_search(self, runner: CliRunner, config_file: Path, fake_provider) -> None:
        """Test matching memories are printed in a table."""
        fake_provider.register("I prefer dark mode", {0: 1.0})
        fake_provider.register("dark mode", {0: 1.0})
        _store(runner, config_file, "u1", "I prefer dark mode")

        result = runner.invoke(cli, ["-c", str(config_file), "search", "u1", "dark mode"])

        assert result.exit_code == 0
        assert "Search Results" in result.output
        assert "preference" in result.output

    def test_search_no_results(self, runner: CliRunner, config_file: Path) -> None:
        """Test an empty store reports no matches."""
        result = runner.invoke(cli, ["-c", str(config_file), "search", "u1", "anything"])

        assert result.exit_code == 0
        assert "No matching memories" in result.output

    def test_context(self, runner: CliRunner, config_file: Path) -> None:
        """Test the context block is printed."""
        _store(runner, config_file, "u1", "My name is Alice")

        result = runner.invoke(cli, ["-c", str(config_file), "context", "u1", "who am I"])

        assert result.exit_code == 0
        assert "User Profile:" in result.output
        assert "- My name is Alice" in result.output


class TestMaintenanceCommands:
    """Tests for list, forget, purge and decay."""

    def test_list_and_forget(self, runner: CliRunner, config_file: Path) -> None:
        """Test forgotten memories only show up with --all."""
        memory_id = _store(runner, config_file, "u1", "I prefer dark mode")

        result = runner.invoke(cli, ["-c", str(config_file), "forget", "u1", memory_id])
        assert result.exit_code == 0
        assert "Forgot memory" in result.output

        result = runner.invoke(cli, ["-c", str(config_file), "list", "u1"])
        assert "No memories stored yet" in result.output

        result = runner.invoke(cli, ["-c", str(config_file), "list", "u1", "--all"])
        assert result.exit_code == 0
        assert "preference" in result.output

    def test_forget_missing(self, runner: CliRunner, config_file: Path) -> None:
        """Test forgetting an unknown id fails."""
        result = runner.invoke(cli, ["-c", str(config_file), "forget", "u1", "missing"])
        assert result.exit_code == 1

    def test_purge_inactive(self, runner: CliRunner, config_file: Path) -> None:
        """Test purging inactive memories reports the count."""
        memory_id = _store(runner, config_file, "u1", "I prefer dark mode")
        runner.invoke(cli, ["-c", str(config_file), "forget", "u1", memory_id])

        result = runner.invoke(cli, ["-c", str(config_file), "purge", "u1", "--inactive"])

        assert result.exit_code == 0
        assert "Purged 1 inactive memories" in result.output

    def test_purge_one(self, runner: CliRunner, config_file: Path) -> None:
        """Test purging a single memory by id."""
        memory_id = _store(runner, config_file, "u1", "I prefer dark mode")

        result = runner.invoke(cli, ["-c", str(config_file), "purge", "u1", memory_id])

        assert result.exit_code == 0
        assert f"Purged memory {memory_id}" in result.output

    @pytest.mark.parametrize("args", [["purge", "u1"], ["purge", "u1", "m1", "--inactive"]])
    def test_purge_usage(self, runner: CliRunner, config_file: Path, args: list[str]) -> None:
        """Test purge needs exactly one of MEMORY_ID or --inactive."""
        result = runner.invoke(cli, ["-c", str(config_file), *args])
        assert result.exit_code == 2

    def test_decay(self, runner: CliRunner, config_file: Path) -> None:
        """Test a decay pass prints its report."""
        _store(runner, config_file, "u1", "I prefer dark mode")

        result = runner.invoke(cli, ["-c", str(config_file), "decay"])

        assert result.exit_code == 0
        assert "Decay Pass" in result.output
        assert "Scanned" in result.output


class TestConfigCommand:
    """Tests for `engram config`."""

    def test_show_config(self, runner: CliRunner, config_file: Path) -> None:
        """Test the effective configuration is printed."""
        result = runner.invoke(cli, ["-c", str(config_file), "config"])

        assert result.exit_code == 0
        assert "Configuration" in result.output
        assert "Embedding Dimensions" in result.output

    def test_invalid_config_exits(self, runner: CliRunner, temp_dir: Path) -> None:
        """Test a config that fails validation exits with an error."""
        path = temp_dir / "bad.yaml"
        path.write_text(yaml.safe_dump({"retrieval": {"top_k": 0}}))

        result = runner.invoke(cli, ["-c", str(path), "config"])

        assert result.exit_code == 1
        assert "Failed to load configuration" in result.output
