"""
Smoke Tests for CLI Commands.

These tests verify that CLI commands run without errors and produce output.
They don't validate correctness deeply - just that commands work.

Usage:
    pytest tests/smoke/test_cli_commands.py -v
    pytest tests/smoke/test_cli_commands.py -v -m smoke
"""

import subprocess
import sys
from contextlib import contextmanager
from pathlib import Path
from uuid import uuid4

import pytest
from typer.testing import CliRunner

from insight_dedup.cli import main as cli
from insight_dedup.semantic.clustering_service import ClusterBuilder
from tests.helpers import unit

# Mark all tests in this module as smoke tests
pytestmark = pytest.mark.smoke

# Project root
PROJECT_ROOT = Path(__file__).parent.parent.parent

runner = CliRunner()


def run_cli_command(command: str, timeout: int = 30) -> tuple[int, str, str]:
    """
    Run a CLI command in a fresh interpreter and return exit code, stdout, stderr.

    Args:
        command: The command to run (after 'python -m insight_dedup.cli')
        timeout: Maximum time to wait

    Returns:
        Tuple of (exit_code, stdout, stderr)
    """
    full_command = f"{sys.executable} -m insight_dedup.cli {command}"

    result = subprocess.run(
        full_command,
        shell=True,
        cwd=PROJECT_ROOT,
        capture_output=True,
        text=True,
        timeout=timeout,
    )

    return result.returncode, result.stdout, result.stderr


@pytest.fixture
def wired(monkeypatch, db_session, test_settings, fake_gateway):
    """Point the CLI at the in-memory store and the fake embedding backend."""

    @contextmanager
    def _scope():
        yield db_session

    monkeypatch.setattr(cli, "session_scope", _scope)
    monkeypatch.setattr(cli, "get_settings", lambda: test_settings)
    monkeypatch.setattr(cli, "get_embedding_gateway", lambda settings: fake_gateway)
    return db_session


class TestCLIHelp:
    """Test that help commands work."""

    def test_main_help(self):
        """Main help should display without errors."""
        code, stdout, stderr = run_cli_command("--help")

        assert code == 0, f"Help failed: {stderr}"
        assert "dedup" in stdout.lower()
        assert "Commands" in stdout

    def test_command_help(self):
        result = runner.invoke(cli.app, ["cluster-all", "--help"])

        assert result.exit_code == 0
        assert "--skip-embeddings" in result.output


class TestClusteringCommands:
    """Test clustering and job commands."""

    def test_cluster(self, wired, make_insight):
        make_insight("A", vector=unit(0))
        make_insight("B", vector=unit(2))

        result = runner.invoke(cli.app, ["cluster", "--limit", "50"])

        assert result.exit_code == 0, result.output
        assert "clusters created" in result.output

    def test_cluster_all_without_embeddings(self, wired, fake_gateway, make_insight):
        make_insight("A", vector=unit(0))
        make_insight("B", vector=unit(2))

        result = runner.invoke(cli.app, ["cluster-all", "--skip-embeddings", "--batch-size", "10"])

        assert result.exit_code == 0, result.output
        assert "completed" in result.output
        assert "embeddings: skipped" in result.output
        assert fake_gateway.calls == []

    def test_status(self, wired, make_insight):
        make_insight("no vector")

        result = runner.invoke(cli.app, ["status"])

        assert result.exit_code == 0, result.output
        assert "missing embeddings" in result.output
        assert "No cluster jobs yet" in result.output

    def test_embeddings(self, wired, fake_gateway, make_insight):
        make_insight("embed me")

        result = runner.invoke(cli.app, ["embeddings"])

        assert result.exit_code == 0, result.output
        assert fake_gateway.calls == ["embed me"]


class TestReviewCommands:
    """Test review commands."""

    @pytest.fixture
    def cluster_id(self, wired, test_settings, make_insight):
        make_insight("A", vector=unit(0))
        make_insight("B", vector=unit(2))
        result = ClusterBuilder(wired, settings=test_settings).build_merge_clusters()
        return str(result.cluster_ids[0])

    def test_clusters(self, cluster_id):
        result = runner.invoke(cli.app, ["clusters"])

        assert result.exit_code == 0, result.output
        assert "new" in result.output

    def test_no_clusters(self, wired):
        result = runner.invoke(cli.app, ["clusters", "--status", "approved"])

        assert result.exit_code == 0
        assert "No approved clusters" in result.output

    def test_approve_all_members(self, cluster_id):
        result = runner.invoke(cli.app, ["approve", cluster_id])

        assert result.exit_code == 0, result.output
        assert "Merged 2 insights" in result.output

    def test_reject(self, cluster_id):
        result = runner.invoke(cli.app, ["reject", cluster_id])

        assert result.exit_code == 0, result.output
        assert "Rejected" in result.output

    def test_reject_unknown_cluster(self, wired):
        result = runner.invoke(cli.app, ["reject", str(uuid4())])

        assert result.exit_code == 1
        assert "Error" in result.output

    def test_merge_into(self, wired, make_insight, make_unique):
        unique = make_unique(unit(0))
        raw = make_insight("stray", vector=unit(60))

        result = runner.invoke(cli.app, ["merge-into", str(raw.id), str(unique.id)])

        assert result.exit_code == 0, result.output
        assert "Merged" in result.output
