"""
Smoke Tests for CLI Commands.

These tests verify that CLI commands run without errors and produce output
against an in-memory database. They don't validate correctness deeply -
just that commands work end to end.

Usage:
    pytest tests/smoke/test_cli_commands.py -v
    pytest tests/smoke/test_cli_commands.py -v -m smoke
"""

import pytest
from sqlalchemy import text
from typer.testing import CliRunner

from conftest import add_history, add_note, blend, unit_vector
from src.cli.main import app
from src.db.database import init_db

# Mark all tests in this module as smoke tests
pytestmark = pytest.mark.smoke

runner = CliRunner()


@pytest.fixture
def cli_db(monkeypatch, engine, session_factory, db_session):
    """Point the CLI at the in-memory database and seed a small corpus."""
    monkeypatch.setattr("src.cli.main.session_scope", session_factory)
    monkeypatch.setattr("src.cli.main.init_db", lambda: init_db(bind=engine))

    x, y = unit_vector(1.0), unit_vector(0.0, 1.0)
    add_note(db_session, "a", title="Graph databases", cluster_id=1, embedding=x)
    add_note(db_session, "b", title="Graph queries", cluster_id=2, embedding=blend(x, y, 0.8))
    add_history(db_session, "h1", "b", 1000, semantic_diff=0.4, prev_cluster_id=1, new_cluster_id=2, old_embedding=x)
    db_session.commit()
    return db_session


def invoke(*args):
    return runner.invoke(app, list(args))


class TestCLIHelp:
    """Test that help commands work."""

    def test_main_help(self):
        result = invoke("--help")
        assert result.exit_code == 0
        assert "drift" in result.stdout
        assert "influence" in result.stdout

    @pytest.mark.parametrize("group", ["db", "drift", "dynamics", "influence", "direction", "identity"])
    def test_group_help(self, group):
        assert invoke(group, "--help").exit_code == 0


class TestCLICommands:
    """Test that each rebuild/report command completes."""

    def test_db_init(self, cli_db):
        result = invoke("db", "init")
        assert result.exit_code == 0
        assert "Database initialized" in result.stdout

    def test_drift_rebuild_and_events(self, cli_db):
        assert invoke("drift", "rebuild").exit_code == 0
        result = invoke("drift", "events")
        assert result.exit_code == 0
        assert "Drift Events" in result.stdout

    def test_drift_detect(self, cli_db):
        result = invoke("drift", "detect", "--since", "0")
        assert result.exit_code == 0
        assert "1 drift events saved" in result.stdout
        assert "cluster_shift=1" in result.stdout

    def test_drift_annotate(self, cli_db):
        result = invoke("drift", "annotate")
        assert result.exit_code == 0
        score = cli_db.execute(text("SELECT drift_score FROM note_history WHERE id = 'h1'")).scalar()
        assert score is not None

    def test_drift_timeline(self, cli_db):
        assert invoke("drift", "timeline", "--insight").exit_code == 0

    def test_dynamics(self, cli_db):
        assert invoke("dynamics", "capture", "--date", "2026-01-10").exit_code == 0
        result = invoke("dynamics", "summary", "--date", "2026-01-10")
        assert result.exit_code == 0
        assert "cluster_count" in result.stdout

    def test_influence(self, cli_db):
        assert invoke("influence", "rebuild").exit_code == 0
        stats = invoke("influence", "stats", "--decay")
        assert stats.exit_code == 0
        assert "top_decayed_edges" in stats.stdout
        result = invoke("influence", "node", "b")
        assert result.exit_code == 0
        assert "Influenced by" in result.stdout

    def test_influence_causal(self, cli_db):
        assert invoke("influence", "rebuild").exit_code == 0
        summary = invoke("influence", "causal")
        assert summary.exit_code == 0
        assert "total_causal_pairs" in summary.stdout
        result = invoke("influence", "causal", "b", "--lag", "1")
        assert result.exit_code == 0
        assert "counterfactual" in result.stdout

    def test_influence_causal_unknown_note(self, cli_db):
        assert invoke("influence", "causal", "missing").exit_code == 1

    def test_direction(self, cli_db):
        assert invoke("dynamics", "capture").exit_code == 0
        assert invoke("direction", "flows").exit_code == 0
        assert invoke("direction", "recent").exit_code == 0

    def test_direction_note_without_drift(self, cli_db):
        assert invoke("direction", "note", "a").exit_code == 1

    def test_identity(self, cli_db):
        assert invoke("dynamics", "capture").exit_code == 0
        assert invoke("identity", "refresh").exit_code == 0
        result = invoke("identity", "show", "--cached")
        assert result.exit_code == 0
        assert "graph" in result.stdout


def test_failure_exits_with_code_one(monkeypatch):
    """Errors are reported at the command boundary."""

    def broken_scope():
        raise RuntimeError("database unavailable")

    monkeypatch.setattr("src.cli.main.session_scope", broken_scope)
    result = invoke("drift", "rebuild")
    assert result.exit_code == 1
