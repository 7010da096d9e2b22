"""
Integration tests for drift event detection and history annotation.
"""

import json

import pytest
from sqlalchemy import text

from conftest import add_cluster_assignment, add_embedding, add_history, add_note, unit_vector
from src.drift.event_detector import DriftEventService


@pytest.fixture
def service(db_session, settings):
    return DriftEventService(db_session, settings)


def _events(session):
    return session.execute(
        text("SELECT detected_at, severity, type, message, related_cluster FROM drift_events ORDER BY id")
    ).fetchall()


class TestRebuildDriftEvents:
    """Tests for the full rebuild."""

    def test_cluster_shift_event(self, db_session, service):
        add_note(db_session, "b", cluster_id=5)
        add_history(db_session, "h1", "b", 1000, semantic_diff=0.3, prev_cluster_id=2, new_cluster_id=5)
        db_session.commit()

        result = service.rebuild_drift_events()

        assert result.inserted == 1
        assert result.by_type["cluster_shift"] == 1
        assert result.by_severity["mid"] == 1

        (event,) = _events(db_session)
        assert event.type == "cluster_bias"
        assert event.severity == "mid"
        assert event.related_cluster == 5
        assert event.detected_at == 1000
        assert "Cluster 2 → 5" in event.message

    def test_thresholds_and_skipped_rows(self, db_session, service):
        add_history(db_session, "h1", "n", 1000, semantic_diff=0.6)
        add_history(db_session, "h2", "n", 2000, semantic_diff=0.25)
        add_history(db_session, "h3", "n", 3000, semantic_diff=0.1)
        add_history(db_session, "h4", "n", 4000, semantic_diff="n/a")
        add_history(db_session, "h5", "n", 5000, semantic_diff=None)
        db_session.commit()

        result = service.rebuild_drift_events()

        assert result.detected == 2
        assert [e.type for e in _events(db_session)] == ["over_focus", "drift_drop"]
        assert [e.severity for e in _events(db_session)] == ["high", "low"]

    def test_rebuild_is_idempotent(self, db_session, service):
        add_history(db_session, "h1", "n", 1000, semantic_diff=0.6)
        add_history(db_session, "h2", "n", 2000, semantic_diff=0.3, prev_cluster_id=1, new_cluster_id=2)
        db_session.commit()

        service.rebuild_drift_events()
        first = _events(db_session)
        second_result = service.rebuild_drift_events()
        second = _events(db_session)

        assert second_result.cleared == 2
        assert [tuple(r) for r in first] == [tuple(r) for r in second]


class TestIncrementalDetection:
    def test_infers_clusters_from_assignment_history(self, db_session, service):
        add_history(db_session, "h1", "n", 1000, semantic_diff=0.1)
        add_cluster_assignment(db_session, "n", 1, 500)
        add_cluster_assignment(db_session, "n", 4, 900)
        db_session.commit()

        (event,) = service.detect_drift_events()
        assert event.event_type == "cluster_shift"
        assert (event.prev_cluster_id, event.new_cluster_id) == (1, 4)

    def test_single_assignment_is_not_a_jump(self, db_session, service):
        add_history(db_session, "h1", "n", 1000, semantic_diff=0.1)
        add_cluster_assignment(db_session, "n", 1, 500)
        db_session.commit()

        assert service.detect_drift_events() == []

    def test_since_filters_and_appends(self, db_session, service):
        add_history(db_session, "h1", "n", 1000, semantic_diff=0.6)
        add_history(db_session, "h2", "n", 2000, semantic_diff=0.6)
        db_session.commit()

        assert service.detect_and_save(since=1500) == 1
        assert service.detect_and_save(since=1500) == 1
        assert len(_events(db_session)) == 2


class TestEventQueries:
    def test_list_and_resolve(self, db_session, service):
        add_history(db_session, "h1", "n", 1000, semantic_diff=0.6)
        add_history(db_session, "h2", "n", 2000, semantic_diff=0.3)
        db_session.commit()
        service.rebuild_drift_events()

        events = service.list_drift_events()
        assert [e["detected_at"] for e in events] == [2000, 1000]

        assert service.resolve_drift_event(events[0]["id"], resolved_at=3000) is True
        assert service.resolve_drift_event(9999) is False
        unresolved = service.list_drift_events(unresolved_only=True)
        assert [e["detected_at"] for e in unresolved] == [1000]


class TestAnnotateHistory:
    """Tests for the drift_score / change_type backfill."""

    def test_scores_and_classifies_latest_revision(self, db_session, service):
        old_vec = unit_vector(1.0, 0.0)
        new_vec = unit_vector(0.8, 0.6)
        add_note(db_session, "n", content="Graph databases store nodes and edges.", cluster_id=5, embedding=new_vec)
        add_history(
            db_session, "h1", "n", 1000,
            semantic_diff=0.2, prev_cluster_id=2, new_cluster_id=5,
            content="Graph databases store nodes and edges.", old_embedding=old_vec,
        )
        db_session.commit()

        result = service.annotate_history()

        assert (result.scanned, result.scored, result.classified) == (1, 1, 1)
        row = db_session.execute(
            text("SELECT drift_score, change_type, change_detail FROM note_history WHERE id = 'h1'")
        ).fetchone()
        assert row.change_type is not None
        detail = json.loads(row.change_detail)
        assert detail["type"] == row.change_type
        assert "direction" not in detail
        assert row.drift_score > 0.2

    def test_existing_values_are_kept(self, db_session, service):
        add_history(db_session, "h1", "n", 1000, semantic_diff=0.4, drift_score=0.9, change_type="pivot")
        db_session.commit()

        result = service.annotate_history()

        assert result.scored == 0
        score = db_session.execute(text("SELECT drift_score FROM note_history WHERE id = 'h1'")).scalar()
        assert score == 0.9

    def test_unclassifiable_rows_are_still_scored(self, db_session, service):
        add_history(db_session, "h1", "n", 1000, semantic_diff=0.4)
        add_history(db_session, "h2", "n", 2000, semantic_diff="bad")
        db_session.commit()

        result = service.annotate_history()

        assert (result.scored, result.classified, result.skipped) == (1, 0, 1)
        score = db_session.execute(text("SELECT drift_score FROM note_history WHERE id = 'h1'")).scalar()
        assert score == 0.4

    def test_next_revision_is_the_new_side(self, db_session, service):
        add_note(db_session, "n", content="current text")
        add_embedding(db_session, "n", unit_vector(0.0, 1.0))
        add_history(db_session, "h1", "n", 1000, semantic_diff=0.1, content="first", old_embedding=unit_vector(1.0, 0.0))
        add_history(db_session, "h2", "n", 2000, semantic_diff=0.1, content="second", old_embedding=unit_vector(1.0, 0.0))
        db_session.commit()

        service.annotate_history()

        detail = json.loads(
            db_session.execute(text("SELECT change_detail FROM note_history WHERE id = 'h1'")).scalar()
        )
        # h1 -> h2 keeps the embedding, so the topic shift is pure vocabulary change
        assert detail["metrics"]["topic_shift"] == pytest.approx(0.3)
