"""
Integration tests for the concept influence graph.
"""

import pytest
from sqlalchemy import text

from conftest import add_history, add_note, blend, unit_vector
from src.influence.graph_builder import InfluenceGraphService

DAY = 86400
NOW = 1_700_000_000


@pytest.fixture
def service(db_session, settings):
    return InfluenceGraphService(db_session, settings)


@pytest.fixture
def drifted_corpus(db_session):
    """B drifted (0.3, cluster 2 -> 5); A sits at cosine 0.5, C at 0.2 from B."""
    b = unit_vector(1.0)
    axis = unit_vector(0.0, 1.0)
    add_note(db_session, "B", title="Target", cluster_id=5, embedding=b)
    add_note(db_session, "A", title="Close", cluster_id=5, embedding=blend(b, axis, 0.5))
    add_note(db_session, "C", title="Far", cluster_id=2, embedding=blend(b, unit_vector(0.0, 0.0, 1.0), 0.2))
    add_history(db_session, "h1", "B", NOW - 10 * DAY, semantic_diff=0.3, prev_cluster_id=2, new_cluster_id=5)
    db_session.commit()


def _edges(session):
    return session.execute(
        text("""
            SELECT source_note_id, target_note_id, weight, cosine_sim, drift_score, created_at
            FROM note_influence_edges
            ORDER BY source_note_id, target_note_id
        """)
    ).fetchall()


class TestRebuildInfluenceGraph:
    def test_weight_is_cosine_times_drift_score(self, db_session, service, drifted_corpus):
        result = service.rebuild_influence_graph(created_at=NOW)

        assert result.notes_processed == 1
        assert result.edges_created == 1

        (edge,) = _edges(db_session)
        assert (edge.source_note_id, edge.target_note_id) == ("A", "B")
        assert edge.drift_score == pytest.approx(0.45)
        assert edge.cosine_sim == pytest.approx(0.5, abs=1e-4)
        assert edge.weight == pytest.approx(0.225, abs=1e-4)

    def test_no_self_loops_and_threshold_respected(self, db_session, service, drifted_corpus):
        add_history(db_session, "h2", "A", NOW, semantic_diff=0.9)
        db_session.commit()

        service.rebuild_influence_graph(created_at=NOW)

        edges = _edges(db_session)
        assert edges
        assert all(e.source_note_id != e.target_note_id for e in edges)
        assert all(e.weight >= 0.15 for e in edges)

    def test_max_semantic_diff_is_used(self, db_session, service, drifted_corpus):
        add_history(db_session, "h0", "B", NOW - 20 * DAY, semantic_diff=0.05)
        db_session.commit()

        service.rebuild_influence_graph(created_at=NOW)

        (edge,) = _edges(db_session)
        assert edge.drift_score == pytest.approx(0.45)

    def test_rebuild_is_idempotent(self, db_session, service, drifted_corpus):
        service.rebuild_influence_graph(created_at=NOW)
        first = [tuple(e) for e in _edges(db_session)]
        result = service.rebuild_influence_graph(created_at=NOW)

        assert result.cleared == 1
        assert [tuple(e) for e in _edges(db_session)] == first

    def test_non_positive_and_non_numeric_diffs_ignored(self, db_session, service, drifted_corpus):
        add_history(db_session, "h2", "A", NOW, semantic_diff=0)
        add_history(db_session, "h3", "C", NOW, semantic_diff="oops")
        db_session.commit()

        assert service.rebuild_influence_graph(created_at=NOW).notes_processed == 1


class TestEdgePath:
    def test_generate_edges_upserts(self, db_session, service, drifted_corpus):
        service.rebuild_influence_graph(created_at=NOW)
        written = service.generate_edges_for_note("B", 0.6, created_at=NOW + DAY)

        assert written == 1
        (edge,) = _edges(db_session)
        assert edge.drift_score == pytest.approx(0.6)
        assert edge.created_at == NOW + DAY

    def test_note_without_embedding(self, service, drifted_corpus):
        assert service.generate_edges_for_note("missing", 0.9) == 0

    def test_remove_edges_for_note(self, db_session, service, drifted_corpus):
        service.rebuild_influence_graph(created_at=NOW)
        assert service.remove_edges_for_note("A") == 1
        assert _edges(db_session) == []


class TestInfluenceQueries:
    def test_neighbours_and_degree(self, service, drifted_corpus):
        service.rebuild_influence_graph(created_at=NOW)

        influencers = service.get_influencers_of("B")
        assert [e["source_note_id"] for e in influencers] == ["A"]
        assert influencers[0]["source_title"] == "Close"
        assert [e["target_note_id"] for e in service.get_influenced_by("A")] == ["B"]

        degree = service.get_node_degree("B")
        assert (degree["in_degree"], degree["out_degree"]) == (1, 0)

    def test_stats(self, service, drifted_corpus):
        service.rebuild_influence_graph(created_at=NOW)
        stats = service.get_influence_stats()

        assert stats["total_edges"] == 1
        assert stats["top_influenced_notes"][0]["note_id"] == "B"
        assert stats["top_influencers"][0]["note_id"] == "A"

    def test_decayed_queries(self, service, drifted_corpus):
        service.rebuild_influence_graph(created_at=NOW - 30 * DAY)

        (edge,) = service.get_influencers_of_with_decay("B", now=NOW)
        assert edge.days_since_creation == 30.0
        assert edge.decayed_weight < edge.weight

        assert service.get_influencers_of_with_decay("B", now=NOW + 365 * DAY) == []

        stats = service.get_decay_stats(now=NOW)
        assert stats["total_edges"] == 1
        assert 0.0 < stats["decay_impact"] < 1.0
