"""
Unit tests for influence edge time decay.
"""

import math

import pytest

from src.influence.time_decay import (
    DECAY_PRESETS,
    apply_decay_to_edges,
    apply_time_decay,
    days_since_creation,
    decay_factor,
    decay_rate_from_half_life,
    filter_and_sort,
    half_life,
    time_decay_stats,
)

DAY = 86400
NOW = 1_700_000_000


def _edge(source, target, weight, age_days):
    return {
        "source_note_id": source,
        "target_note_id": target,
        "weight": weight,
        "cosine_sim": 0.8,
        "drift_score": 0.3,
        "created_at": NOW - int(age_days * DAY),
    }


class TestDecayMath:
    def test_fresh_edge_is_undecayed(self):
        assert decay_factor(0, 0.02) == 1.0

    def test_zero_rate_disables_decay(self):
        assert decay_factor(100, 0) == 1.0

    def test_half_life_of_default_rate(self):
        assert half_life(DECAY_PRESETS["balanced"]) == pytest.approx(34.66, abs=0.01)

    def test_weight_halves_after_half_life(self):
        rate = 0.05
        assert apply_time_decay(0.8, half_life(rate), rate) == pytest.approx(0.4)

    def test_rate_from_half_life_inverts(self):
        assert decay_rate_from_half_life(half_life(0.01)) == pytest.approx(0.01)

    def test_non_positive_rate_has_infinite_half_life(self):
        assert half_life(0) == math.inf

    def test_days_since_creation_never_negative(self):
        assert days_since_creation(NOW + DAY, NOW) == 0.0
        assert days_since_creation(NOW - 2 * DAY, NOW) == 2.0


class TestDecayedEdges:
    def test_apply_decay(self):
        (edge,) = apply_decay_to_edges([_edge("a", "b", 0.5, 10)], 0.02, now=NOW)
        assert edge.days_since_creation == 10.0
        assert edge.decay_factor == round(math.exp(-0.2), 4)
        assert edge.decayed_weight == round(0.5 * math.exp(-0.2), 4)

    def test_filter_and_sort_by_decayed_weight(self):
        edges = apply_decay_to_edges(
            [_edge("old", "t", 0.9, 200), _edge("new", "t", 0.4, 0), _edge("mid", "t", 0.5, 5)],
            0.02,
            now=NOW,
        )
        kept = filter_and_sort(edges, 0.05)
        assert [e.source_note_id for e in kept] == ["mid", "new"]

    def test_stats(self):
        edges = apply_decay_to_edges([_edge("a", "b", 0.4, 0), _edge("c", "d", 0.4, 0)], 0.02, now=NOW)
        stats = time_decay_stats(edges, 0.05)
        assert stats["total_edges"] == 2
        assert stats["effective_edges"] == 2
        assert stats["decay_impact"] == 0.0

    def test_stats_empty(self):
        assert time_decay_stats([], 0.05)["avg_decay_factor"] == 1.0
