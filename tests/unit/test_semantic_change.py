"""
Unit tests for semantic change classification.
"""

import numpy as np
import pytest

from config import Settings
from src.semantic.semantic_change import (
    EmbeddingDimensionError,
    SemanticChangeAnalyzer,
    count_paragraphs,
    deserialize_change_detail,
    direction_vector,
    extract_headings,
    serialize_change_detail,
    structural_similarity,
    tokenize,
    topic_shift,
    vocabulary_overlap,
)


@pytest.fixture
def analyzer(settings):
    return SemanticChangeAnalyzer(settings)


class TestTextMetrics:
    """Tests for tokenization and structure metrics."""

    def test_tokenize_latin_lowercases_and_drops_short_words(self):
        assert tokenize("Graph a DB x") == ["graph", "db"]

    def test_tokenize_cjk_runs(self):
        assert tokenize("機械学習 と AI") == ["機械学習", "ai"]

    def test_tokenize_empty(self):
        assert tokenize("") == []

    def test_vocabulary_overlap_jaccard(self):
        assert vocabulary_overlap(["a1", "b2"], ["b2", "c3"]) == pytest.approx(1 / 3)

    def test_vocabulary_overlap_both_empty(self):
        assert vocabulary_overlap([], []) == 1.0

    def test_vocabulary_overlap_with_itself(self):
        tokens = tokenize("Graph theory and graph databases")
        assert vocabulary_overlap(tokens, tokens) == 1.0

    def test_vocabulary_overlap_disjoint(self):
        assert vocabulary_overlap(["graph", "node"], ["music", "theory"]) == 0.0

    def test_extract_headings(self):
        text = "# Title\nbody\n### Sub heading\n####### not a heading"
        assert extract_headings(text) == ["Title", "Sub heading"]

    def test_count_paragraphs(self):
        assert count_paragraphs("one\n\ntwo\n  \nthree") == 3
        assert count_paragraphs("") == 0

    def test_structural_similarity_identical(self):
        text = "# A\n\npara one\n\npara two"
        assert structural_similarity(text, text) == pytest.approx(1.0)

    def test_structural_similarity_no_headings_same_paragraphs(self):
        """Two heading-less texts share an empty heading set (Jaccard 1)."""
        assert structural_similarity("one", "two") == pytest.approx(1.0)


class TestEmbeddingMetrics:
    def test_direction_vector_is_normalized(self):
        direction = direction_vector([1.0, 0.0], [0.0, 1.0])
        assert np.linalg.norm(direction) == pytest.approx(1.0)

    def test_direction_vector_of_identical_embeddings_is_zero(self):
        assert direction_vector([0.6, 0.8], [0.6, 0.8]).tolist() == [0.0, 0.0]

    def test_direction_vector_dimension_mismatch(self):
        with pytest.raises(EmbeddingDimensionError):
            direction_vector([1.0, 0.0], [1.0, 0.0, 0.0])

    def test_topic_shift(self):
        # cosine distance 1 -> 0.7, vocabulary fully changed -> 0.3
        assert topic_shift([1.0, 0.0], [0.0, 1.0], 0.0) == pytest.approx(1.0)
        assert topic_shift([1.0, 0.0], [1.0, 0.0], 1.0) == pytest.approx(0.0)


class TestClassifyChangeType:
    """Tests for the ordered classification rules."""

    def test_refinement(self, analyzer):
        assert analyzer.classify_change_type(0.01, 1.0, 0.01, 0.9, 1.0) == ("refinement", 0.95)

    def test_small_magnitude_with_low_similarity_is_not_refinement(self, analyzer):
        change_type, _ = analyzer.classify_change_type(0.01, 1.0, 0.1, 0.1, 0.2)
        assert change_type != "refinement"

    def test_pivot(self, analyzer):
        change_type, confidence = analyzer.classify_change_type(0.5, 1.0, 0.6, 0.2, 0.5)
        assert change_type == "pivot"
        assert confidence == pytest.approx(0.8)

    def test_expansion(self, analyzer):
        change_type, confidence = analyzer.classify_change_type(0.2, 2.0, 0.2, 0.5, 0.5)
        assert change_type == "expansion"
        assert confidence == pytest.approx(0.9)

    def test_contraction(self, analyzer):
        change_type, confidence = analyzer.classify_change_type(0.2, 0.5, 0.2, 0.5, 0.5)
        assert change_type == "contraction"
        assert confidence == pytest.approx(0.7)

    def test_deepening_with_structure_bonus(self, analyzer):
        assert analyzer.classify_change_type(0.2, 1.1, 0.2, 0.8, 0.7) == ("deepening", pytest.approx(0.7))

    def test_fallback_uses_length_direction(self, analyzer):
        assert analyzer.classify_change_type(0.2, 1.1, 0.2, 0.5, 0.5) == ("expansion", 0.5)
        assert analyzer.classify_change_type(0.2, 0.9, 0.2, 0.5, 0.5) == ("contraction", 0.5)

    def test_thresholds_come_from_settings(self):
        tuned = SemanticChangeAnalyzer(Settings(_env_file=None, change_pivot_threshold=0.9))
        change_type, _ = tuned.classify_change_type(0.5, 1.0, 0.6, 0.2, 0.5)
        assert change_type != "pivot"


class TestAnalyze:
    def test_analyze_expansion(self, analyzer):
        old = "Graph databases store nodes."
        new = old + " They also store edges, properties and labels for rich traversal queries."
        detail = analyzer.analyze(old, new, [1.0, 0.0], [0.8, 0.6])

        assert detail.type == "expansion"
        assert detail.magnitude == pytest.approx(0.2)
        assert detail.metrics.content_length_ratio > 1.3
        assert len(detail.direction) == 2

    def test_magnitude_clamped(self, analyzer):
        detail = analyzer.analyze("a text", "a text", [1.0, 0.0], [1.0, 0.0], semantic_diff=1.7)
        assert detail.magnitude == 1.0

    def test_empty_old_text_uses_unit_length_ratio(self, analyzer):
        detail = analyzer.analyze("", "new text", [1.0, 0.0], [1.0, 0.0])
        assert detail.metrics.content_length_ratio == 1.0

    def test_dimension_mismatch_raises(self, analyzer):
        with pytest.raises(EmbeddingDimensionError):
            analyzer.analyze("a", "b", [1.0, 0.0], [1.0])

    def test_serialized_detail_omits_direction_by_default(self, analyzer):
        detail = analyzer.analyze("old words", "new words", [1.0, 0.0], [0.0, 1.0])
        payload = serialize_change_detail(detail)

        assert "direction" not in payload
        restored = deserialize_change_detail(payload)
        assert restored.type == detail.type
        assert restored.metrics == detail.metrics
        assert restored.direction == []
