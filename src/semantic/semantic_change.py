"""
Semantic Change Analyzer - Classify one note edit into a change type.

Change types:
- refinement: wording polish or typo fixes, meaning unchanged
- deepening: same topic, more detail at similar length
- expansion: information added, scope widened
- contraction: narrowed down or summarized
- pivot: the subject itself moved

The analyzer combines text metrics (vocabulary Jaccard, heading/paragraph
structure, length ratio) with embedding geometry (cosine distance, normalized
direction of change). Classification rules are evaluated in order and the first
match wins; every threshold comes from Settings.
"""
from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Sequence

import numpy as np

from config import Settings, get_settings
from src.semantic.vector_math import as_vector, cosine_similarity, round3

# Hiragana, katakana and CJK ideographs
_CJK_RUN = re.compile(r"[\u3040-\u309f\u30a0-\u30ff\u4e00-\u9fff]{2,}")
_LATIN_WORD = re.compile(r"[a-zA-Z]{2,}")
_ATX_HEADING = re.compile(r"^#{1,6}\s+(.+)$", re.MULTILINE)
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")


class EmbeddingDimensionError(ValueError):
    """Raised when two embeddings that must be subtracted differ in length."""

    def __init__(self, old_dim: int, new_dim: int):
        super().__init__(f"Embedding dimensions must match ({old_dim} != {new_dim})")
        self.old_dim = old_dim
        self.new_dim = new_dim


@dataclass
class ChangeMetrics:
    """Text and embedding metrics behind a classification (3-decimal rounded)."""

    content_length_ratio: float
    topic_shift: float
    vocabulary_overlap: float
    structural_similarity: float


@dataclass
class SemanticChangeDetail:
    """Result of analyzing one edit."""

    type: str
    confidence: float
    magnitude: float
    metrics: ChangeMetrics
    direction: list[float] = field(default_factory=list)

    def to_dict(self, include_direction: bool = False) -> dict[str, Any]:
        """Convert to a JSON-ready dict; direction is omitted unless requested."""
        data = {
            "type": self.type,
            "confidence": self.confidence,
            "magnitude": self.magnitude,
            "metrics": asdict(self.metrics),
        }
        if include_direction:
            data["direction"] = list(self.direction)
        return data


# ========================================
# Text metrics
# ========================================


def tokenize(text: str) -> list[str]:
    """Lowercase tokens from CJK runs and Latin words (both at least 2 chars)."""
    if not text:
        return []
    cjk = _CJK_RUN.findall(text)
    latin = [word.lower() for word in _LATIN_WORD.findall(text)]
    return cjk + latin


def extract_headings(text: str) -> list[str]:
    """Ordered ATX heading texts (# .. ######)."""
    return [match.strip() for match in _ATX_HEADING.findall(text or "")]


def count_paragraphs(text: str) -> int:
    """Number of non-empty blank-line-delimited blocks."""
    return len([block for block in _PARAGRAPH_BREAK.split(text or "") if block.strip()])


def vocabulary_overlap(old_tokens: Sequence[str], new_tokens: Sequence[str]) -> float:
    """Jaccard index of two token sets; two empty sets count as identical."""
    old_set, new_set = set(old_tokens), set(new_tokens)
    union = old_set | new_set
    if not union:
        return 1.0
    return len(old_set & new_set) / len(union)


def structural_similarity(old_text: str, new_text: str) -> float:
    """Heading Jaccard (60%) blended with paragraph-count ratio (40%)."""
    heading_overlap = vocabulary_overlap(extract_headings(old_text), extract_headings(new_text))

    old_paragraphs = count_paragraphs(old_text)
    new_paragraphs = count_paragraphs(new_text)
    paragraph_similarity = min(old_paragraphs, new_paragraphs) / max(old_paragraphs, new_paragraphs, 1)

    return heading_overlap * 0.6 + paragraph_similarity * 0.4


# ========================================
# Embedding metrics
# ========================================


def direction_vector(old_embedding: Sequence[float], new_embedding: Sequence[float]) -> np.ndarray:
    """
    Normalized (new - old) vector.

    Raises:
        EmbeddingDimensionError: If the embeddings differ in length.
    """
    old_vec, new_vec = as_vector(old_embedding), as_vector(new_embedding)
    if old_vec.size != new_vec.size:
        raise EmbeddingDimensionError(old_vec.size, new_vec.size)

    diff = new_vec - old_vec
    norm = np.linalg.norm(diff)
    if norm == 0:
        return diff
    return diff / norm


def topic_shift(
    old_embedding: Sequence[float],
    new_embedding: Sequence[float],
    vocab_overlap: float,
) -> float:
    """Cosine distance (70%) plus vocabulary change (30%), capped at 1."""
    cosine_distance = 1 - cosine_similarity(old_embedding, new_embedding)
    return min(1.0, cosine_distance * 0.7 + (1 - vocab_overlap) * 0.3)


# ========================================
# Classification
# ========================================


class SemanticChangeAnalyzer:
    """
    Classify note edits into semantic change types.

    Example:
        >>> analyzer = SemanticChangeAnalyzer()
        >>> detail = analyzer.analyze(old_text, new_text, old_emb, new_emb)
        >>> print(f"{detail.type} ({detail.confidence:.2f})")
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    def classify_change_type(
        self,
        magnitude: float,
        length_ratio: float,
        shift: float,
        vocab_overlap: float,
        structural_sim: float,
    ) -> tuple[str, float]:
        """
        Apply the ordered classification rules.

        Args:
            magnitude: Semantic diff of the edit in [0, 1].
            length_ratio: New content length / old content length.
            shift: Topic shift in [0, 1].
            vocab_overlap: Vocabulary Jaccard in [0, 1].
            structural_sim: Structural similarity in [0, 1].

        Returns:
            (change_type, confidence)
        """
        s = self.settings

        if (
            magnitude < s.change_refinement_threshold
            and (structural_sim + vocab_overlap) / 2 >= s.change_refinement_min_similarity
        ):
            return "refinement", 0.95

        if shift > s.change_pivot_threshold:
            return "pivot", min(0.95, 0.5 + shift * 0.5)

        if length_ratio > s.change_expansion_ratio:
            return "expansion", min(0.9, 0.5 + (length_ratio - 1) * 0.4)

        if length_ratio < s.change_contraction_ratio:
            return "contraction", min(0.9, 0.5 + (1 - length_ratio) * 0.4)

        if vocab_overlap > s.change_deepening_vocab_threshold:
            structure_bonus = 0.1 if structural_sim > 0.6 else 0.0
            return "deepening", min(0.9, 0.6 + structure_bonus)

        # Similar length, vocabulary moved: lean on the length direction
        if length_ratio >= 1.0:
            return "expansion", 0.5
        return "contraction", 0.5

    def analyze(
        self,
        old_text: str,
        new_text: str,
        old_embedding: Sequence[float],
        new_embedding: Sequence[float],
        semantic_diff: float | None = None,
    ) -> SemanticChangeDetail:
        """
        Analyze one edit.

        Args:
            old_text: Content before the edit.
            new_text: Content after the edit.
            old_embedding: Embedding before the edit.
            new_embedding: Embedding after the edit.
            semantic_diff: Precomputed semantic diff (defaults to 1 - cosine).

        Returns:
            SemanticChangeDetail with type, confidence, magnitude, direction and metrics.

        Raises:
            EmbeddingDimensionError: If the embeddings differ in length.
        """
        old_len, new_len = len(old_text or ""), len(new_text or "")
        length_ratio = new_len / old_len if old_len > 0 else 1.0

        overlap = vocabulary_overlap(tokenize(old_text), tokenize(new_text))
        structure = structural_similarity(old_text, new_text)

        if semantic_diff is None:
            semantic_diff = 1 - cosine_similarity(old_embedding, new_embedding)
        magnitude = min(1.0, max(0.0, float(semantic_diff)))

        shift = topic_shift(old_embedding, new_embedding, overlap)
        direction = direction_vector(old_embedding, new_embedding)

        change_type, confidence = self.classify_change_type(
            magnitude, length_ratio, shift, overlap, structure
        )

        return SemanticChangeDetail(
            type=change_type,
            confidence=confidence,
            magnitude=magnitude,
            direction=direction.tolist(),
            metrics=ChangeMetrics(
                content_length_ratio=round3(length_ratio),
                topic_shift=round3(shift),
                vocabulary_overlap=round3(overlap),
                structural_similarity=round3(structure),
            ),
        )


def serialize_change_detail(detail: SemanticChangeDetail, include_direction: bool = False) -> str:
    """JSON for note_history.change_detail (direction omitted by default)."""
    return json.dumps(detail.to_dict(include_direction=include_direction))


def deserialize_change_detail(payload: str) -> SemanticChangeDetail:
    """Inverse of serialize_change_detail; a missing direction becomes []."""
    data = json.loads(payload)
    return SemanticChangeDetail(
        type=data["type"],
        confidence=data["confidence"],
        magnitude=data["magnitude"],
        metrics=ChangeMetrics(**data["metrics"]),
        direction=list(data.get("direction") or []),
    )
