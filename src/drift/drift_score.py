"""
Drift Score - Bounded composite score for a single edit.

    drift_score = clamp(semantic_diff * (1 + cluster_jump_bonus + change_type_modifier), 0, 1.5)

A cluster jump (both ids known and different) adds the jump bonus; the change
type nudges the multiplier up (pivot, expansion) or down (deepening,
refinement). Pure and deterministic; the result carries the bonus and the
modifier so stored scores can be audited.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass

from config import Settings, get_settings
from src.semantic.vector_math import round4


@dataclass(frozen=True)
class DriftScoreResult:
    """Drift score with its components."""

    drift_score: float
    cluster_jump: bool
    cluster_jump_bonus: float
    change_type_modifier: float

    def to_dict(self) -> dict:
        return asdict(self)


def is_cluster_jump(old_cluster_id: int | None, new_cluster_id: int | None) -> bool:
    """True iff both cluster ids are known and differ."""
    return old_cluster_id is not None and new_cluster_id is not None and old_cluster_id != new_cluster_id


class DriftScorer:
    """
    Compute drift scores from settings-driven weights.

    Example:
        >>> scorer = DriftScorer()
        >>> scorer.compute(0.3, 2, 5).drift_score
        0.45
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    def change_type_modifier(self, change_type: str | None) -> float:
        """Multiplier modifier for a change type (0 for unset or unknown types)."""
        if not change_type:
            return 0.0
        return float(self.settings.drift_change_type_modifiers.get(change_type, 0.0))

    def compute(
        self,
        semantic_diff: float,
        old_cluster_id: int | None = None,
        new_cluster_id: int | None = None,
        change_type: str | None = None,
    ) -> DriftScoreResult:
        """
        Score one edit.

        Args:
            semantic_diff: Semantic diff in [0, 1].
            old_cluster_id: Cluster before the edit (None if unknown).
            new_cluster_id: Cluster after the edit (None if unknown).
            change_type: Semantic change type, if classified.

        Returns:
            DriftScoreResult with the clamped, 4-decimal score.
        """
        jump = is_cluster_jump(old_cluster_id, new_cluster_id)
        bonus = self.settings.drift_cluster_jump_bonus if jump else 0.0
        modifier = self.change_type_modifier(change_type)

        raw = float(semantic_diff) * (1 + bonus + modifier)
        score = min(self.settings.drift_score_max, max(0.0, raw))

        return DriftScoreResult(
            drift_score=round4(score),
            cluster_jump=jump,
            cluster_jump_bonus=bonus,
            change_type_modifier=modifier,
        )


def compute_drift_score(
    semantic_diff: float,
    old_cluster_id: int | None = None,
    new_cluster_id: int | None = None,
    change_type: str | None = None,
    settings: Settings | None = None,
) -> DriftScoreResult:
    """Functional shortcut for DriftScorer(settings).compute(...)."""
    return DriftScorer(settings).compute(semantic_diff, old_cluster_id, new_cluster_id, change_type)
