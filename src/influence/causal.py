"""
Causal Heuristics - Correlational "cause and effect" over the influence graph.

Three lenses on one note, all built from the edit history and the influence
edges. None of them is true causal inference:

- Granger test: does the past of note A's daily drift series improve the
  prediction of note B's series beyond B's own past? Both regressions are
  ordinary least squares with an intercept; the F statistic is turned into
  a p-value with the F distribution and causal_strength = 1 - p.
- Intervention effect: drift of the note's cluster in the 14 days before
  vs the 14 days after the note was last written (Welch t-test, Cohen's d).
- Counterfactual: how much of the graph depends on the note, whether it
  founded its cluster, and how often its dependents changed cluster.

Daily series are aligned on calendar days inside the analysis window;
days without an edit contribute 0.
"""
from __future__ import annotations

import math
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Sequence

import numpy as np
from loguru import logger
from scipy import stats
from sqlalchemy import text
from sqlalchemy.orm import Session

from config import Settings, get_settings
from src.cluster.identity import extract_keywords
from src.drift.event_detector import parse_semantic_diff
from src.influence.graph_builder import InfluenceGraphService
from src.semantic.vector_math import as_vector, round4

DAY = 86400

# Residual sums below this are treated as a perfect fit
_RSS_EPSILON = 1e-12


@dataclass
class GrangerResult:
    f_statistic: float = 0.0
    p_value: float = 1.0
    causal_strength: float = 0.0


@dataclass
class GrangerCausality:
    """Granger test between two notes (forward direction source -> target)."""

    source_note_id: str
    target_note_id: str
    f_statistic: float
    p_value: float
    causal_strength: float
    direction: str  # unidirectional | bidirectional | none
    lag: int


@dataclass
class CausalRelation:
    note_id: str
    causes: list[str] = field(default_factory=list)
    caused_by: list[str] = field(default_factory=list)
    bidirectional: list[str] = field(default_factory=list)


@dataclass
class InterventionEffect:
    note_id: str
    cluster_drift_acceleration: float = 0.0
    affected_notes: int = 0
    avg_drift_increase: float = 0.0
    significance: float = 0.0
    effect_size: float = 0.0
    time_to_effect: int = 0


@dataclass
class CounterfactualAnalysis:
    note_id: str
    title: str
    missing_concepts: list[str]
    alternative_path: str
    impact_score: float
    dependent_notes: list[str]
    pivot_probability: float


@dataclass
class CausalAnalysis:
    note_id: str
    relations: CausalRelation
    intervention: InterventionEffect
    counterfactual: CounterfactualAnalysis
    insight: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ========================================
# Pure helpers
# ========================================


def _lag_columns(series: np.ndarray, lag: int) -> np.ndarray:
    n = series.size
    return np.column_stack([series[lag - k : n - k] for k in range(1, lag + 1)])


def _rss(design: np.ndarray, y: np.ndarray) -> float:
    coef, *_ = np.linalg.lstsq(design, y, rcond=None)
    residuals = y - design @ coef
    return float(residuals @ residuals)


def granger_causality_test(
    source: Sequence[float] | np.ndarray,
    target: Sequence[float] | np.ndarray,
    lag: int,
    min_observations: int = 5,
) -> GrangerResult:
    """
    F test of "source Granger-causes target".

    The trailing overlap of the two series is used. Too-short series, a lag
    leaving no residual degrees of freedom, or a target already perfectly
    explained by its own past give the neutral result (F=0, p=1, strength 0).

    Example:
        >>> result = granger_causality_test(source, target, lag=2)
        >>> result.causal_strength > 0.95
    """
    src, tgt = as_vector(source), as_vector(target)
    n = min(src.size, tgt.size)
    if lag < 1 or n < min_observations:
        return GrangerResult()

    src, tgt = src[-n:], tgt[-n:]
    rows = n - lag
    df_denominator = rows - 2 * lag - 1
    if df_denominator <= 0:
        return GrangerResult()

    y = tgt[lag:]
    intercept = np.ones((rows, 1))
    own_lags = _lag_columns(tgt, lag)
    restricted = np.hstack([intercept, own_lags])
    unrestricted = np.hstack([intercept, own_lags, _lag_columns(src, lag)])

    rss_restricted = _rss(restricted, y)
    if rss_restricted < _RSS_EPSILON:
        return GrangerResult()
    rss_unrestricted = max(_rss(unrestricted, y), _RSS_EPSILON)

    f_statistic = max(
        0.0,
        ((rss_restricted - rss_unrestricted) / lag) / (rss_unrestricted / df_denominator),
    )
    p_value = float(stats.f.sf(f_statistic, lag, df_denominator))
    if math.isnan(p_value):
        return GrangerResult()

    return GrangerResult(
        f_statistic=round4(f_statistic),
        p_value=round4(p_value),
        causal_strength=round4(min(1.0, max(0.0, 1.0 - p_value))),
    )


def causal_direction(forward: GrangerResult, backward: GrangerResult, min_strength: float) -> str:
    if forward.causal_strength >= min_strength and backward.causal_strength >= min_strength:
        return "bidirectional"
    if forward.causal_strength >= min_strength:
        return "unidirectional"
    return "none"


def daily_series(points: Sequence[tuple[int, float]], start: int, days: int) -> np.ndarray:
    """Sum (timestamp, value) points into `days` calendar buckets from `start`."""
    series = np.zeros(days, dtype=np.float64)
    for created_at, value in points:
        index = (created_at - start) // DAY
        if 0 <= index < days:
            series[index] += value
    return series


def alternative_path(is_founding_member: bool, impact_score: float, dependent_count: int, cluster_id: int | None) -> str:
    if is_founding_member and cluster_id is not None:
        return (
            f"This note is a foundation of cluster {cluster_id}. Without it the cluster "
            "might never have formed."
        )
    if impact_score > 0.7:
        return (
            f"A highly influential note. Without it, {dependent_count} notes would likely "
            "have developed very differently."
        )
    if impact_score > 0.4:
        return (
            "Moderately influential. Other notes could partly have played its role, "
            "but with less depth of thought."
        )
    if impact_score > 0.1:
        return "Other notes could have covered this line of thought, though it might have taken longer."
    return "Limited influence. The same conclusions were likely reachable by other paths."


def generate_causal_insight(
    relations: CausalRelation,
    intervention: InterventionEffect,
    counterfactual: CounterfactualAnalysis,
) -> str:
    parts = []

    causes, caused_by = len(relations.causes), len(relations.caused_by)
    if causes and caused_by:
        parts.append(f"Influenced by {caused_by} notes and influencing {causes} notes.")
    elif causes:
        parts.append(f"Contributes causally to the development of {causes} notes.")
    elif caused_by:
        parts.append(f"Causally influenced by {caused_by} notes.")

    if relations.bidirectional:
        parts.append(f"Mutually influential with {len(relations.bidirectional)} notes.")

    if intervention.significance > 0.7:
        if intervention.cluster_drift_acceleration > 0.5:
            pct = round(intervention.cluster_drift_acceleration * 100)
            parts.append(f"Accelerated drift across its cluster by {pct}%.")
        elif intervention.cluster_drift_acceleration < -0.3:
            parts.append("Its cluster converged and stabilized afterwards.")

    if counterfactual.impact_score > 0.5:
        parts.append("Plays an important role in how thinking developed.")
        if counterfactual.pivot_probability > 0.3:
            parts.append("It likely prompted a change of direction.")

    if not parts:
        return "Not enough data for causal analysis."
    return " ".join(parts)


# ========================================
# Service
# ========================================


class InfluenceCausalService:
    """
    Correlational causal heuristics on top of the influence graph.

    Example:
        >>> service = InfluenceCausalService(db_session)
        >>> analysis = service.analyze_causality("note-123")
        >>> print(analysis.insight)
        >>> summary = service.get_global_causal_summary()
    """

    def __init__(
        self,
        db_session: Session,
        settings: Settings | None = None,
        graph: InfluenceGraphService | None = None,
    ):
        self.db = db_session
        self.settings = settings or get_settings()
        self.graph = graph or InfluenceGraphService(db_session, self.settings)

    # ========================================
    # Granger
    # ========================================

    def get_note_drift_points(self, note_id: str, start: int, end: int) -> list[tuple[int, float]]:
        """
        (created_at, drift) of a note's history rows in [start, end].

        The stored drift_score is used when present, else semantic_diff;
        rows with neither are skipped.
        """
        rows = self.db.execute(
            text("""
                SELECT created_at, drift_score, semantic_diff
                FROM note_history
                WHERE note_id = :note_id
                  AND created_at >= :start
                  AND created_at <= :end
                ORDER BY created_at ASC, id ASC
            """),
            {"note_id": note_id, "start": start, "end": end},
        ).fetchall()

        points = []
        for row in rows:
            value = row.drift_score if row.drift_score is not None else parse_semantic_diff(row.semantic_diff)
            if value is not None:
                points.append((row.created_at, float(value)))
        return points

    def granger_causality(
        self,
        source_note_id: str,
        target_note_id: str,
        lag: int | None = None,
        days: int | None = None,
        now: int | None = None,
    ) -> GrangerCausality:
        """Test source -> target (and the reverse, to decide the direction)."""
        lag = self.settings.causal_default_lag if lag is None else lag
        days = self.settings.causal_window_days if days is None else days
        now = int(time.time()) if now is None else now
        start = now - days * DAY

        source_points = self.get_note_drift_points(source_note_id, start, now)
        target_points = self.get_note_drift_points(target_note_id, start, now)

        minimum = self.settings.causal_min_observations
        if len(source_points) < minimum or len(target_points) < minimum:
            forward = backward = GrangerResult()
        else:
            source = daily_series(source_points, start, days)
            target = daily_series(target_points, start, days)
            forward = granger_causality_test(source, target, lag, minimum)
            backward = granger_causality_test(target, source, lag, minimum)

        return GrangerCausality(
            source_note_id=source_note_id,
            target_note_id=target_note_id,
            f_statistic=forward.f_statistic,
            p_value=forward.p_value,
            causal_strength=forward.causal_strength,
            direction=causal_direction(forward, backward, self.settings.causal_min_strength),
            lag=lag,
        )

    def analyze_causal_relations(
        self,
        note_id: str,
        limit: int | None = None,
        lag: int | None = None,
        now: int | None = None,
    ) -> CausalRelation:
        """Granger-test the note against its strongest influencers and influenced notes."""
        limit = self.settings.causal_relation_limit if limit is None else limit
        relation = CausalRelation(note_id=note_id)

        for edge in self.graph.get_influencers_of(note_id, limit=limit):
            source = edge["source_note_id"]
            direction = self.granger_causality(source, note_id, lag=lag, now=now).direction
            if direction == "unidirectional":
                relation.caused_by.append(source)
            elif direction == "bidirectional":
                relation.bidirectional.append(source)

        for edge in self.graph.get_influenced_by(note_id, limit=limit):
            target = edge["target_note_id"]
            direction = self.granger_causality(note_id, target, lag=lag, now=now).direction
            if direction == "unidirectional":
                relation.causes.append(target)
            elif direction == "bidirectional" and target not in relation.bidirectional:
                relation.bidirectional.append(target)

        return relation

    # ========================================
    # Intervention
    # ========================================

    def _cluster_drift(self, cluster_id: int, start: int, end: int) -> list[tuple[int, float]]:
        rows = self.db.execute(
            text("""
                SELECT nh.created_at, nh.drift_score
                FROM note_history nh
                JOIN notes n ON nh.note_id = n.id
                WHERE n.cluster_id = :cluster_id
                  AND nh.drift_score IS NOT NULL
                  AND nh.created_at >= :start
                  AND nh.created_at < :end
                ORDER BY nh.created_at ASC, nh.id ASC
            """),
            {"cluster_id": cluster_id, "start": start, "end": end},
        ).fetchall()
        return [(row.created_at, float(row.drift_score)) for row in rows]

    def analyze_intervention_effect(self, note_id: str) -> InterventionEffect:
        """
        Compare the note's cluster drift before and after the note was written.

        The intervention time is updated_at (created_at when unset). Notes
        without a cluster give the neutral effect.
        """
        note = self.db.execute(
            text("SELECT cluster_id, created_at, updated_at FROM notes WHERE id = :note_id"),
            {"note_id": note_id},
        ).fetchone()
        if note is None or note.cluster_id is None:
            return InterventionEffect(note_id=note_id)

        intervention_at = note.updated_at or note.created_at
        window = self.settings.causal_intervention_window_days * DAY
        before = [v for _, v in self._cluster_drift(note.cluster_id, intervention_at - window, intervention_at)]
        after_points = self._cluster_drift(note.cluster_id, intervention_at, intervention_at + window)
        after = [v for _, v in after_points]

        avg_before = float(np.mean(before)) if before else 0.0
        avg_after = float(np.mean(after)) if after else 0.0
        increase = avg_after - avg_before
        acceleration = increase / avg_before if avg_before > 0 else increase

        significance = effect_size = 0.0
        if len(before) >= 2 and len(after) >= 2:
            p_value = float(stats.ttest_ind(after, before, equal_var=False).pvalue)
            if not math.isnan(p_value):
                significance = 1.0 - p_value
            pooled_var = (
                (len(after) - 1) * np.var(after, ddof=1) + (len(before) - 1) * np.var(before, ddof=1)
            ) / (len(after) + len(before) - 2)
            pooled_std = math.sqrt(pooled_var)
            if pooled_std > 0:
                effect_size = min(3.0, abs(increase) / pooled_std)

        time_to_effect = 0
        for created_at, value in after_points:
            if value > avg_before * 1.5:
                time_to_effect = (created_at - intervention_at) // DAY
                break

        affected = self.db.execute(
            text("""
                SELECT COUNT(DISTINCT target_note_id)
                FROM note_influence_edges
                WHERE source_note_id = :note_id
            """),
            {"note_id": note_id},
        ).scalar()

        return InterventionEffect(
            note_id=note_id,
            cluster_drift_acceleration=round4(acceleration),
            affected_notes=int(affected or 0),
            avg_drift_increase=round4(increase),
            significance=round4(significance),
            effect_size=round4(effect_size),
            time_to_effect=int(time_to_effect),
        )

    # ========================================
    # Counterfactual
    # ========================================

    def analyze_counterfactual(self, note_id: str) -> CounterfactualAnalysis | None:
        """What would be missing without this note? None for an unknown note."""
        note = self.db.execute(
            text("SELECT title, content, cluster_id, created_at FROM notes WHERE id = :note_id"),
            {"note_id": note_id},
        ).fetchone()
        if note is None:
            return None

        dependents = [
            row.target_note_id
            for row in self.db.execute(
                text("""
                    SELECT target_note_id
                    FROM note_influence_edges
                    WHERE source_note_id = :note_id
                    ORDER BY weight DESC, target_note_id ASC
                    LIMIT :limit
                """),
                {"note_id": note_id, "limit": self.settings.causal_relation_limit},
            ).fetchall()
        ]

        is_founding_member = False
        if note.cluster_id is not None:
            earlier = self.db.execute(
                text("""
                    SELECT COUNT(*) FROM notes
                    WHERE cluster_id = :cluster_id AND created_at < :created_at
                """),
                {"cluster_id": note.cluster_id, "created_at": note.created_at},
            ).scalar()
            is_founding_member = (earlier or 0) < self.settings.causal_founding_members

        totals = self.db.execute(
            text("""
                SELECT
                    (SELECT SUM(weight) FROM note_influence_edges WHERE source_note_id = :note_id) AS own_total,
                    (SELECT MAX(total) FROM (
                        SELECT SUM(weight) AS total
                        FROM note_influence_edges
                        GROUP BY source_note_id
                    ) AS per_source) AS max_total
            """),
            {"note_id": note_id},
        ).fetchone()
        impact_score = (totals.own_total or 0.0) / totals.max_total if totals.max_total else 0.0

        pivot_probability = 0.0
        if dependents:
            pivoted = self.db.execute(
                text("""
                    SELECT COUNT(DISTINCT nh.note_id)
                    FROM note_history nh
                    JOIN note_influence_edges e ON e.target_note_id = nh.note_id
                    WHERE e.source_note_id = :note_id
                      AND nh.prev_cluster_id IS NOT NULL
                      AND nh.new_cluster_id IS NOT NULL
                      AND nh.prev_cluster_id != nh.new_cluster_id
                """),
                {"note_id": note_id},
            ).scalar()
            pivot_probability = min(1.0, (pivoted or 0) / len(dependents))

        return CounterfactualAnalysis(
            note_id=note_id,
            title=note.title,
            missing_concepts=extract_keywords([note.title, note.content], max_keywords=5),
            alternative_path=alternative_path(is_founding_member, impact_score, len(dependents), note.cluster_id),
            impact_score=round4(impact_score),
            dependent_notes=dependents,
            pivot_probability=round4(pivot_probability),
        )

    # ========================================
    # Combined
    # ========================================

    def analyze_causality(self, note_id: str, lag: int | None = None, now: int | None = None) -> CausalAnalysis | None:
        """Relations, intervention effect and counterfactual of one note."""
        counterfactual = self.analyze_counterfactual(note_id)
        if counterfactual is None:
            return None

        relations = self.analyze_causal_relations(note_id, lag=lag, now=now)
        intervention = self.analyze_intervention_effect(note_id)
        insight = generate_causal_insight(relations, intervention, counterfactual)

        logger.debug(
            f"Causal analysis of {note_id}: causes={len(relations.causes)}, "
            f"caused_by={len(relations.caused_by)}, impact={counterfactual.impact_score}"
        )
        return CausalAnalysis(
            note_id=note_id,
            relations=relations,
            intervention=intervention,
            counterfactual=counterfactual,
            insight=insight,
        )

    def get_global_causal_summary(self, top_k: int = 10) -> dict[str, Any]:
        """Edge-level summary: strong relations, top causal influencers and pivot notes."""
        basic = self.db.execute(
            text("SELECT COUNT(*) AS total, AVG(weight) AS avg_weight FROM note_influence_edges")
        ).fetchone()

        strong = self.db.execute(
            text("SELECT COUNT(*) FROM note_influence_edges WHERE weight > :weight"),
            {"weight": self.settings.causal_strong_edge_weight},
        ).scalar()

        influencers = self.db.execute(
            text("""
                SELECT source_note_id, COUNT(*) AS caused_count, AVG(weight) AS avg_strength
                FROM note_influence_edges
                WHERE weight > :weight
                GROUP BY source_note_id
                ORDER BY caused_count DESC, source_note_id ASC
                LIMIT :limit
            """),
            {"weight": self.settings.causal_influencer_edge_weight, "limit": top_k},
        ).fetchall()

        pivots = self.db.execute(
            text("""
                SELECT
                    e.source_note_id AS note_id,
                    n.title AS title,
                    COUNT(DISTINCT CASE
                        WHEN nh.prev_cluster_id IS NOT NULL
                         AND nh.new_cluster_id IS NOT NULL
                         AND nh.prev_cluster_id != nh.new_cluster_id
                        THEN nh.note_id
                    END) AS pivot_count,
                    COUNT(DISTINCT e.target_note_id) AS dependent_count
                FROM note_influence_edges e
                LEFT JOIN notes n ON n.id = e.source_note_id
                LEFT JOIN note_history nh ON nh.note_id = e.target_note_id
                GROUP BY e.source_note_id, n.title
                ORDER BY pivot_count DESC, e.source_note_id ASC
            """)
        ).fetchall()

        pivot_notes = [
            {
                "note_id": row.note_id,
                "title": row.title,
                "pivot_probability": round4(row.pivot_count / row.dependent_count),
            }
            for row in pivots
            if row.pivot_count
        ][:5]

        return {
            "total_causal_pairs": basic.total or 0,
            "strong_causal_relations": strong or 0,
            "avg_causal_strength": round4(basic.avg_weight or 0.0),
            "top_causal_influencers": [
                {
                    "note_id": row.source_note_id,
                    "caused_count": row.caused_count,
                    "avg_strength": round4(row.avg_strength),
                }
                for row in influencers
            ],
            "pivot_notes": pivot_notes,
        }
