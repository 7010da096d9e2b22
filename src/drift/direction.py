"""
Drift Direction Analyzer - Where is each note's meaning heading?

    drift_vector = new_embedding - old_embedding
    magnitude    = ||drift_vector||
    direction    = drift_vector / magnitude

The direction is compared against every cluster centroid (latest
cluster_dynamics snapshot): a positive alignment means the note moved toward
that cluster's concept space, a negative one means it moved away.

Trajectories, first match wins:
1. stable       drift_score < 0.15 or magnitude < 0.05
2. pivot        the note changed cluster
3. expansion    top alignment > +0.3
4. contraction  top alignment < -0.3
5. lateral      otherwise

Flow analysis aggregates cluster-to-cluster transitions over a rolling window
and reports per-cluster net flow with a short insight.
"""
from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Sequence

import numpy as np
from loguru import logger
from sqlalchemy import text
from sqlalchemy.orm import Session

from config import Settings, get_settings
from src.cluster.dynamics import ClusterDynamicsService
from src.drift.drift_score import is_cluster_jump
from src.semantic.vector_math import as_vector, bytes_to_float32, cosine_similarity, round4

TRAJECTORIES = ("expansion", "contraction", "pivot", "lateral", "stable")

_TRAJECTORY_DESCRIPTIONS = {
    "expansion": "Thinking is expanding outward",
    "contraction": "Thinking is converging and deepening",
    "pivot": "Frequent changes of direction",
    "lateral": "Exploring new areas laterally",
    "stable": "Thinking is in a stable state",
}


@dataclass
class ClusterAlignment:
    """Alignment of a drift direction with one cluster centroid."""

    cluster_id: int
    alignment: float
    is_approaching: bool


@dataclass
class DriftDirection:
    """Direction analysis of one history row."""

    note_id: str
    history_id: str
    drift_score: float
    magnitude: float
    trajectory: str
    primary_direction: ClusterAlignment | None = None
    secondary_direction: ClusterAlignment | None = None
    moving_away_from: ClusterAlignment | None = None
    all_alignments: list[ClusterAlignment] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DriftFlow:
    from_cluster_id: int
    to_cluster_id: int
    count: int
    avg_drift_score: float
    avg_alignment: float


@dataclass
class ClusterFlowSummary:
    cluster_id: int
    inflow: int
    outflow: int
    net_flow: int
    avg_incoming_alignment: float
    avg_outgoing_alignment: float


@dataclass
class GlobalDriftFlow:
    analysis_date: str
    total_drifts: int
    flows: list[DriftFlow]
    cluster_summaries: list[ClusterFlowSummary]
    dominant_flow: DriftFlow | None
    insight: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class _DriftHistory:
    history_id: str
    note_id: str
    drift_score: float
    old_embedding: np.ndarray
    new_embedding: np.ndarray
    old_cluster_id: int | None
    new_cluster_id: int | None
    created_at: int


# ========================================
# Pure helpers
# ========================================


def drift_vector(
    old_embedding: Sequence[float] | np.ndarray,
    new_embedding: Sequence[float] | np.ndarray,
) -> tuple[np.ndarray, float]:
    """
    Normalized drift direction and its magnitude (4 decimals).

    Mismatched or empty embeddings give an empty vector with magnitude 0.
    """
    old_vec, new_vec = as_vector(old_embedding), as_vector(new_embedding)
    if old_vec.size == 0 or old_vec.size != new_vec.size:
        return np.zeros(0, dtype=np.float64), 0.0

    diff = new_vec - old_vec
    magnitude = float(np.linalg.norm(diff))
    vector = diff / magnitude if magnitude > 0 else diff
    return vector, round4(magnitude)


def cluster_alignments(direction: np.ndarray, centroids: dict[int, np.ndarray]) -> list[ClusterAlignment]:
    """Alignment with every centroid, highest first."""
    if direction.size == 0:
        return []

    alignments = []
    for cluster_id, centroid in centroids.items():
        alignment = cosine_similarity(direction, centroid)
        alignments.append(
            ClusterAlignment(cluster_id=cluster_id, alignment=round4(alignment), is_approaching=alignment > 0)
        )
    return sorted(alignments, key=lambda a: (-a.alignment, a.cluster_id))


def determine_trajectory(
    drift_score: float,
    magnitude: float,
    top_alignment: float | None,
    cluster_changed: bool,
    settings: Settings | None = None,
) -> str:
    """Classify a drift; the stable thresholds are exclusive at the boundary."""
    settings = settings or get_settings()

    if drift_score < settings.direction_stable_drift_score or magnitude < settings.direction_stable_magnitude:
        return "stable"
    if cluster_changed:
        return "pivot"
    if top_alignment is not None:
        if top_alignment > settings.direction_significant_alignment:
            return "expansion"
        if top_alignment < -settings.direction_significant_alignment:
            return "contraction"
    return "lateral"


def build_flow_insight(
    flows: list[DriftFlow],
    summaries: list[ClusterFlowSummary],
    total_drifts: int,
) -> str:
    """Name the dominant flow and the fastest-growing / shrinking cluster."""
    if total_drifts == 0:
        return "No drift data to analyze."

    parts = []
    if flows:
        top = flows[0]
        parts.append(
            f"The most common flow of thought is from cluster {top.from_cluster_id} "
            f"to {top.to_cluster_id} ({top.count} drifts)."
        )

    growing = [s for s in summaries if s.net_flow > 0]
    if growing:
        parts.append(f"Cluster {growing[0].cluster_id} is growing fastest (net inflow +{growing[0].net_flow}).")

    shrinking = [s for s in summaries if s.net_flow < 0]
    if shrinking:
        parts.append(f"Cluster {shrinking[-1].cluster_id} shows the largest outflow.")

    if not parts:
        return "Drift patterns are stable."
    return " ".join(parts)


# ========================================
# Service
# ========================================


class DriftDirectionService:
    """
    Analyze drift directions and cluster-to-cluster flows.

    Example:
        >>> service = DriftDirectionService(db_session)
        >>> flow = service.analyze_drift_flows(days=90)
        >>> print(flow.insight)
    """

    def __init__(self, db_session: Session, settings: Settings | None = None):
        self.db = db_session
        self.settings = settings or get_settings()
        self.dynamics = ClusterDynamicsService(db_session, self.settings)

    def _load_histories(self, days: int, now: int | None = None) -> list[_DriftHistory]:
        now = int(time.time()) if now is None else now
        start = now - days * 86400

        rows = self.db.execute(
            text("""
                SELECT
                    nh.id AS history_id,
                    nh.note_id,
                    nh.drift_score,
                    nh.old_embedding,
                    ne.embedding AS new_embedding,
                    nh.prev_cluster_id AS old_cluster_id,
                    COALESCE(nh.new_cluster_id, n.cluster_id) AS new_cluster_id,
                    nh.created_at
                FROM note_history nh
                JOIN notes n ON nh.note_id = n.id
                JOIN note_embeddings ne ON nh.note_id = ne.note_id
                WHERE nh.drift_score IS NOT NULL
                  AND nh.drift_score >= :min_score
                  AND nh.created_at >= :start
                  AND nh.old_embedding IS NOT NULL
                ORDER BY nh.created_at DESC, nh.id DESC
            """),
            {"min_score": self.settings.direction_min_drift_score, "start": start},
        ).fetchall()

        return [
            _DriftHistory(
                history_id=row.history_id,
                note_id=row.note_id,
                drift_score=float(row.drift_score),
                old_embedding=bytes_to_float32(row.old_embedding),
                new_embedding=bytes_to_float32(row.new_embedding),
                old_cluster_id=row.old_cluster_id,
                new_cluster_id=row.new_cluster_id,
                created_at=row.created_at,
            )
            for row in rows
        ]

    def _analyze(
        self,
        history_id: str,
        note_id: str,
        drift_score: float,
        old_embedding: np.ndarray,
        new_embedding: np.ndarray,
        old_cluster_id: int | None,
        new_cluster_id: int | None,
        centroids: dict[int, np.ndarray],
    ) -> DriftDirection | None:
        vector, magnitude = drift_vector(old_embedding, new_embedding)
        if vector.size == 0:
            return None

        alignments = cluster_alignments(vector, centroids)

        primary = alignments[0] if alignments and alignments[0].alignment > 0 else None
        secondary = alignments[1] if len(alignments) > 1 and alignments[1].alignment > 0 else None
        moving_away = alignments[-1] if alignments and alignments[-1].alignment < 0 else None

        trajectory = determine_trajectory(
            drift_score,
            magnitude,
            alignments[0].alignment if alignments else None,
            is_cluster_jump(old_cluster_id, new_cluster_id),
            self.settings,
        )

        return DriftDirection(
            note_id=note_id,
            history_id=history_id,
            drift_score=round4(drift_score),
            magnitude=magnitude,
            trajectory=trajectory,
            primary_direction=primary,
            secondary_direction=secondary,
            moving_away_from=moving_away,
            all_alignments=alignments,
        )

    def analyze_note(self, note_id: str, days: int = 365, now: int | None = None) -> DriftDirection | None:
        """Direction of the latest qualifying drift of a note (None if none)."""
        for history in self._load_histories(days, now):
            if history.note_id == note_id:
                return self._analyze(
                    history.history_id,
                    history.note_id,
                    history.drift_score,
                    history.old_embedding,
                    history.new_embedding,
                    history.old_cluster_id,
                    history.new_cluster_id,
                    self.dynamics.get_latest_centroids(),
                )
        return None

    def analyze_history(self, history_id: str) -> DriftDirection | None:
        """Direction of one history row against the note's current embedding."""
        row = self.db.execute(
            text("""
                SELECT nh.note_id, nh.drift_score, nh.old_embedding, nh.prev_cluster_id,
                       COALESCE(nh.new_cluster_id, n.cluster_id) AS new_cluster_id,
                       ne.embedding AS new_embedding
                FROM note_history nh
                JOIN notes n ON nh.note_id = n.id
                JOIN note_embeddings ne ON nh.note_id = ne.note_id
                WHERE nh.id = :history_id
            """),
            {"history_id": history_id},
        ).fetchone()

        if row is None or row.old_embedding is None:
            return None

        return self._analyze(
            history_id,
            row.note_id,
            float(row.drift_score or 0.0),
            bytes_to_float32(row.old_embedding),
            bytes_to_float32(row.new_embedding),
            row.prev_cluster_id,
            row.new_cluster_id,
            self.dynamics.get_latest_centroids(),
        )

    def analyze_recent_drifts(
        self,
        days: int = 30,
        limit: int = 20,
        now: int | None = None,
    ) -> list[DriftDirection]:
        """Most recent drifts first, bounded for dashboards."""
        centroids = self.dynamics.get_latest_centroids()
        results = []
        for history in self._load_histories(days, now)[:limit]:
            direction = self._analyze(
                history.history_id,
                history.note_id,
                history.drift_score,
                history.old_embedding,
                history.new_embedding,
                history.old_cluster_id,
                history.new_cluster_id,
                centroids,
            )
            if direction is not None:
                results.append(direction)
        return results

    def analyze_drift_flows(self, days: int | None = None, now: int | None = None) -> GlobalDriftFlow:
        """
        Aggregate cluster-to-cluster transitions over a rolling window.

        Only rows with both cluster ids known count as drifts; only actual
        cluster changes count as flows. Alignment is measured against the
        destination cluster's centroid.

        Args:
            days: Window length (defaults to direction_flow_window_days).
            now: Reference time in epoch seconds (defaults to now).

        Returns:
            GlobalDriftFlow with flows sorted by count and summaries by net flow.
        """
        days = self.settings.direction_flow_window_days if days is None else days
        now = int(time.time()) if now is None else now
        centroids = self.dynamics.get_latest_centroids()

        flow_stats: dict[tuple[int, int], dict[str, float]] = defaultdict(
            lambda: {"count": 0, "total_score": 0.0, "total_alignment": 0.0}
        )
        cluster_stats: dict[int, dict[str, list[float]]] = defaultdict(
            lambda: {"incoming": [], "outgoing": []}
        )
        total_drifts = 0

        for history in self._load_histories(days, now):
            if history.old_cluster_id is None or history.new_cluster_id is None:
                continue
            total_drifts += 1

            vector, _ = drift_vector(history.old_embedding, history.new_embedding)
            if vector.size == 0:
                continue

            if history.old_cluster_id == history.new_cluster_id:
                continue

            centroid = centroids.get(history.new_cluster_id)
            alignment = cosine_similarity(vector, centroid) if centroid is not None else 0.0

            stats = flow_stats[(history.old_cluster_id, history.new_cluster_id)]
            stats["count"] += 1
            stats["total_score"] += history.drift_score
            stats["total_alignment"] += alignment

            cluster_stats[history.old_cluster_id]["outgoing"].append(alignment)
            cluster_stats[history.new_cluster_id]["incoming"].append(alignment)

        flows = [
            DriftFlow(
                from_cluster_id=source,
                to_cluster_id=target,
                count=int(stats["count"]),
                avg_drift_score=round4(stats["total_score"] / stats["count"]),
                avg_alignment=round4(stats["total_alignment"] / stats["count"]),
            )
            for (source, target), stats in flow_stats.items()
        ]
        flows.sort(key=lambda f: (-f.count, f.from_cluster_id, f.to_cluster_id))

        summaries = []
        for cluster_id, stats in cluster_stats.items():
            incoming, outgoing = stats["incoming"], stats["outgoing"]
            summaries.append(
                ClusterFlowSummary(
                    cluster_id=cluster_id,
                    inflow=len(incoming),
                    outflow=len(outgoing),
                    net_flow=len(incoming) - len(outgoing),
                    avg_incoming_alignment=round4(sum(incoming) / len(incoming)) if incoming else 0.0,
                    avg_outgoing_alignment=round4(sum(outgoing) / len(outgoing)) if outgoing else 0.0,
                )
            )
        summaries.sort(key=lambda s: (-s.net_flow, s.cluster_id))

        logger.debug(f"Drift flows over {days}d: {total_drifts} drifts, {len(flows)} flows")

        return GlobalDriftFlow(
            analysis_date=datetime.fromtimestamp(now, tz=timezone.utc).date().isoformat(),
            total_drifts=total_drifts,
            flows=flows,
            cluster_summaries=summaries,
            dominant_flow=flows[0] if flows else None,
            insight=build_flow_insight(flows, summaries, total_drifts),
        )

    def direction_summary(self, days: int = 30, now: int | None = None) -> dict[str, Any]:
        """Trajectory breakdown and dominant direction over recent drifts."""
        drifts = self.analyze_recent_drifts(days=days, limit=100, now=now)
        if not drifts:
            return {
                "total_drifts": 0,
                "trajectory_breakdown": {},
                "dominant_direction": None,
                "insight": "No drift data to analyze.",
            }

        breakdown = {trajectory: 0 for trajectory in TRAJECTORIES}
        for drift in drifts:
            breakdown[drift.trajectory] += 1

        direction_counts: dict[int, list[float]] = defaultdict(list)
        for drift in drifts:
            if drift.primary_direction is not None:
                direction_counts[drift.primary_direction.cluster_id].append(drift.primary_direction.alignment)

        dominant = None
        if direction_counts:
            cluster_id, alignments = max(direction_counts.items(), key=lambda item: (len(item[1]), -item[0]))
            dominant = ClusterAlignment(
                cluster_id=cluster_id,
                alignment=round4(sum(alignments) / len(alignments)),
                is_approaching=True,
            )

        parts = []
        top_type, top_count = max(breakdown.items(), key=lambda item: item[1])
        if top_count > 0:
            parts.append(f"{_TRAJECTORY_DESCRIPTIONS[top_type]} ({round(top_count / len(drifts) * 100)}%).")
        if dominant is not None:
            parts.append(f"Overall, thinking converges toward cluster {dominant.cluster_id}.")

        return {
            "total_drifts": len(drifts),
            "trajectory_breakdown": breakdown,
            "dominant_direction": asdict(dominant) if dominant else None,
            "insight": " ".join(parts) if parts else "Drift patterns are diverse.",
        }
