"""
Cluster Dynamics Engine - Daily per-cluster geometry snapshots.

For every cluster that has members today (external assignment in
notes.cluster_id) the engine records:
- centroid: normalize(mean(member embeddings))
- cohesion: mean cosine of members to the centroid (higher = tighter)
- interactions: cosine between this centroid and every other centroid
- stability_score: 1 - cosine(today's centroid, previous day's centroid),
  or NULL when there is no snapshot for the previous day

One row per (date, cluster_id). Capturing a date again deletes and reinserts
that date's rows; clusters without members produce no row.

These centroids are derived fresh from current members and are independent of
the k-means view kept in clusters.centroid.
"""
from __future__ import annotations

import json
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date as date_type
from datetime import datetime, timedelta, timezone
from typing import Any

import numpy as np
from loguru import logger
from sqlalchemy import text
from sqlalchemy.orm import Session

from config import Settings, get_settings
from src.semantic.vector_math import (
    bytes_to_float32,
    cosine_similarity,
    float32_to_bytes,
    mean_vector,
    normalize_vector,
    round4,
)


def today_utc() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def previous_day(day: str) -> str:
    return (date_type.fromisoformat(day) - timedelta(days=1)).isoformat()


@dataclass
class ClusterDynamicsSnapshot:
    """Geometry of one cluster on one day."""

    cluster_id: int
    centroid: np.ndarray
    cohesion: float
    note_count: int
    interactions: dict[str, float] = field(default_factory=dict)
    stability_score: float | None = None

    def to_dict(self, include_centroid: bool = False) -> dict[str, Any]:
        data = {
            "cluster_id": self.cluster_id,
            "cohesion": self.cohesion,
            "note_count": self.note_count,
            "interactions": dict(self.interactions),
            "stability_score": self.stability_score,
        }
        if include_centroid:
            data["centroid"] = self.centroid.tolist()
        return data


class ClusterDynamicsService:
    """
    Capture and query daily cluster dynamics.

    Example:
        >>> service = ClusterDynamicsService(db_session)
        >>> snapshots = service.capture_cluster_dynamics("2026-03-01")
        >>> for s in snapshots:
        ...     print(f"Cluster {s.cluster_id}: cohesion={s.cohesion}")
    """

    def __init__(self, db_session: Session, settings: Settings | None = None):
        """
        Initialize the cluster dynamics service.

        Args:
            db_session: SQLAlchemy database session.
            settings: Application settings (defaults to get_settings()).
        """
        self.db = db_session
        self.settings = settings or get_settings()

    def capture_cluster_dynamics(
        self,
        date: str | None = None,
        created_at: int | None = None,
    ) -> list[ClusterDynamicsSnapshot]:
        """
        Compute and store the snapshot for one day.

        Args:
            date: Snapshot date (YYYY-MM-DD, defaults to today in UTC).
            created_at: Row timestamp (defaults to now); pass a fixed value
                for byte-identical reruns.

        Returns:
            Snapshots ordered by cluster id.
        """
        date = date or today_utc()
        created_at = int(time.time()) if created_at is None else created_at

        self.db.execute(text("DELETE FROM cluster_dynamics WHERE date = :date"), {"date": date})

        members = self._load_member_vectors()
        centroids = {
            cluster_id: normalize_vector(mean_vector(vectors))
            for cluster_id, vectors in members.items()
        }

        previous = {
            row.cluster_id: bytes_to_float32(row.centroid)
            for row in self.db.execute(
                text("SELECT cluster_id, centroid FROM cluster_dynamics WHERE date = :date"),
                {"date": previous_day(date)},
            ).fetchall()
        }

        snapshots = []
        for cluster_id in sorted(members):
            vectors = members[cluster_id]
            centroid = centroids[cluster_id]
            if not vectors or centroid.size == 0:
                continue

            cohesion = round4(sum(cosine_similarity(vec, centroid) for vec in vectors) / len(vectors))

            interactions = {
                str(other_id): round4(cosine_similarity(centroid, other_centroid))
                for other_id, other_centroid in sorted(centroids.items())
                if other_id != cluster_id
            }

            stability = None
            if cluster_id in previous:
                stability = round4(1 - cosine_similarity(centroid, previous[cluster_id]))

            snapshot = ClusterDynamicsSnapshot(
                cluster_id=cluster_id,
                centroid=centroid,
                cohesion=cohesion,
                note_count=len(vectors),
                interactions=interactions,
                stability_score=stability,
            )
            self._insert_snapshot(date, snapshot, created_at)
            snapshots.append(snapshot)

        self.db.commit()
        logger.info(f"Captured cluster dynamics for {date}: {len(snapshots)} clusters")
        return snapshots

    def _load_member_vectors(self) -> dict[int, list[np.ndarray]]:
        rows = self.db.execute(
            text("""
                SELECT ne.note_id, ne.embedding, n.cluster_id
                FROM note_embeddings ne
                JOIN notes n ON ne.note_id = n.id
                WHERE n.cluster_id IS NOT NULL
                ORDER BY ne.note_id
            """)
        ).fetchall()

        members: dict[int, list[np.ndarray]] = defaultdict(list)
        for row in rows:
            vec = bytes_to_float32(row.embedding)
            if vec.size == 0:
                continue
            members[row.cluster_id].append(vec)
        return members

    def _insert_snapshot(self, date: str, snapshot: ClusterDynamicsSnapshot, created_at: int) -> None:
        self.db.execute(
            text("""
                INSERT INTO cluster_dynamics
                    (date, cluster_id, centroid, cohesion, note_count, interactions, stability_score, created_at)
                VALUES
                    (:date, :cluster_id, :centroid, :cohesion, :note_count, :interactions, :stability, :created_at)
            """),
            {
                "date": date,
                "cluster_id": snapshot.cluster_id,
                "centroid": float32_to_bytes(snapshot.centroid),
                "cohesion": snapshot.cohesion,
                "note_count": snapshot.note_count,
                "interactions": json.dumps(snapshot.interactions, sort_keys=True),
                "stability": snapshot.stability_score,
                "created_at": created_at,
            },
        )

    # ========================================
    # Queries
    # ========================================

    def get_cluster_dynamics(self, date: str) -> list[ClusterDynamicsSnapshot]:
        """Stored snapshots for a date, ordered by cluster id."""
        rows = self.db.execute(
            text("""
                SELECT cluster_id, centroid, cohesion, note_count, interactions, stability_score
                FROM cluster_dynamics
                WHERE date = :date
                ORDER BY cluster_id
            """),
            {"date": date},
        ).fetchall()

        return [
            ClusterDynamicsSnapshot(
                cluster_id=row.cluster_id,
                centroid=bytes_to_float32(row.centroid),
                cohesion=row.cohesion,
                note_count=row.note_count,
                interactions=json.loads(row.interactions) if row.interactions else {},
                stability_score=row.stability_score,
            )
            for row in rows
        ]

    def get_cluster_dynamics_timeline(
        self,
        cluster_id: int,
        range_days: int = 30,
        end_date: str | None = None,
    ) -> list[dict[str, Any]]:
        """Cohesion / size / stability of one cluster over the last `range_days` days."""
        end = date_type.fromisoformat(end_date or today_utc())
        start = (end - timedelta(days=range_days)).isoformat()

        rows = self.db.execute(
            text("""
                SELECT date, cohesion, note_count, stability_score
                FROM cluster_dynamics
                WHERE cluster_id = :cluster_id
                  AND date >= :start
                  AND date <= :end
                ORDER BY date ASC
            """),
            {"cluster_id": cluster_id, "start": start, "end": end.isoformat()},
        ).fetchall()

        return [
            {
                "date": row.date,
                "cohesion": row.cohesion,
                "note_count": row.note_count,
                "stability_score": row.stability_score,
            }
            for row in rows
        ]

    def get_cluster_dynamics_summary(self, date: str | None = None) -> dict[str, Any]:
        """Aggregate statistics over one day's snapshots."""
        date = date or today_utc()
        dynamics = self.get_cluster_dynamics(date)

        if not dynamics:
            return {
                "date": date,
                "cluster_count": 0,
                "total_notes": 0,
                "avg_cohesion": 0.0,
                "max_cohesion": {"cluster_id": -1, "cohesion": 0.0},
                "min_cohesion": {"cluster_id": -1, "cohesion": 0.0},
                "most_unstable": None,
            }

        by_cohesion = sorted(dynamics, key=lambda d: d.cohesion, reverse=True)
        with_stability = [d for d in dynamics if d.stability_score is not None]
        most_unstable = max(with_stability, key=lambda d: d.stability_score) if with_stability else None

        return {
            "date": date,
            "cluster_count": len(dynamics),
            "total_notes": sum(d.note_count for d in dynamics),
            "avg_cohesion": round4(sum(d.cohesion for d in dynamics) / len(dynamics)),
            "max_cohesion": {"cluster_id": by_cohesion[0].cluster_id, "cohesion": by_cohesion[0].cohesion},
            "min_cohesion": {"cluster_id": by_cohesion[-1].cluster_id, "cohesion": by_cohesion[-1].cohesion},
            "most_unstable": (
                {"cluster_id": most_unstable.cluster_id, "stability_score": most_unstable.stability_score}
                if most_unstable
                else None
            ),
        }

    def get_latest_centroids(self) -> dict[int, np.ndarray]:
        """Centroids from the most recent snapshot date (empty if none)."""
        latest = self.db.execute(text("SELECT MAX(date) FROM cluster_dynamics")).scalar()
        if not latest:
            return {}

        rows = self.db.execute(
            text("SELECT cluster_id, centroid FROM cluster_dynamics WHERE date = :date ORDER BY cluster_id"),
            {"date": latest},
        ).fetchall()
        return {row.cluster_id: bytes_to_float32(row.centroid) for row in rows}
