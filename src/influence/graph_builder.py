"""
Concept Influence Graph - Directed, weighted edges between notes.

    influence(A -> B) = cosine(A, B) * drift_score(B)

An edge A -> B means "A's content sits where B drifted to": B drifted, and A
is semantically close to B's new position. Edges below the admission
threshold (0.15) are never stored and self-loops are always skipped.

The full rebuild clears the edge table and recomputes everything from
note_history and the current embeddings: O(D x N) for D drifted notes and N
embedded notes. The edit path uses generate_edges_for_note for one target.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

import numpy as np
from loguru import logger
from sqlalchemy import text
from sqlalchemy.orm import Session

from config import Settings, get_settings
from src.drift.drift_score import DriftScorer
from src.drift.event_detector import parse_semantic_diff
from src.influence.time_decay import (
    DecayedEdge,
    apply_decay_to_edges,
    filter_and_sort,
    time_decay_stats,
)
from src.semantic.vector_math import bytes_to_float32, cosine_similarity, round4

_EDGE_COLUMNS = "source_note_id, target_note_id, weight, cosine_sim, drift_score, created_at"

_UPSERT_EDGE = text("""
    INSERT INTO note_influence_edges
        (source_note_id, target_note_id, weight, cosine_sim, drift_score, created_at)
    VALUES
        (:source, :target, :weight, :cosine_sim, :drift_score, :created_at)
    ON CONFLICT (source_note_id, target_note_id) DO UPDATE SET
        weight = excluded.weight,
        cosine_sim = excluded.cosine_sim,
        drift_score = excluded.drift_score,
        created_at = excluded.created_at
""")


@dataclass
class DriftedNote:
    """One drifted target note reduced from its history rows."""

    note_id: str
    max_semantic_diff: float
    prev_cluster_id: int | None
    new_cluster_id: int | None
    last_changed_at: int


@dataclass
class RebuildInfluenceResult:
    cleared: int
    edges_created: int
    notes_processed: int


class InfluenceGraphService:
    """
    Build and query the concept influence graph.

    Example:
        >>> service = InfluenceGraphService(db_session)
        >>> result = service.rebuild_influence_graph()
        >>> print(f"{result.edges_created} edges from {result.notes_processed} drifted notes")
        >>> for edge in service.get_influencers_of("note-b", limit=5):
        ...     print(edge["source_note_id"], edge["weight"])
    """

    def __init__(
        self,
        db_session: Session,
        settings: Settings | None = None,
        scorer: DriftScorer | None = None,
    ):
        """
        Initialize the influence graph service.

        Args:
            db_session: SQLAlchemy database session.
            settings: Thresholds (defaults to get_settings()).
            scorer: Drift scorer (defaults to one built from settings).
        """
        self.db = db_session
        self.settings = settings or get_settings()
        self.scorer = scorer or DriftScorer(self.settings)

    # ========================================
    # Construction
    # ========================================

    def collect_drifted_notes(self) -> list[DriftedNote]:
        """
        Reduce history rows with semantic_diff > 0 to one record per note.

        Keeps the largest semantic_diff seen and the cluster pair of the most
        recent qualifying row.
        """
        rows = self.db.execute(
            text("""
                SELECT note_id, semantic_diff, prev_cluster_id, new_cluster_id, created_at
                FROM note_history
                WHERE semantic_diff IS NOT NULL
                ORDER BY created_at ASC, id ASC
            """)
        ).fetchall()

        drifted: dict[str, DriftedNote] = {}
        for row in rows:
            semantic_diff = parse_semantic_diff(row.semantic_diff)
            if semantic_diff is None or semantic_diff <= 0:
                continue

            existing = drifted.get(row.note_id)
            if existing is None:
                drifted[row.note_id] = DriftedNote(
                    note_id=row.note_id,
                    max_semantic_diff=semantic_diff,
                    prev_cluster_id=row.prev_cluster_id,
                    new_cluster_id=row.new_cluster_id,
                    last_changed_at=row.created_at,
                )
                continue

            existing.max_semantic_diff = max(existing.max_semantic_diff, semantic_diff)
            existing.prev_cluster_id = row.prev_cluster_id
            existing.new_cluster_id = row.new_cluster_id
            existing.last_changed_at = row.created_at

        return [drifted[note_id] for note_id in sorted(drifted)]

    def rebuild_influence_graph(self, created_at: int | None = None) -> RebuildInfluenceResult:
        """
        Clear all edges and rebuild the graph from history and embeddings.

        Args:
            created_at: Edge timestamp (defaults to now); pass a fixed value
                for byte-identical reruns.

        Returns:
            RebuildInfluenceResult with cleared/created/processed counts.
        """
        created_at = int(time.time()) if created_at is None else created_at

        cleared = self.db.execute(text("SELECT COUNT(*) FROM note_influence_edges")).scalar() or 0
        self.db.execute(text("DELETE FROM note_influence_edges"))

        embeddings = self._load_embeddings()
        drifted_notes = self.collect_drifted_notes()

        edges_created = 0
        notes_processed = 0
        for drifted in drifted_notes:
            target = embeddings.get(drifted.note_id)
            if target is None:
                continue
            score = self.scorer.compute(
                drifted.max_semantic_diff, drifted.prev_cluster_id, drifted.new_cluster_id
            )
            edges_created += self._write_edges_for_target(
                drifted.note_id, target, score.drift_score, embeddings, created_at
            )
            notes_processed += 1

        self.db.commit()
        logger.info(
            f"Rebuilt influence graph: cleared={cleared}, edges={edges_created}, "
            f"drifted_notes={notes_processed}"
        )
        return RebuildInfluenceResult(
            cleared=cleared, edges_created=edges_created, notes_processed=notes_processed
        )

    def generate_edges_for_note(
        self,
        target_note_id: str,
        semantic_diff: float,
        prev_cluster_id: int | None = None,
        new_cluster_id: int | None = None,
        created_at: int | None = None,
    ) -> int:
        """
        Upsert the incoming edges of one drifted note (edit path).

        Returns:
            Number of edges written (0 if the note has no embedding).
        """
        created_at = int(time.time()) if created_at is None else created_at

        embeddings = self._load_embeddings()
        target = embeddings.get(target_note_id)
        if target is None:
            logger.debug(f"No embedding for {target_note_id}; no influence edges generated")
            return 0

        score = self.scorer.compute(semantic_diff, prev_cluster_id, new_cluster_id)
        written = self._write_edges_for_target(target_note_id, target, score.drift_score, embeddings, created_at)
        self.db.commit()
        return written

    def remove_edges_for_note(self, note_id: str) -> int:
        """Delete every edge touching a note (note deletion)."""
        result = self.db.execute(
            text("""
                DELETE FROM note_influence_edges
                WHERE source_note_id = :note_id OR target_note_id = :note_id
            """),
            {"note_id": note_id},
        )
        self.db.commit()
        return result.rowcount

    def _write_edges_for_target(
        self,
        target_note_id: str,
        target: np.ndarray,
        drift_score: float,
        embeddings: dict[str, np.ndarray],
        created_at: int,
    ) -> int:
        threshold = self.settings.influence_threshold
        written = 0
        for source_note_id in sorted(embeddings):
            if source_note_id == target_note_id:
                continue

            cosine = cosine_similarity(embeddings[source_note_id], target)
            weight = round4(cosine * drift_score)
            if weight < threshold:
                continue

            self.db.execute(
                _UPSERT_EDGE,
                {
                    "source": source_note_id,
                    "target": target_note_id,
                    "weight": weight,
                    "cosine_sim": round4(cosine),
                    "drift_score": round4(drift_score),
                    "created_at": created_at,
                },
            )
            written += 1
        return written

    def _load_embeddings(self) -> dict[str, np.ndarray]:
        rows = self.db.execute(text("SELECT note_id, embedding FROM note_embeddings")).fetchall()
        embeddings = {}
        for row in rows:
            vec = bytes_to_float32(row.embedding)
            if vec.size:
                embeddings[row.note_id] = vec
        return embeddings

    # ========================================
    # Queries
    # ========================================

    def get_influencers_of(self, note_id: str, limit: int = 10) -> list[dict[str, Any]]:
        """Edges pointing at a note (who influenced it), strongest first."""
        rows = self.db.execute(
            text("""
                SELECT e.source_note_id, e.target_note_id, e.weight, e.cosine_sim,
                       e.drift_score, e.created_at,
                       n.title AS source_title, n.cluster_id AS source_cluster_id
                FROM note_influence_edges e
                LEFT JOIN notes n ON n.id = e.source_note_id
                WHERE e.target_note_id = :note_id
                ORDER BY e.weight DESC, e.source_note_id ASC
                LIMIT :limit
            """),
            {"note_id": note_id, "limit": limit},
        ).fetchall()
        return [dict(row._mapping) for row in rows]

    def get_influenced_by(self, note_id: str, limit: int = 10) -> list[dict[str, Any]]:
        """Edges leaving a note (what it influenced), strongest first."""
        rows = self.db.execute(
            text("""
                SELECT e.source_note_id, e.target_note_id, e.weight, e.cosine_sim,
                       e.drift_score, e.created_at,
                       n.title AS target_title, n.cluster_id AS target_cluster_id
                FROM note_influence_edges e
                LEFT JOIN notes n ON n.id = e.target_note_id
                WHERE e.source_note_id = :note_id
                ORDER BY e.weight DESC, e.target_note_id ASC
                LIMIT :limit
            """),
            {"note_id": note_id, "limit": limit},
        ).fetchall()
        return [dict(row._mapping) for row in rows]

    def get_all_edges(self, limit: int = 200) -> list[dict[str, Any]]:
        rows = self.db.execute(
            text(f"""
                SELECT {_EDGE_COLUMNS}
                FROM note_influence_edges
                ORDER BY weight DESC, source_note_id ASC, target_note_id ASC
                LIMIT :limit
            """),
            {"limit": limit},
        ).fetchall()
        return [dict(row._mapping) for row in rows]

    def get_node_degree(self, note_id: str) -> dict[str, Any]:
        """In/out degree and weight sums of one node."""
        row = self.db.execute(
            text("""
                SELECT
                    SUM(CASE WHEN target_note_id = :note_id THEN 1 ELSE 0 END) AS in_degree,
                    SUM(CASE WHEN source_note_id = :note_id THEN 1 ELSE 0 END) AS out_degree,
                    SUM(CASE WHEN target_note_id = :note_id THEN weight ELSE 0 END) AS in_weight,
                    SUM(CASE WHEN source_note_id = :note_id THEN weight ELSE 0 END) AS out_weight
                FROM note_influence_edges
                WHERE source_note_id = :note_id OR target_note_id = :note_id
            """),
            {"note_id": note_id},
        ).fetchone()

        return {
            "note_id": note_id,
            "in_degree": int(row.in_degree or 0),
            "out_degree": int(row.out_degree or 0),
            "in_weight": round4(row.in_weight or 0.0),
            "out_weight": round4(row.out_weight or 0.0),
        }

    def get_influence_stats(self, top_k: int = 5) -> dict[str, Any]:
        """Global weight statistics plus the top influenced notes and influencers."""
        basic = self.db.execute(
            text("""
                SELECT COUNT(*) AS total_edges, AVG(weight) AS avg_weight, MAX(weight) AS max_weight
                FROM note_influence_edges
            """)
        ).fetchone()

        top_influenced = self.db.execute(
            text("""
                SELECT target_note_id AS note_id, COUNT(*) AS edge_count, SUM(weight) AS total_influence
                FROM note_influence_edges
                GROUP BY target_note_id
                ORDER BY total_influence DESC, target_note_id ASC
                LIMIT :limit
            """),
            {"limit": top_k},
        ).fetchall()

        top_influencers = self.db.execute(
            text("""
                SELECT source_note_id AS note_id, COUNT(*) AS edge_count, SUM(weight) AS total_influence
                FROM note_influence_edges
                GROUP BY source_note_id
                ORDER BY total_influence DESC, source_note_id ASC
                LIMIT :limit
            """),
            {"limit": top_k},
        ).fetchall()

        def _ranked(rows) -> list[dict[str, Any]]:
            return [
                {
                    "note_id": r.note_id,
                    "edge_count": r.edge_count,
                    "total_influence": round4(r.total_influence),
                }
                for r in rows
            ]

        return {
            "total_edges": basic.total_edges or 0,
            "avg_weight": round4(basic.avg_weight or 0.0),
            "max_weight": round4(basic.max_weight or 0.0),
            "top_influenced_notes": _ranked(top_influenced),
            "top_influencers": _ranked(top_influencers),
        }

    # ========================================
    # Time-decayed queries
    # ========================================

    def get_influencers_of_with_decay(
        self,
        note_id: str,
        limit: int = 10,
        decay_rate: float | None = None,
        min_decayed_weight: float | None = None,
        now: int | None = None,
    ) -> list[DecayedEdge]:
        """Influencers of a note ranked by decayed weight."""
        # Over-fetch: decay can reorder and drop edges
        edges = self.get_influencers_of(note_id, limit=limit * 3)
        return self._decay(edges, limit, decay_rate, min_decayed_weight, now)

    def get_influenced_by_with_decay(
        self,
        note_id: str,
        limit: int = 10,
        decay_rate: float | None = None,
        min_decayed_weight: float | None = None,
        now: int | None = None,
    ) -> list[DecayedEdge]:
        edges = self.get_influenced_by(note_id, limit=limit * 3)
        return self._decay(edges, limit, decay_rate, min_decayed_weight, now)

    def get_all_edges_with_decay(
        self,
        limit: int = 200,
        decay_rate: float | None = None,
        min_decayed_weight: float | None = None,
        now: int | None = None,
    ) -> list[DecayedEdge]:
        edges = self.get_all_edges(limit=limit * 2)
        return self._decay(edges, limit, decay_rate, min_decayed_weight, now)

    def get_decay_stats(self, decay_rate: float | None = None, now: int | None = None) -> dict[str, Any]:
        """Time-decay statistics over the whole edge table."""
        rows = self.db.execute(text(f"SELECT {_EDGE_COLUMNS} FROM note_influence_edges")).fetchall()
        rate = self.settings.influence_decay_rate if decay_rate is None else decay_rate
        decayed = apply_decay_to_edges([dict(r._mapping) for r in rows], rate, now)
        return time_decay_stats(decayed, self.settings.influence_decayed_weight_threshold)

    def _decay(self, edges, limit, decay_rate, min_decayed_weight, now) -> list[DecayedEdge]:
        rate = self.settings.influence_decay_rate if decay_rate is None else decay_rate
        floor = (
            self.settings.influence_decayed_weight_threshold
            if min_decayed_weight is None
            else min_decayed_weight
        )
        return filter_and_sort(apply_decay_to_edges(edges, rate, now), floor)[:limit]
