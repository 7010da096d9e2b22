"""
Drift Event Detector - Turn edit history into drift events.

Scans note_history in ascending creation order, scores each edit with the
DriftScorer and records the inflection points in drift_events:

    cluster jump            -> cluster_shift -> tag "cluster_bias"
    semantic_diff >= 0.5    -> large         -> tag "over_focus"
    semantic_diff >= 0.25   -> medium        -> tag "drift_drop"
    otherwise               -> no event

Rows whose semantic_diff is missing or non-numeric are skipped.

The full rebuild clears drift_events first and is safe to re-run. The
incremental variant appends, inferring cluster transitions from
cluster_history when the history row does not carry them.
"""
from __future__ import annotations

import math
import time
from collections import Counter, defaultdict
from dataclasses import asdict, dataclass, field
from typing import Any

from loguru import logger
from sqlalchemy import text
from sqlalchemy.orm import Session

from config import Settings, get_settings
from src.drift.drift_score import DriftScorer
from src.semantic.semantic_change import (
    EmbeddingDimensionError,
    SemanticChangeAnalyzer,
    serialize_change_detail,
)
from src.semantic.vector_math import bytes_to_float32

EVENT_TAGS = {
    "cluster_shift": "cluster_bias",
    "large": "over_focus",
    "medium": "drift_drop",
}


def parse_semantic_diff(value: Any) -> float | None:
    """Parse a stored semantic_diff; None for missing, blank, non-numeric or NaN."""
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(parsed) or math.isinf(parsed):
        return None
    return parsed


def classify_drift_event(
    semantic_diff: float,
    cluster_jump: bool,
    settings: Settings | None = None,
) -> str | None:
    """Event kind for an edit: cluster_shift, large, medium or None."""
    settings = settings or get_settings()
    if cluster_jump:
        return "cluster_shift"
    if semantic_diff >= settings.drift_large_threshold:
        return "large"
    if semantic_diff >= settings.drift_medium_threshold:
        return "medium"
    return None


def severity_of(drift_score: float, settings: Settings | None = None) -> str:
    """high / mid / low from the drift score."""
    settings = settings or get_settings()
    if drift_score >= settings.drift_severity_high:
        return "high"
    if drift_score >= settings.drift_severity_mid:
        return "mid"
    return "low"


@dataclass
class DetectedDriftEvent:
    """A drift event before persistence."""

    note_id: str
    semantic_diff: float
    drift_score: float
    event_type: str  # cluster_shift | large | medium
    prev_cluster_id: int | None
    new_cluster_id: int | None
    cluster_jump: bool
    detected_at: int

    @property
    def tag(self) -> str:
        return EVENT_TAGS.get(self.event_type, "drift_drop")

    @property
    def message(self) -> str:
        return build_drift_message(self)


def build_drift_message(event: DetectedDriftEvent) -> str:
    """Human-readable description with diff/score percentages."""
    diff_pct = f"{event.semantic_diff * 100:.1f}"
    score_pct = f"{event.drift_score * 100:.1f}"

    if event.cluster_jump:
        return (
            f"Thinking moved to another area (Cluster {event.prev_cluster_id} → {event.new_cluster_id}). "
            f"Content change: {diff_pct}%, drift score: {score_pct}%"
        )
    if event.event_type == "large":
        return f"Large shift in thinking detected. Content change: {diff_pct}%, drift score: {score_pct}%"
    return f"Shift in thinking detected. Content change: {diff_pct}%, drift score: {score_pct}%"


@dataclass
class RebuildDriftEventsResult:
    """Counts reported by a full rebuild."""

    cleared: int = 0
    detected: int = 0
    inserted: int = 0
    by_type: dict[str, int] = field(
        default_factory=lambda: {"medium": 0, "large": 0, "cluster_shift": 0}
    )
    by_severity: dict[str, int] = field(
        default_factory=lambda: {"high": 0, "mid": 0, "low": 0}
    )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class AnnotateHistoryResult:
    """Counts reported by the history backfill."""

    scanned: int = 0
    scored: int = 0
    classified: int = 0
    skipped: int = 0


class DriftEventService:
    """
    Detect, persist and query drift events.

    Example:
        >>> service = DriftEventService(db_session)
        >>> result = service.rebuild_drift_events()
        >>> print(f"{result.inserted} events ({result.by_severity})")
    """

    def __init__(
        self,
        db_session: Session,
        settings: Settings | None = None,
        scorer: DriftScorer | None = None,
    ):
        """
        Initialize the drift event service.

        Args:
            db_session: SQLAlchemy database session.
            settings: Thresholds (defaults to get_settings()).
            scorer: Drift scorer (defaults to one built from settings).
        """
        self.db = db_session
        self.settings = settings or get_settings()
        self.scorer = scorer or DriftScorer(self.settings)

    # ========================================
    # Full rebuild
    # ========================================

    def rebuild_drift_events(self) -> RebuildDriftEventsResult:
        """
        Clear drift_events and regenerate them from the whole history.

        Cluster transitions come from the history row itself
        (prev_cluster_id / new_cluster_id).

        Returns:
            RebuildDriftEventsResult with cleared/detected/inserted counts.
        """
        result = RebuildDriftEventsResult()

        result.cleared = self.db.execute(text("SELECT COUNT(*) FROM drift_events")).scalar() or 0
        self.db.execute(text("DELETE FROM drift_events"))

        rows = self.db.execute(
            text("""
                SELECT id, note_id, semantic_diff, prev_cluster_id, new_cluster_id, created_at
                FROM note_history
                ORDER BY created_at ASC, id ASC
            """)
        ).fetchall()

        events = []
        for row in rows:
            event = self._detect_one(
                row.note_id, row.semantic_diff, row.prev_cluster_id, row.new_cluster_id, row.created_at
            )
            if event is not None:
                events.append(event)

        result.detected = len(events)
        result.inserted = self.save_drift_events(events)

        for event in events:
            result.by_type[event.event_type] += 1
            result.by_severity[severity_of(event.drift_score, self.settings)] += 1

        self.db.commit()
        logger.info(
            f"Rebuilt drift events: cleared={result.cleared}, detected={result.detected}, "
            f"inserted={result.inserted}"
        )
        return result

    # ========================================
    # Incremental detection
    # ========================================

    def detect_drift_events(self, since: int | None = None) -> list[DetectedDriftEvent]:
        """
        Detect events from history rows created at or after `since`.

        When a history row carries no cluster ids, the transition is inferred
        from the note's cluster_history: the latest assignment is the new
        cluster and the one before it the old cluster. Notes with fewer than
        two assignments never produce a jump.

        Args:
            since: Epoch seconds lower bound (None scans everything).

        Returns:
            Detected events in ascending creation order (not persisted).
        """
        params: dict[str, Any] = {}
        where = ""
        if since is not None:
            where = "WHERE created_at >= :since"
            params["since"] = since

        rows = self.db.execute(
            text(f"""
                SELECT note_id, semantic_diff, prev_cluster_id, new_cluster_id, created_at
                FROM note_history
                {where}
                ORDER BY created_at ASC, id ASC
            """),
            params,
        ).fetchall()

        assignments = self._load_cluster_history()

        events = []
        for row in rows:
            prev_cluster, new_cluster = row.prev_cluster_id, row.new_cluster_id
            if prev_cluster is None and new_cluster is None:
                prev_cluster, new_cluster = self._infer_transition(assignments.get(row.note_id, []))

            event = self._detect_one(row.note_id, row.semantic_diff, prev_cluster, new_cluster, row.created_at)
            if event is not None:
                events.append(event)

        logger.info(f"Detected {len(events)} drift events from {len(rows)} history rows")
        return events

    def detect_and_save(self, since: int | None = None) -> int:
        """Detect incrementally and append the events (no clearing)."""
        inserted = self.save_drift_events(self.detect_drift_events(since=since))
        self.db.commit()
        return inserted

    def save_drift_events(self, events: list[DetectedDriftEvent]) -> int:
        """Insert events into drift_events; returns the number inserted."""
        for event in events:
            self.db.execute(
                text("""
                    INSERT INTO drift_events (detected_at, severity, type, message, related_cluster)
                    VALUES (:detected_at, :severity, :type, :message, :related_cluster)
                """),
                {
                    "detected_at": event.detected_at,
                    "severity": severity_of(event.drift_score, self.settings),
                    "type": event.tag,
                    "message": event.message,
                    "related_cluster": event.new_cluster_id,
                },
            )
        return len(events)

    def _detect_one(
        self,
        note_id: str,
        raw_diff: Any,
        prev_cluster_id: int | None,
        new_cluster_id: int | None,
        created_at: int,
    ) -> DetectedDriftEvent | None:
        semantic_diff = parse_semantic_diff(raw_diff)
        if semantic_diff is None:
            return None

        score = self.scorer.compute(semantic_diff, prev_cluster_id, new_cluster_id)
        event_type = classify_drift_event(semantic_diff, score.cluster_jump, self.settings)
        if event_type is None:
            return None

        return DetectedDriftEvent(
            note_id=note_id,
            semantic_diff=semantic_diff,
            drift_score=score.drift_score,
            event_type=event_type,
            prev_cluster_id=prev_cluster_id,
            new_cluster_id=new_cluster_id,
            cluster_jump=score.cluster_jump,
            detected_at=int(created_at),
        )

    def _load_cluster_history(self) -> dict[str, list[int]]:
        rows = self.db.execute(
            text("""
                SELECT note_id, cluster_id
                FROM cluster_history
                ORDER BY assigned_at ASC, id ASC
            """)
        ).fetchall()

        history: dict[str, list[int]] = defaultdict(list)
        for row in rows:
            history[row.note_id].append(row.cluster_id)
        return history

    @staticmethod
    def _infer_transition(assignments: list[int]) -> tuple[int | None, int | None]:
        if not assignments:
            return None, None
        if len(assignments) == 1:
            return None, assignments[-1]
        return assignments[-2], assignments[-1]

    # ========================================
    # Queries
    # ========================================

    def list_drift_events(self, limit: int = 50, unresolved_only: bool = False) -> list[dict[str, Any]]:
        """Most recent events first."""
        where = "WHERE resolved_at IS NULL" if unresolved_only else ""
        rows = self.db.execute(
            text(f"""
                SELECT id, detected_at, severity, type, message, related_cluster, resolved_at
                FROM drift_events
                {where}
                ORDER BY detected_at DESC, id DESC
                LIMIT :limit
            """),
            {"limit": limit},
        ).fetchall()
        return [dict(row._mapping) for row in rows]

    def resolve_drift_event(self, event_id: int, resolved_at: int | None = None) -> bool:
        """Mark an event resolved; False if it does not exist."""
        result = self.db.execute(
            text("UPDATE drift_events SET resolved_at = :resolved_at WHERE id = :id"),
            {"id": event_id, "resolved_at": resolved_at if resolved_at is not None else int(time.time())},
        )
        self.db.commit()
        return result.rowcount > 0

    # ========================================
    # History backfill
    # ========================================

    def annotate_history(self, analyzer: SemanticChangeAnalyzer | None = None) -> AnnotateHistoryResult:
        """
        Fill missing change_type / change_detail / drift_score on history rows.

        Values are computed once: rows that already carry a value keep it.
        The new side of an edit is the next revision of the same note (its
        content snapshot and old_embedding), or the note's current content and
        embedding for the latest revision.
        """
        analyzer = analyzer or SemanticChangeAnalyzer(self.settings)
        result = AnnotateHistoryResult()

        rows = self.db.execute(
            text("""
                SELECT id, note_id, content, semantic_diff, old_embedding,
                       prev_cluster_id, new_cluster_id, change_type, change_detail, drift_score
                FROM note_history
                ORDER BY note_id ASC, created_at ASC, id ASC
            """)
        ).fetchall()

        current = {
            row.id: row
            for row in self.db.execute(
                text("""
                    SELECT n.id, n.content, e.embedding
                    FROM notes n
                    LEFT JOIN note_embeddings e ON e.note_id = n.id
                """)
            ).fetchall()
        }

        by_note: dict[str, list[Any]] = defaultdict(list)
        for row in rows:
            by_note[row.note_id].append(row)

        for note_id, revisions in by_note.items():
            for index, row in enumerate(revisions):
                result.scanned += 1
                if row.drift_score is not None and row.change_type is not None:
                    continue

                semantic_diff = parse_semantic_diff(row.semantic_diff)
                if semantic_diff is None:
                    result.skipped += 1
                    continue

                updates: dict[str, Any] = {}
                change_type = row.change_type

                if change_type is None:
                    detail = self._classify_revision(analyzer, row, revisions, index, current.get(note_id), semantic_diff)
                    if detail is not None:
                        change_type = detail.type
                        updates["change_type"] = detail.type
                        if row.change_detail is None:
                            updates["change_detail"] = serialize_change_detail(detail)
                        result.classified += 1

                if row.drift_score is None:
                    score = self.scorer.compute(semantic_diff, row.prev_cluster_id, row.new_cluster_id, change_type)
                    updates["drift_score"] = score.drift_score
                    result.scored += 1

                if updates:
                    assignments = ", ".join(f"{column} = :{column}" for column in updates)
                    self.db.execute(
                        text(f"UPDATE note_history SET {assignments} WHERE id = :id"),
                        {**updates, "id": row.id},
                    )

        self.db.commit()
        logger.info(
            f"Annotated history: scanned={result.scanned}, scored={result.scored}, "
            f"classified={result.classified}, skipped={result.skipped}"
        )
        return result

    @staticmethod
    def _classify_revision(analyzer, row, revisions, index, note_row, semantic_diff):
        if row.old_embedding is None:
            return None

        if index + 1 < len(revisions):
            following = revisions[index + 1]
            new_text, new_blob = following.content, following.old_embedding
        elif note_row is not None:
            new_text, new_blob = note_row.content, note_row.embedding
        else:
            return None

        if new_blob is None:
            return None

        try:
            return analyzer.analyze(
                row.content or "",
                new_text or "",
                bytes_to_float32(row.old_embedding),
                bytes_to_float32(new_blob),
                semantic_diff=semantic_diff,
            )
        except EmbeddingDimensionError as e:
            logger.warning(f"Skipping change classification for history {row.id}: {e}")
            return None


def summarize_events(events: list[DetectedDriftEvent]) -> dict[str, Any]:
    """Counts by event kind and cluster."""
    by_type = Counter(event.event_type for event in events)
    by_cluster = Counter(event.new_cluster_id for event in events if event.new_cluster_id is not None)
    return {
        "total": len(events),
        "by_type": dict(by_type),
        "by_cluster": dict(by_cluster.most_common(5)),
        "max_drift_score": max((event.drift_score for event in events), default=0.0),
    }
