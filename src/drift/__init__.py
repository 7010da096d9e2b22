"""
Drift analytics: scoring, event detection, direction and timeline.
"""

from src.drift.direction import DriftDirection, DriftDirectionService, GlobalDriftFlow
from src.drift.drift_score import DriftScorer, DriftScoreResult, compute_drift_score
from src.drift.event_detector import (
    DriftEventService,
    classify_drift_event,
    parse_semantic_diff,
    severity_of,
)
from src.drift.timeline import DriftTimelineService

__all__ = [
    # Scoring
    "DriftScorer",
    "DriftScoreResult",
    "compute_drift_score",
    # Events
    "DriftEventService",
    "classify_drift_event",
    "severity_of",
    "parse_semantic_diff",
    # Direction
    "DriftDirectionService",
    "DriftDirection",
    "GlobalDriftFlow",
    # Timeline
    "DriftTimelineService",
]
