"""
Time decay for influence edges.

    decayed_weight = weight * exp(-lambda * days_since_creation)

Decay rate presets (per day):
- slow: 0.01, half-life ~70 days
- balanced: 0.02, half-life ~35 days (default)
- fast: 0.05, half-life ~14 days
"""
from __future__ import annotations

import math
import time
from dataclasses import asdict, dataclass
from typing import Any

from src.semantic.vector_math import round4

SECONDS_PER_DAY = 86400

DECAY_PRESETS = {
    "slow": 0.01,
    "balanced": 0.02,
    "fast": 0.05,
}


def days_since_creation(created_at: int, now: int | None = None) -> float:
    """Elapsed days (fractional, never negative)."""
    current = int(time.time()) if now is None else now
    return max(0.0, (current - created_at) / SECONDS_PER_DAY)


def decay_factor(days: float, decay_rate: float) -> float:
    """exp(-rate * days), 1.0 for non-positive age or rate."""
    if days <= 0 or decay_rate <= 0:
        return 1.0
    return math.exp(-decay_rate * days)


def apply_time_decay(weight: float, days: float, decay_rate: float) -> float:
    return weight * decay_factor(days, decay_rate)


def half_life(decay_rate: float) -> float:
    """Days until a weight halves (inf for a non-positive rate)."""
    if decay_rate <= 0:
        return math.inf
    return math.log(2) / decay_rate


def decay_rate_from_half_life(half_life_days: float) -> float:
    if half_life_days <= 0:
        return math.inf
    return math.log(2) / half_life_days


@dataclass
class DecayedEdge:
    """Influence edge with its decayed weight."""

    source_note_id: str
    target_note_id: str
    weight: float
    cosine_sim: float
    drift_score: float
    created_at: int
    decayed_weight: float
    days_since_creation: float
    decay_factor: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def apply_decay_to_edges(
    edges: list[dict[str, Any]],
    decay_rate: float,
    now: int | None = None,
) -> list[DecayedEdge]:
    """Attach decay information to edge rows (dicts with the edge columns)."""
    current = int(time.time()) if now is None else now
    decayed = []
    for edge in edges:
        days = days_since_creation(edge["created_at"], current)
        factor = decay_factor(days, decay_rate)
        decayed.append(
            DecayedEdge(
                source_note_id=edge["source_note_id"],
                target_note_id=edge["target_note_id"],
                weight=edge["weight"],
                cosine_sim=edge["cosine_sim"],
                drift_score=edge["drift_score"],
                created_at=edge["created_at"],
                decayed_weight=round4(edge["weight"] * factor),
                days_since_creation=round(days, 2),
                decay_factor=round4(factor),
            )
        )
    return decayed


def filter_and_sort(edges: list[DecayedEdge], min_decayed_weight: float) -> list[DecayedEdge]:
    """Drop edges below the decayed-weight floor, strongest first."""
    kept = [edge for edge in edges if edge.decayed_weight >= min_decayed_weight]
    return sorted(kept, key=lambda edge: (-edge.decayed_weight, edge.source_note_id, edge.target_note_id))


def time_decay_stats(edges: list[DecayedEdge], threshold: float) -> dict[str, Any]:
    """Aggregate decay statistics over a set of decayed edges."""
    if not edges:
        return {
            "total_edges": 0,
            "effective_edges": 0,
            "avg_original_weight": 0.0,
            "avg_decayed_weight": 0.0,
            "avg_decay_factor": 1.0,
            "avg_age": 0.0,
            "oldest_edge_age": 0.0,
            "newest_edge_age": 0.0,
            "decay_impact": 0.0,
        }

    count = len(edges)
    ages = [edge.days_since_creation for edge in edges]
    avg_factor = sum(edge.decay_factor for edge in edges) / count

    return {
        "total_edges": count,
        "effective_edges": sum(1 for edge in edges if edge.decayed_weight >= threshold),
        "avg_original_weight": round4(sum(edge.weight for edge in edges) / count),
        "avg_decayed_weight": round4(sum(edge.decayed_weight for edge in edges) / count),
        "avg_decay_factor": round4(avg_factor),
        "avg_age": round(sum(ages) / count, 2),
        "oldest_edge_age": round(max(ages), 2),
        "newest_edge_age": round(min(ages), 2),
        "decay_impact": round4(1 - avg_factor),
    }
