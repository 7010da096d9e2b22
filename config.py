"""
Configuration settings for the notedrift analytics engine.

Uses Pydantic Settings for environment variable management with .env file support.
Every threshold the drift, cluster and influence components use lives here so it
can be tuned per deployment (or per test) without touching the code.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================
    # Database
    # ========================================
    database_url: str = Field(
        default="sqlite:///notedrift.db",
        description="SQLAlchemy connection string for the note store and derived tables",
    )

    # ========================================
    # Logging
    # ========================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging verbosity level",
    )
    log_file: str | None = Field(
        default=None,
        description="Log file path (None for stderr only)",
    )

    # ========================================
    # Semantic Change Classification
    # ========================================
    change_refinement_threshold: float = Field(
        default=0.05,
        description="Magnitude below which an edit may be a refinement",
    )
    change_refinement_min_similarity: float = Field(
        default=0.5,
        description="Mean of structural similarity and vocabulary overlap required for refinement",
    )
    change_pivot_threshold: float = Field(
        default=0.4,
        description="Topic shift above which an edit is a pivot",
    )
    change_expansion_ratio: float = Field(
        default=1.3,
        description="Content length ratio above which an edit is an expansion",
    )
    change_contraction_ratio: float = Field(
        default=0.7,
        description="Content length ratio below which an edit is a contraction",
    )
    change_deepening_vocab_threshold: float = Field(
        default=0.7,
        description="Vocabulary overlap above which a same-length edit is a deepening",
    )

    # ========================================
    # Drift Score
    # ========================================
    drift_cluster_jump_bonus: float = Field(
        default=0.5,
        description="Bonus added to the multiplier when a note changes cluster",
    )
    drift_score_max: float = Field(
        default=1.5,
        description="Upper clamp for drift scores",
    )
    drift_change_type_modifiers: dict[str, float] = Field(
        default_factory=lambda: {
            "pivot": 0.3,
            "expansion": 0.1,
            "contraction": 0.0,
            "deepening": -0.1,
            "refinement": -0.2,
        },
        description="Multiplier modifier per semantic change type",
    )

    # ========================================
    # Drift Events
    # ========================================
    drift_medium_threshold: float = Field(
        default=0.25,
        description="semantic_diff at or above which a medium drift event is raised",
    )
    drift_large_threshold: float = Field(
        default=0.5,
        description="semantic_diff at or above which a large drift event is raised",
    )
    drift_severity_high: float = Field(
        default=0.5,
        description="Drift score at or above which an event is high severity",
    )
    drift_severity_mid: float = Field(
        default=0.3,
        description="Drift score at or above which an event is mid severity",
    )

    # ========================================
    # Drift Timeline
    # ========================================
    timeline_ema_alpha: float = Field(
        default=0.3,
        description="EMA smoothing factor for daily drift totals",
    )
    timeline_overheat_sigma: float = Field(
        default=1.5,
        description="Std-devs above the mean that count as overheat",
    )
    timeline_stagnation_sigma: float = Field(
        default=1.0,
        description="Std-devs below the mean that count as stagnation",
    )
    timeline_trend_threshold: float = Field(
        default=0.05,
        description="Relative EMA change that counts as a rising/falling trend",
    )

    # ========================================
    # Drift Direction
    # ========================================
    direction_min_drift_score: float = Field(
        default=0.1,
        description="Minimum stored drift score for a history row to enter direction analysis",
    )
    direction_stable_drift_score: float = Field(
        default=0.15,
        description="Drift score below which a trajectory is stable",
    )
    direction_stable_magnitude: float = Field(
        default=0.05,
        description="Drift vector magnitude below which a trajectory is stable",
    )
    direction_significant_alignment: float = Field(
        default=0.3,
        description="Absolute alignment that counts as expansion/contraction",
    )
    direction_flow_window_days: int = Field(
        default=90,
        description="Rolling window for cluster-to-cluster flow analysis",
    )

    # ========================================
    # Concept Influence Graph
    # ========================================
    influence_threshold: float = Field(
        default=0.15,
        description="Minimum edge weight admitted into the influence graph",
    )
    influence_decay_rate: float = Field(
        default=0.02,
        description="Exponential decay rate (per day) applied to edge weights (half-life ~35 days)",
    )
    influence_decayed_weight_threshold: float = Field(
        default=0.05,
        description="Minimum decayed weight kept by decayed edge queries",
    )

    # ========================================
    # Causal Heuristics (influence graph)
    # ========================================
    causal_window_days: int = Field(
        default=180,
        description="Days of daily drift series compared by the Granger test",
    )
    causal_default_lag: int = Field(
        default=7,
        description="Lag (days) of the Granger regressions",
    )
    causal_min_observations: int = Field(
        default=5,
        description="Scored history rows a note needs before it is tested",
    )
    causal_min_strength: float = Field(
        default=0.3,
        description="Causal strength (1 - p) at or above which a direction counts",
    )
    causal_relation_limit: int = Field(
        default=10,
        description="Influencers / influenced notes tested per note",
    )
    causal_intervention_window_days: int = Field(
        default=14,
        description="Days compared before and after an intervention",
    )
    causal_founding_members: int = Field(
        default=3,
        description="A note with fewer earlier cluster members founded the cluster",
    )
    causal_strong_edge_weight: float = Field(
        default=0.5,
        description="Edge weight above which a relation is strong",
    )
    causal_influencer_edge_weight: float = Field(
        default=0.3,
        description="Edge weight above which a source counts as a causal influencer",
    )

    # ========================================
    # Cluster Identity
    # ========================================
    identity_representatives: int = Field(
        default=5,
        description="Representative notes per cluster identity",
    )
    identity_drift_range_days: int = Field(
        default=7,
        description="Window for cluster drift contribution and trend",
    )
    identity_trend_ratio: float = Field(
        default=0.2,
        description="Relative change between window halves that counts as a trend",
    )
    identity_max_keywords: int = Field(
        default=5,
        description="Keywords extracted per cluster",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
