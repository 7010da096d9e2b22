"""
Drift Timeline - Daily growth curve of the corpus.

- Daily totals of numeric semantic_diff (UTC days)
- EMA smoothing (alpha 0.3)
- State: overheat (EMA > mean + 1.5 sigma), stagnation (EMA < mean - 1.0 sigma),
  otherwise stable; statistics over the last 30 points
- Trend over the last 3 points (5% relative threshold)
- Growth angle, 3/7-day linear forecast, warning severity and drift mode
"""
from __future__ import annotations

import math
import time
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import text
from sqlalchemy.orm import Session

from config import Settings, get_settings
from src.drift.event_detector import parse_semantic_diff
from src.semantic.vector_math import round4

STATS_WINDOW = 30
TREND_LOOKBACK = 3

_MODE_ADVICE = {
    "exploration": "Exploration phase: writing notes on new themes accelerates growth.",
    "consolidation": "Consolidation phase: revisit existing notes and look for connections.",
    "growth": "Growth phase: use the momentum to keep digging deeper.",
    "rest": "Rest phase: take time to organize what you have learned.",
}

_WARNING_RECOMMENDATIONS = {
    "overheat": "Intellectual activity is excessive. Pause and take time to organize and integrate what you learned.",
    "stagnation": "Thinking has stalled. Try new input or approach the topic from a different angle.",
    "stable": "A steady growth rhythm. Keep it up.",
}


@dataclass
class DailyDrift:
    date: str
    drift: float
    ema: float


@dataclass
class DriftTimelineSummary:
    today_drift: float
    today_ema: float
    state: str  # stable | overheat | stagnation
    trend: str  # rising | falling | flat
    mean: float
    std_dev: float


@dataclass
class DriftTimeline:
    range: str
    days: list[DailyDrift] = field(default_factory=list)
    summary: DriftTimelineSummary | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class GrowthAngle:
    angle: float
    angle_degrees: float
    trend: str
    velocity: float


@dataclass
class DriftForecast:
    forecast_3d: float
    forecast_7d: float
    confidence: str  # high | medium | low


@dataclass
class DriftWarning:
    state: str
    severity: str  # none | low | mid | high
    recommendation: str


@dataclass
class DriftInsight:
    angle: GrowthAngle
    forecast: DriftForecast
    warning: DriftWarning
    mode: str
    advice: str
    today_drift: float
    today_ema: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ========================================
# Pure helpers
# ========================================


def calculate_ema(values: list[float], alpha: float) -> list[float]:
    """EMA seeded with the first value."""
    if not values:
        return []
    ema = values[0]
    result = [ema]
    for value in values[1:]:
        ema = alpha * value + (1 - alpha) * ema
        result.append(ema)
    return result


def mean_and_std(values: list[float]) -> tuple[float, float]:
    """Population mean and standard deviation (0, 0 for no values)."""
    if not values:
        return 0.0, 0.0
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return mean, math.sqrt(variance)


def classify_drift_state(current_ema: float, mean: float, std_dev: float, settings: Settings | None = None) -> str:
    settings = settings or get_settings()
    if std_dev == 0:
        return "stable"
    if current_ema > mean + settings.timeline_overheat_sigma * std_dev:
        return "overheat"
    if current_ema < mean - settings.timeline_stagnation_sigma * std_dev:
        return "stagnation"
    return "stable"


def classify_trend(days: list[DailyDrift], threshold: float, lookback: int = TREND_LOOKBACK) -> str:
    """Compare the first and last EMA of the lookback window."""
    recent = days[-lookback:]
    if len(recent) < 2:
        return "flat"
    first, last = recent[0].ema, recent[-1].ema
    diff = last - first
    if diff > first * threshold:
        return "rising"
    if diff < -first * threshold:
        return "falling"
    return "flat"


def calc_growth_angle(days: list[DailyDrift], threshold: float) -> GrowthAngle:
    """atan of the last EMA step; trend from the step relative to yesterday."""
    if len(days) < 2:
        return GrowthAngle(angle=0.0, angle_degrees=0.0, trend="flat", velocity=0.0)

    today, yesterday = days[-1], days[-2]
    diff = today.ema - yesterday.ema
    angle = math.atan(diff)

    relative = diff / yesterday.ema if yesterday.ema > 0 else 0.0
    trend = "flat"
    if relative > threshold:
        trend = "rising"
    elif relative < -threshold:
        trend = "falling"

    return GrowthAngle(
        angle=round4(angle),
        angle_degrees=round4(math.degrees(angle)),
        trend=trend,
        velocity=round4(diff),
    )


def calc_drift_forecast(days: list[DailyDrift], angle: GrowthAngle) -> DriftForecast:
    """Linear extrapolation of the EMA, clamped at 0."""
    if not days:
        return DriftForecast(forecast_3d=0.0, forecast_7d=0.0, confidence="low")

    today_ema = days[-1].ema
    if len(days) >= 14:
        confidence = "high"
    elif len(days) >= 7:
        confidence = "medium"
    else:
        confidence = "low"

    return DriftForecast(
        forecast_3d=round4(max(0.0, today_ema + angle.velocity * 3)),
        forecast_7d=round4(max(0.0, today_ema + angle.velocity * 7)),
        confidence=confidence,
    )


def detect_warning(days: list[DailyDrift], settings: Settings | None = None) -> DriftWarning:
    """Overheat / stagnation warning with a sigma-based severity."""
    settings = settings or get_settings()
    if len(days) < 3:
        return DriftWarning(
            state="stable",
            severity="none",
            recommendation="Not enough data yet. Keep writing notes.",
        )

    emas = [d.ema for d in days[-STATS_WINDOW:]]
    mean, std_dev = mean_and_std(emas)
    today = emas[-1]
    state = classify_drift_state(today, mean, std_dev, settings)

    if state == "overheat":
        severity = "high" if today > mean + 2 * std_dev else "mid"
    elif state == "stagnation":
        if today < mean - 2 * std_dev:
            severity = "high"
        elif today < mean - 1.5 * std_dev:
            severity = "mid"
        else:
            severity = "low"
    else:
        severity = "none"

    return DriftWarning(state=state, severity=severity, recommendation=_WARNING_RECOMMENDATIONS[state])


def detect_drift_mode(angle: GrowthAngle, warning: DriftWarning) -> str:
    if warning.state == "overheat":
        return "rest"
    if warning.state == "stagnation":
        return "exploration"
    if angle.trend == "rising":
        return "growth"
    return "consolidation"


# ========================================
# Service
# ========================================


class DriftTimelineService:
    """
    Build the daily drift timeline and the growth insight.

    Example:
        >>> service = DriftTimelineService(db_session)
        >>> timeline = service.build_drift_timeline(range_days=90)
        >>> print(timeline.summary.state, timeline.summary.trend)
    """

    def __init__(self, db_session: Session, settings: Settings | None = None):
        self.db = db_session
        self.settings = settings or get_settings()

    def get_daily_drift(self, range_days: int = 90, now: int | None = None) -> list[DailyDrift]:
        """Daily semantic_diff totals (UTC days with data only) with their EMA."""
        now = int(time.time()) if now is None else now
        start = now - range_days * 86400

        rows = self.db.execute(
            text("""
                SELECT semantic_diff, created_at
                FROM note_history
                WHERE semantic_diff IS NOT NULL
                  AND created_at >= :start
                  AND created_at <= :now
                ORDER BY created_at ASC
            """),
            {"start": start, "now": now},
        ).fetchall()

        totals: dict[str, float] = defaultdict(float)
        for row in rows:
            diff = parse_semantic_diff(row.semantic_diff)
            if diff is None:
                continue
            day = datetime.fromtimestamp(row.created_at, tz=timezone.utc).date().isoformat()
            totals[day] += diff

        dates = sorted(totals)
        values = [totals[d] for d in dates]
        emas = calculate_ema(values, self.settings.timeline_ema_alpha)
        return [
            DailyDrift(date=d, drift=round4(v), ema=round4(e))
            for d, v, e in zip(dates, values, emas)
        ]

    def build_drift_timeline(self, range_days: int = 90, now: int | None = None) -> DriftTimeline:
        days = self.get_daily_drift(range_days, now)

        mean, std_dev = mean_and_std([d.ema for d in days[-STATS_WINDOW:]])
        today = days[-1] if days else None
        today_ema = today.ema if today else 0.0

        return DriftTimeline(
            range=f"{range_days}d",
            days=days,
            summary=DriftTimelineSummary(
                today_drift=today.drift if today else 0.0,
                today_ema=today_ema,
                state=classify_drift_state(today_ema, mean, std_dev, self.settings),
                trend=classify_trend(days, self.settings.timeline_trend_threshold),
                mean=round4(mean),
                std_dev=round4(std_dev),
            ),
        )

    def generate_drift_insight(self, range_days: int = 30, now: int | None = None) -> DriftInsight:
        """Growth angle, forecast, warning, mode and advice in one report."""
        days = self.get_daily_drift(range_days, now)
        angle = calc_growth_angle(days, self.settings.timeline_trend_threshold)
        forecast = calc_drift_forecast(days, angle)
        warning = detect_warning(days, self.settings)
        mode = detect_drift_mode(angle, warning)

        advice = warning.recommendation if warning.state != "stable" else _MODE_ADVICE[mode]
        today = days[-1] if days else None

        return DriftInsight(
            angle=angle,
            forecast=forecast,
            warning=warning,
            mode=mode,
            advice=advice,
            today_drift=today.drift if today else 0.0,
            today_ema=today.ema if today else 0.0,
        )
