"""
Unit tests for drift timeline helpers.
"""

import pytest

from src.drift.timeline import (
    DailyDrift,
    GrowthAngle,
    DriftWarning,
    calc_drift_forecast,
    calc_growth_angle,
    calculate_ema,
    classify_drift_state,
    classify_trend,
    detect_drift_mode,
    detect_warning,
    mean_and_std,
)


def _days(emas):
    return [DailyDrift(date=f"2026-01-{i + 1:02d}", drift=e, ema=e) for i, e in enumerate(emas)]


class TestEma:
    def test_seeded_with_first_value(self):
        assert calculate_ema([1.0, 0.0, 0.0], 0.3) == pytest.approx([1.0, 0.7, 0.49])

    def test_empty(self):
        assert calculate_ema([], 0.3) == []

    def test_population_std(self):
        mean, std = mean_and_std([1.0, 3.0])
        assert mean == 2.0
        assert std == 1.0


class TestDriftState:
    def test_zero_variance_is_stable(self, settings):
        assert classify_drift_state(5.0, 1.0, 0.0, settings) == "stable"

    def test_overheat(self, settings):
        assert classify_drift_state(2.6, 1.0, 1.0, settings) == "overheat"

    def test_stagnation(self, settings):
        assert classify_drift_state(-0.1, 1.0, 1.0, settings) == "stagnation"

    def test_within_band(self, settings):
        assert classify_drift_state(2.5, 1.0, 1.0, settings) == "stable"


class TestTrend:
    def test_rising(self):
        assert classify_trend(_days([1.0, 1.0, 1.1]), 0.05) == "rising"

    def test_falling(self):
        assert classify_trend(_days([5.0, 1.0, 1.0, 0.9]), 0.05) == "falling"

    def test_flat(self):
        assert classify_trend(_days([1.0, 1.0, 1.04]), 0.05) == "flat"

    def test_single_day_is_flat(self):
        assert classify_trend(_days([1.0]), 0.05) == "flat"


class TestInsightHelpers:
    def test_growth_angle(self):
        angle = calc_growth_angle(_days([1.0, 2.0]), 0.05)
        assert angle.angle_degrees == 45.0
        assert angle.trend == "rising"
        assert angle.velocity == 1.0

    def test_growth_angle_needs_two_days(self):
        assert calc_growth_angle(_days([1.0]), 0.05).trend == "flat"

    def test_forecast_clamped_at_zero(self):
        days = _days([1.0] * 7)
        angle = GrowthAngle(angle=-0.7, angle_degrees=-40.0, trend="falling", velocity=-0.5)
        forecast = calc_drift_forecast(days, angle)

        assert forecast.forecast_3d == 0.0
        assert forecast.forecast_7d == 0.0
        assert forecast.confidence == "medium"

    def test_forecast_confidence(self):
        flat = GrowthAngle(0.0, 0.0, "flat", 0.0)
        assert calc_drift_forecast(_days([1.0] * 14), flat).confidence == "high"
        assert calc_drift_forecast(_days([1.0] * 3), flat).confidence == "low"

    def test_warning_needs_three_points(self, settings):
        assert detect_warning(_days([1.0, 9.0]), settings).severity == "none"

    def test_overheat_warning(self, settings):
        warning = detect_warning(_days([1.0] * 10 + [10.0]), settings)
        assert warning.state == "overheat"
        assert warning.severity == "high"

    def test_mode(self):
        rising = GrowthAngle(0.5, 28.6, "rising", 0.5)
        calm = DriftWarning(state="stable", severity="none", recommendation="")
        assert detect_drift_mode(rising, calm) == "growth"
        assert detect_drift_mode(rising, DriftWarning("overheat", "high", "")) == "rest"
        assert detect_drift_mode(rising, DriftWarning("stagnation", "low", "")) == "exploration"
        assert detect_drift_mode(GrowthAngle(0.0, 0.0, "flat", 0.0), calm) == "consolidation"
