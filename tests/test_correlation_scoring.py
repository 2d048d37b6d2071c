"""
Tests for the correlation scoring helpers.

Covers: signed time difference, type buckets, proximity factors, evidence
confidence, shared-context factors, insight confidence and strength clamping.
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from correlation_engine import (
    CorrelationEngine,
    classify_correlation,
    correlation_factors,
    evidence_confidence,
    insight_confidence,
    severity_proximity_factor,
    time_difference,
    time_proximity_factor,
)
from models import Episode

BASE = datetime(2026, 3, 1, 9, 0)


def _episode(episode_id, when, episode_type="anxiety", severity=5.0, **kwargs):
    return Episode(
        episode_id=episode_id,
        user_id=1,
        episode_type=episode_type,
        episode_date=when,
        severity_score=severity,
        **kwargs,
    )


# ─── time_difference / classify_correlation ─────────────────


class TestTimeDifference:

    def test_negative_when_primary_first(self):
        primary = _episode(1, BASE)
        related = _episode(2, BASE + timedelta(hours=30))
        diff = time_difference(primary, related)
        assert diff["hours"] == pytest.approx(-30.0)
        assert diff["absolute_hours"] == pytest.approx(30.0)
        assert diff["days"] == 1

    def test_positive_when_primary_second(self):
        primary = _episode(1, BASE + timedelta(hours=5))
        related = _episode(2, BASE)
        assert time_difference(primary, related)["hours"] == pytest.approx(5.0)


class TestClassifyCorrelation:

    @pytest.mark.parametrize("hours,expected", [
        (0, "concurrent"),
        (-4, "concurrent"),
        (4, "concurrent"),
        (-4.5, "triggers"),
        (-24, "triggers"),
        (-24.5, "precedes"),
        (-100, "precedes"),
        (4.5, "triggered_by"),
        (24, "triggered_by"),
        (24.5, "follows"),
        (150, "follows"),
    ])
    def test_buckets(self, hours, expected):
        assert classify_correlation(hours) == expected

    def test_symmetric_gaps_get_mirrored_types(self):
        assert classify_correlation(-10) == "triggers"
        assert classify_correlation(10) == "triggered_by"
        assert classify_correlation(-48) == "precedes"
        assert classify_correlation(48) == "follows"


# ─── Proximity factors ───────────────────────────────────────


class TestProximityFactors:

    def test_time_steps(self):
        assert time_proximity_factor(0.5) == 1.0
        assert time_proximity_factor(1) == 1.0
        assert time_proximity_factor(4) == 0.9
        assert time_proximity_factor(12) == 0.8
        assert time_proximity_factor(24) == 0.7
        assert time_proximity_factor(48) == 0.5
        assert time_proximity_factor(72) == 0.3
        assert time_proximity_factor(100) == 0.1

    def test_severity_steps(self):
        assert severity_proximity_factor(5, 5) == 0.9
        assert severity_proximity_factor(5, 7) == 0.7
        assert severity_proximity_factor(2, 5) == 0.5
        assert severity_proximity_factor(1, 5) == 0.3
        assert severity_proximity_factor(0, 10) == 0.1


class TestEvidenceConfidence:

    @pytest.mark.parametrize("prior,expected", [
        (0, 0.45), (1, 0.45), (2, 0.55), (3, 0.65), (5, 0.75), (7, 0.85), (10, 0.95), (50, 0.95),
    ])
    def test_steps(self, prior, expected):
        assert evidence_confidence(prior) == expected


# ─── correlation_factors ─────────────────────────────────────


class TestCorrelationFactors:

    def test_similar_time_wraps_midnight(self):
        a = _episode(1, datetime(2026, 3, 1, 23, 0))
        b = _episode(2, datetime(2026, 3, 3, 0, 30))
        assert "similar_time_of_day" in correlation_factors(a, b)

    def test_same_weekday_location_and_biology(self):
        a = _episode(1, BASE, location="work", has_biological_factors=True)
        b = _episode(2, BASE + timedelta(days=7, hours=6), location="work", has_biological_factors=True)
        factors = correlation_factors(a, b)
        assert "same_day_of_week" in factors
        assert "same_location" in factors
        assert "biological_factors_present" in factors
        assert "similar_time_of_day" not in factors

    def test_missing_location_is_not_shared(self):
        a = _episode(1, BASE)
        b = _episode(2, BASE + timedelta(days=1, hours=8))
        assert correlation_factors(a, b) == []


class TestInsightConfidence:

    def test_caps_at_one(self):
        assert insight_confidence(25, 1.0) == 1.0

    def test_small_group(self):
        assert insight_confidence(1, 0.5) == pytest.approx(0.6)

    def test_medium_group(self):
        assert insight_confidence(10, 0.5) == pytest.approx(0.8)


# ─── calculate_correlation ───────────────────────────────────


def _engine_with_registry(base_strength, historical=None, prior=0):
    registry = MagicMock()
    registry.base_correlation_strength.return_value = base_strength
    correlations = MagicMock()
    correlations.average_strength.return_value = historical
    correlations.count_correlations.return_value = prior
    return CorrelationEngine(MagicMock(), correlations, registry)


class TestCalculateCorrelation:

    def test_strength_is_weighted_sum(self):
        engine = _engine_with_registry(0.7, historical=0.5, prior=3)
        primary = _episode(1, BASE, trigger_category="work")
        related = _episode(2, BASE + timedelta(hours=2), "overthinking", trigger_category="work")

        corr = engine.calculate_correlation(primary, related)

        # 0.4*0.7 + 0.2*0.9 + 0.2*0.9 + 0.1 + 0.1*0.5
        assert corr.correlation_strength == pytest.approx(0.79)
        assert corr.correlation_type == "concurrent"
        assert corr.time_offset_hours == pytest.approx(-2.0)
        assert corr.confidence_score == 0.65

    def test_strength_clamped_to_one(self):
        engine = _engine_with_registry(5.0, historical=1.0)
        primary = _episode(1, BASE, trigger_category="work")
        related = _episode(2, BASE, "overthinking", trigger_category="work")

        assert engine.calculate_correlation(primary, related).correlation_strength == 1.0

    def test_strength_clamped_to_zero(self):
        engine = _engine_with_registry(-5.0)
        primary = _episode(1, BASE)
        related = _episode(2, BASE + timedelta(days=5), severity=0.0)
        primary.severity_score = 10.0

        assert engine.calculate_correlation(primary, related).correlation_strength == 0.0

    def test_precedes_keeps_signed_offset(self):
        engine = _engine_with_registry(0.5)
        primary = _episode(1, BASE)
        related = _episode(2, BASE + timedelta(hours=30), "overthinking")

        corr = engine.calculate_correlation(primary, related)
        assert corr.correlation_type == "precedes"
        assert corr.time_offset_hours == pytest.approx(-30.0)
        assert corr.primary_type == "anxiety"
        assert corr.related_type == "overthinking"
