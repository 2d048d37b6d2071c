"""
Tests for the episode statistics helpers and PatternDetector.

Covers: hour/weekday/category distributions, severity slope, sequence
detection, pattern groups, active-sequence checks and the per-type risk score.
"""

from datetime import datetime, timedelta

import pytest

from analytics.temporal_stats import (
    category_shares,
    episode_sequences,
    episodes_frame,
    format_hour_range,
    hour_distribution,
    severity_slope,
    weekday_distribution,
)
from conftest import NOW
from models import Episode


def _episodes(rows):
    """rows: (when, type, severity[, trigger])"""
    out = []
    for i, row in enumerate(rows, start=1):
        when, episode_type, severity = row[:3]
        trigger = row[3] if len(row) > 3 else None
        out.append(Episode(i, 1, episode_type, when, severity, trigger_category=trigger))
    return out


def _evening_history(store):
    """Five 9PM anxiety episodes on consecutive days, severity rising 3..7."""
    for k in range(5, 0, -1):
        when = (NOW - timedelta(days=k)).replace(hour=21)
        store.add_episode(1, "anxiety", when, 8 - k,
                          trigger_category="work" if k != 5 else None)


# ─── temporal_stats ──────────────────────────────────────────


class TestEpisodesFrame:

    def test_empty_frame_has_derived_columns(self):
        df = episodes_frame([])
        assert df.empty
        assert "hour" in df.columns
        assert "dow" in df.columns

    def test_sunday_is_zero(self):
        df = episodes_frame(_episodes([(datetime(2026, 3, 1, 10), "anxiety", 5)]))
        assert df["dow"].iloc[0] == 0
        assert df["hour"].iloc[0] == 10


class TestDistributions:

    def test_hour_peaks_above_share(self):
        base = datetime(2026, 3, 1)
        df = episodes_frame(_episodes([
            (base.replace(hour=21), "anxiety", 5),
            (base.replace(hour=21) + timedelta(days=1), "anxiety", 7),
            (base.replace(hour=21) + timedelta(days=2), "anxiety", 6),
            (base.replace(hour=9), "anxiety", 2),
            (base.replace(hour=14), "anxiety", 3),
        ]))
        peaks = hour_distribution(df)
        assert peaks == [{"hour": 21, "count": 3, "percentage": 60.0, "average_severity": 6.0}]

    def test_weekday_split(self):
        sunday = datetime(2026, 3, 1, 10)
        df = episodes_frame(_episodes([
            (sunday, "anxiety", 5),
            (sunday + timedelta(days=7), "anxiety", 5),
            (sunday + timedelta(days=1), "anxiety", 5),
            (sunday + timedelta(days=2), "anxiety", 5),
        ]))
        dist = weekday_distribution(df)
        assert dist["significant_days"][0]["name"] == "Sunday"
        assert dist["significant_days"][0]["percentage"] == 50.0
        assert dist["weekend_percentage"] == 50.0
        assert dist["weekday_percentage"] == 50.0

    def test_category_shares_ignore_untagged(self):
        base = datetime(2026, 3, 1, 10)
        df = episodes_frame(_episodes([
            (base, "anxiety", 4, "work"),
            (base + timedelta(hours=1), "anxiety", 6, "work"),
            (base + timedelta(hours=2), "anxiety", 8, "family"),
            (base + timedelta(hours=3), "anxiety", 8),
        ]))
        shares = category_shares(df, "trigger_category")
        assert [s["value"] for s in shares] == ["work", "family"]
        assert shares[0]["share"] == pytest.approx(2 / 3)
        assert shares[0]["average_severity"] == 5.0


class TestSeveritySlope:

    def test_per_day_slope(self):
        base = datetime(2026, 3, 1, 10)
        df = episodes_frame(_episodes([
            (base, "anxiety", 2), (base + timedelta(days=1), "anxiety", 4),
            (base + timedelta(days=2), "anxiety", 6),
        ]))
        assert severity_slope(df) == pytest.approx(2.0)

    def test_single_point(self):
        df = episodes_frame(_episodes([(datetime(2026, 3, 1), "anxiety", 2)]))
        assert severity_slope(df) is None

    def test_same_instant_is_flat(self):
        when = datetime(2026, 3, 1)
        df = episodes_frame(_episodes([(when, "anxiety", 2), (when, "anxiety", 8)]))
        assert severity_slope(df) == 0.0


class TestSequences:

    def test_repeated_follow_up(self):
        base = datetime(2026, 3, 1, 8)
        df = episodes_frame(_episodes([
            (base, "overthinking", 5),
            (base + timedelta(hours=2), "anxiety", 6),
            (base + timedelta(days=2), "overthinking", 5),
            (base + timedelta(days=2, hours=4), "anxiety", 6),
            (base + timedelta(days=4), "depression", 5),
        ]))
        seqs = episode_sequences(df)
        assert seqs == [{
            "from_type": "overthinking",
            "expected_next": "anxiety",
            "occurrences": 2,
            "average_gap_hours": 3.0,
            "follow_rate": 1.0,
        }]

    def test_gap_too_long(self):
        base = datetime(2026, 3, 1, 8)
        df = episodes_frame(_episodes([
            (base, "overthinking", 5), (base + timedelta(hours=30), "anxiety", 6),
            (base + timedelta(days=3), "overthinking", 5), (base + timedelta(days=4, hours=8), "anxiety", 6),
        ]))
        assert episode_sequences(df) == []


@pytest.mark.parametrize("hour,expected", [
    (21, "9PM-11PM"), (11, "11AM-1PM"), (23, "11PM-1AM"), (0, "12AM-2AM"), (10, "10AM-12PM"),
])
def test_format_hour_range(hour, expected):
    assert format_hour_range(hour) == expected


# ─── PatternDetector ─────────────────────────────────────────


class TestUserPatterns:

    def test_no_history(self, patterns):
        assert patterns.get_user_patterns(1) == {}
        assert patterns.calculate_risk_score(1, "anxiety", "24_hour") == 0.3

    def test_groups_from_history(self, patterns, store):
        _evening_history(store)

        groups = patterns.get_user_patterns(1, "anxiety")

        assert set(groups) == {"temporal", "trigger", "severity"}
        time_of_day = groups["temporal"][0]
        assert time_of_day["pattern_subtype"] == "time_of_day"
        assert time_of_day["description"] == "100% of episodes occur around 9PM-11PM"
        assert groups["trigger"][0]["data"]["triggers"][0]["trigger"] == "work"
        assert groups["trigger"][0]["significance"] == 1.0
        assert groups["severity"][0]["data"]["trend"] == "worsening"

    def test_too_few_episodes(self, patterns, store):
        store.add_episode(1, "anxiety", NOW - timedelta(days=1), 5)
        store.add_episode(1, "anxiety", NOW - timedelta(days=2), 5)
        assert patterns.get_user_patterns(1, "anxiety") == {}

    def test_old_history_ignored(self, patterns, store):
        for k in range(5):
            store.add_episode(1, "anxiety", NOW - timedelta(days=120 + k), 5)
        assert patterns.get_user_patterns(1) == {}

    def test_cascade_filtered_by_type(self, patterns, store):
        for k in (1, 3):
            store.add_episode(1, "overthinking", NOW - timedelta(days=k, hours=5), 5)
            store.add_episode(1, "anxiety", NOW - timedelta(days=k, hours=3), 5)

        assert patterns.get_user_patterns(1, "anxiety")["cascade"][0]["data"]["sequence_type"] == \
            "overthinking_to_anxiety"
        assert "cascade" not in patterns.get_user_patterns(1, "depression")


class TestRiskScore:

    def test_weighted_components(self, patterns, store):
        _evening_history(store)
        # temporal 1.0, trigger 1.0, severity 0.625 over weights 0.3/0.25/0.2
        assert patterns.calculate_risk_score(1, "anxiety", "24_hour") == pytest.approx(0.9)

    def test_bounded(self, patterns, store):
        _evening_history(store)
        for window in ("24_hour", "3_day", "7_day", "30_day"):
            assert 0.0 <= patterns.calculate_risk_score(1, "anxiety", window) <= 1.0


class TestActiveSequence:

    SEQUENCE = {"from_type": "overthinking", "expected_next": "anxiety", "average_gap_hours": 6}

    def test_head_of_sequence_is_active(self, patterns, store):
        store.add_episode(1, "overthinking", NOW - timedelta(hours=2), 5)

        active = patterns.check_active_sequence(1, self.SEQUENCE)

        assert active == {
            "type": "overthinking_to_anxiety",
            "expected_next": "anxiety",
            "prevention_window": "Next 4 hours",
            "hours_since_trigger": 2.0,
        }

    def test_follow_up_already_happened(self, patterns, store):
        store.add_episode(1, "overthinking", NOW - timedelta(hours=3), 5)
        store.add_episode(1, "anxiety", NOW - timedelta(hours=1), 5)
        assert patterns.check_active_sequence(1, self.SEQUENCE) is None

    def test_gap_elapsed(self, patterns, store):
        store.add_episode(1, "overthinking", NOW - timedelta(hours=8), 5)
        assert patterns.check_active_sequence(1, self.SEQUENCE) is None
