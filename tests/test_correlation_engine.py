"""
Behaviour tests for CorrelationEngine against the in-memory store.

Covers: insufficient data, idempotent re-detection, pattern threshold
emission (including catch-up and concurrent callers), grouped insights,
forecast risk factors, AI failure isolation and daily maintenance.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
import requests

from conftest import NOW, log_pairs
from correlation_engine import CorrelationEngine
from events import CORRELATION_DISCOVERED, CORRELATION_PATTERN_DETECTED
from models import Correlation

LEVELS = {"emerging", "established", "strong", "persistent"}


def _group_row(i, user_id=1):
    return Correlation(
        user_id=user_id,
        primary_episode_id=1000 + i,
        primary_type="anxiety",
        related_episode_id=2000 + i,
        related_type="overthinking",
        correlation_type="concurrent",
        time_offset_hours=1.0,
        correlation_strength=0.7,
        confidence_score=0.65,
    )


def _concurrent_levels(store, user_id=1):
    return {
        p.pattern_level for p in store.get_patterns(user_id)
        if p.pattern_subtype == "anxiety_to_overthinking" and p.correlation_type == "concurrent"
    }


# ─── Detection gates ─────────────────────────────────────────


class TestDetectionGates:

    def test_missing_episode(self, correlation_engine):
        result = correlation_engine.detect_correlations(999)
        assert result["status"] == "not_found"
        assert result["inserted"] == 0

    def test_insufficient_data_returns_early(self, correlation_engine, store):
        log_pairs(store, pairs=1)
        episode = store.add_episode(1, "anxiety", NOW - timedelta(hours=3), 5)

        result = correlation_engine.detect_correlations(episode.episode_id)

        assert result["status"] == "insufficient_data"
        assert store.correlations == {}

    def test_incompatible_types_are_not_compared(self, correlation_engine, store):
        for i in range(5):
            store.add_episode(1, "caregiver", NOW - timedelta(days=i, hours=1), 5)
        target = store.add_episode(1, "panic", NOW - timedelta(hours=2), 5)

        result = correlation_engine.detect_correlations(target.episode_id)

        assert result["status"] == "ok"
        assert result["compared"] == 0


# ─── Upsert ──────────────────────────────────────────────────


class TestIdempotentUpsert:

    def test_second_pass_updates_in_place(self, correlation_engine, store):
        pairs = log_pairs(store)
        target = pairs[-1][1].episode_id

        first = correlation_engine.detect_correlations(target)
        rows_after_first = len(store.correlations)
        second = correlation_engine.detect_correlations(target)

        assert first["inserted"] > 0
        assert second["inserted"] == 0
        assert second["updated"] == first["inserted"]
        assert len(store.correlations) == rows_after_first

    def test_reverse_detection_keeps_first_orientation(self, correlation_engine, store):
        pairs = log_pairs(store)
        overthinking, anxiety = pairs[-1]

        correlation_engine.detect_correlations(anxiety.episode_id)
        row = store.find_correlation(anxiety.episode_id, overthinking.episode_id)
        correlation_engine.detect_correlations(overthinking.episode_id)

        again = store.find_correlation(anxiety.episode_id, overthinking.episode_id)
        assert again.correlation_id == row.correlation_id
        assert again.primary_episode_id == anxiety.episode_id
        pair_rows = [c for c in store.correlations.values()
                     if c.pair_key() == frozenset((anxiety.episode_id, overthinking.episode_id))]
        assert len(pair_rows) == 1

    def test_parallel_passes_over_one_pair_insert_once(self, correlation_engine, store, monkeypatch):
        pairs = log_pairs(store)
        overthinking, anxiety = pairs[-1]
        find = store.find_correlation

        def slow_find(a, b):
            found = find(a, b)
            time.sleep(0.05)
            return found

        monkeypatch.setattr(store, "find_correlation", slow_find)
        start = threading.Barrier(2)

        def detect(episode_id):
            start.wait()
            return correlation_engine.detect_correlations(episode_id)

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(detect, [anxiety.episode_id, overthinking.episode_id]))

        pair_rows = [c for c in store.correlations.values()
                     if c.pair_key() == frozenset((anxiety.episode_id, overthinking.episode_id))]
        assert len(pair_rows) == 1
        assert [r["status"] for r in results] == ["ok", "ok"]
        assert sum(r["updated"] for r in results) == 1

    def test_discovery_event_published_once_per_row(self, correlation_engine, store, events):
        seen = []
        events.subscribe(CORRELATION_DISCOVERED, lambda **kw: seen.append(kw["correlation"]))
        pairs = log_pairs(store)

        result = correlation_engine.detect_correlations(pairs[-1][1].episode_id)
        correlation_engine.detect_correlations(pairs[-1][1].episode_id)

        assert len(seen) == result["inserted"]


# ─── Patterns ────────────────────────────────────────────────


class TestPatternEmission:

    def test_twenty_five_rows_emit_four_patterns(self, correlation_engine, store, events):
        published = []
        events.subscribe(CORRELATION_PATTERN_DETECTED, lambda **kw: published.append(kw["pattern"]))

        emitted = []
        for i in range(25):
            row = _group_row(i)
            store.insert_correlation(row)
            emitted.extend(correlation_engine._check_patterns(row))

        assert len(emitted) == 4
        assert {p.pattern_level for p in emitted} == LEVELS
        assert [p.occurrence_count for p in emitted] == [3, 5, 10, 20]
        assert len(published) == 4

    def test_catch_up_emits_every_missed_threshold(self, correlation_engine, store):
        rows = [_group_row(i) for i in range(12)]
        for row in rows:
            store.insert_correlation(row)

        emitted = correlation_engine._check_patterns(rows[-1])

        assert {p.pattern_level for p in emitted} == {"emerging", "established", "strong"}
        assert correlation_engine._check_patterns(rows[-1]) == []

    def test_concurrent_checks_emit_each_level_once(self, correlation_engine, store):
        rows = [_group_row(i) for i in range(25)]
        for row in rows:
            store.insert_correlation(row)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(correlation_engine._check_patterns, rows[-16:]))

        assert sum(len(r) for r in results) == 4
        assert _concurrent_levels(store) == LEVELS


# ─── End-to-end ──────────────────────────────────────────────


class TestEndToEndScenario:

    @pytest.fixture
    def engine(self, store, registry, events, clock):
        return CorrelationEngine(
            store, store, registry,
            risk_function=lambda user_id, episode_type, window: 0.8,
            events=events,
            clock=clock,
        )

    @pytest.fixture
    def detected(self, engine, store):
        for _overthinking, anxiety in log_pairs(store):
            engine.detect_correlations(anxiety.episode_id)
        return engine

    def test_concurrent_group_reaches_established(self, detected, store):
        group = store.get_group_correlations(1, "anxiety", "overthinking", "concurrent")
        assert len(group) == 5
        assert all(c.time_offset_hours == pytest.approx(1.0) for c in group)
        assert _concurrent_levels(store) == {"emerging", "established"}

    def test_insight_uses_concurrent_template(self, detected):
        insights = detected.get_user_correlations(1)
        concurrent = [i for i in insights if i["data"]["correlation_type"] == "concurrent"]

        assert len(concurrent) == 1
        insight = concurrent[0]
        assert insight["title"] == "Anxiety and Overthinking Often Occur Together"
        assert insight["pattern_level"] == "established"
        assert insight["average_time_offset_hours"] == pytest.approx(1.0)
        assert 0.0 < insight["strength"] <= 1.0
        assert "%" not in insight["description"]
        assert any("together" in a for a in insight["action_items"])

    def test_insights_sorted_and_limited(self, detected):
        insights = detected.get_user_correlations(1, limit=2)
        assert len(insights) <= 2
        scores = [i["strength"] * i["confidence"] for i in insights]
        assert scores == sorted(scores, reverse=True)

    def test_risk_factor_reported(self, detected):
        factors = detected.get_correlation_risk_factors(1, "24_hour")
        concurrent = [f for f in factors if f["correlation_type"] == "concurrent"]

        assert len(concurrent) == 1
        factor = concurrent[0]
        assert factor["primary_type"] == "anxiety"
        assert factor["related_type"] == "overthinking"
        assert factor["time_offset"] == pytest.approx(1.0)
        assert factor["strength"] >= 0.5
        assert factor["risk_increase"] == pytest.approx(0.8 * factor["strength"], abs=1e-3)
        assert factor["factor"].startswith("Anxiety episodes may trigger Overthinking")


class TestRiskFactorGates:

    def test_no_risk_function_means_no_factors(self, store, registry, clock):
        engine = CorrelationEngine(store, store, registry, clock=clock)
        for _o, anxiety in log_pairs(store):
            engine.detect_correlations(anxiety.episode_id)
        assert engine.get_correlation_risk_factors(1, "24_hour") == []

    def test_low_primary_risk_filtered(self, store, registry, clock):
        engine = CorrelationEngine(store, store, registry, risk_function=lambda *a: 0.4, clock=clock)
        for _o, anxiety in log_pairs(store):
            engine.detect_correlations(anxiety.episode_id)
        assert engine.get_correlation_risk_factors(1, "24_hour") == []


# ─── AI ──────────────────────────────────────────────────────


class TestAIAnalysis:

    def _engine(self, store, registry, clock, ai, timeout=1.0):
        return CorrelationEngine(store, store, registry, ai_service=ai, clock=clock,
                                 ai_timeout_seconds=timeout)

    def test_failure_does_not_break_detection(self, store, registry, clock):
        ai = MagicMock()
        ai.detect_correlations.side_effect = requests.ConnectionError("down")
        engine = self._engine(store, registry, clock, ai)
        pairs = log_pairs(store)

        result = engine.detect_correlations(pairs[-1][1].episode_id)

        assert result["status"] == "ok"
        assert result["inserted"] > 0
        assert result["ai_correlations"] == 0

    def test_only_confident_results_kept(self, store, registry, clock):
        ai = MagicMock()
        ai.detect_correlations.return_value = [
            {"type": "hidden", "confidence": 0.9},
            {"type": "weak", "confidence": 0.5},
            {"type": "broken", "confidence": "n/a"},
        ]
        engine = self._engine(store, registry, clock, ai)
        pairs = log_pairs(store)

        result = engine.detect_correlations(pairs[-1][1].episode_id)

        assert result["ai_correlations"] == 1
        assert store.ai_correlations[0]["correlation_data"]["type"] == "hidden"

    def test_hung_service_is_bounded(self, store, registry, clock):
        release = threading.Event()
        ai = MagicMock()
        ai.detect_correlations.side_effect = lambda *a: release.wait(5)
        engine = self._engine(store, registry, clock, ai, timeout=0.1)
        pairs = log_pairs(store)

        try:
            result = engine.detect_correlations(pairs[-1][1].episode_id)
        finally:
            release.set()

        assert result["status"] == "ok"
        assert result["ai_correlations"] == 0

    def test_use_ai_false_skips_service(self, store, registry, clock):
        ai = MagicMock()
        engine = self._engine(store, registry, clock, ai)
        pairs = log_pairs(store)

        engine.detect_correlations(pairs[-1][1].episode_id, use_ai=False)

        ai.detect_correlations.assert_not_called()


# ─── Maintenance ─────────────────────────────────────────────


class TestDailyAnalysis:

    def test_rescans_recent_episodes_without_ai(self, store, registry, clock):
        ai = MagicMock()
        engine = CorrelationEngine(store, store, registry, ai_service=ai, clock=clock)
        log_pairs(store, start=NOW - timedelta(days=6), pairs=3)

        totals = engine.run_daily_analysis()

        assert totals["users"] == 1
        assert totals["episodes"] == 6
        assert totals["inserted"] > 0
        assert totals["failed_users"] == 0
        ai.detect_correlations.assert_not_called()

    def test_user_failure_is_counted(self, correlation_engine, store, monkeypatch):
        log_pairs(store, start=NOW - timedelta(days=6), pairs=3)

        def boom(*args, **kwargs):
            raise RuntimeError("store offline")

        monkeypatch.setattr(correlation_engine, "detect_correlations", boom)
        totals = correlation_engine.run_daily_analysis()

        assert totals["failed_users"] == 1

    def test_cleanup_removes_only_weak_stale_rows(self, correlation_engine, store, clock):
        weak = _group_row(1)
        weak.correlation_strength = 0.35
        weak.discovered_date = NOW - timedelta(days=200)
        strong = _group_row(2)
        strong.correlation_strength = 0.8
        strong.discovered_date = NOW - timedelta(days=200)
        fresh = _group_row(3)
        fresh.correlation_strength = 0.35
        for row in (weak, strong, fresh):
            store.insert_correlation(row)

        assert correlation_engine.cleanup_old_correlations() == 1
        remaining = {c.primary_episode_id for c in store.correlations.values()}
        assert remaining == {1002, 1003}
