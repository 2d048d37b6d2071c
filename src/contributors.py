"""Per-episode-type forecast contributors built on the user's own history."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from analytics.temporal_stats import format_hour_range
from collaborators import EpisodeStore, PatternSource
from constants import FORECAST_WINDOWS
from episode_registry import EpisodeRegistry

log = logging.getLogger("contributors")

HISTORY_DAYS = 90
FREQUENCY_DAYS = 14
# Seven episodes a week saturates the frequency term
FREQUENCY_CEILING_PER_WEEK = 7.0
PATTERN_SHARE = 0.7
FREQUENCY_SHARE = 0.3
PEAK_PERIOD_HOURS = 2
MAX_PERIODS_PER_PEAK = 7

CONFIDENCE_BY_HISTORY = [(30, 0.9), (15, 0.75), (5, 0.6)]
CONFIDENCE_FLOOR = 0.4


def _history_confidence(n: int) -> float:
    for minimum, confidence in CONFIDENCE_BY_HISTORY:
        if n >= minimum:
            return confidence
    return CONFIDENCE_FLOOR


def _upcoming_hours(now: datetime, hour: int, horizon_hours: int, limit: int) -> List[datetime]:
    """Start times at *hour* o'clock between now and now + horizon."""
    first = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if first + timedelta(hours=PEAK_PERIOD_HOURS) <= now:
        first += timedelta(days=1)
    horizon = now + timedelta(hours=horizon_hours)
    out = []
    start = first
    while start < horizon and len(out) < limit:
        out.append(start)
        start += timedelta(days=1)
    return out


class EpisodeHistoryContributor:
    """Risk for one episode type from its pattern score and recent frequency."""

    def __init__(self, episode_type: str, display_name: str, weight: float,
                 episode_store: EpisodeStore, pattern_source: PatternSource,
                 clock=datetime.now):
        self.episode_type = episode_type
        self.display_name = display_name
        self.weight = weight
        self.store = episode_store
        self.patterns = pattern_source
        self.clock = clock

    def contribute_to_forecast(self, user_id: int, window: str) -> Optional[Dict[str, Any]]:
        now = self.clock()
        history = self.store.get_episodes(
            user_id, now - timedelta(days=HISTORY_DAYS), now, self.episode_type
        )
        if not history:
            return None

        pattern_risk = self.patterns.calculate_risk_score(user_id, self.episode_type, window)
        recent = [e for e in history if e.episode_date >= now - timedelta(days=FREQUENCY_DAYS)]
        per_week = len(recent) / (FREQUENCY_DAYS / 7.0)
        frequency = min(per_week / FREQUENCY_CEILING_PER_WEEK, 1.0)
        risk = max(0.0, min(1.0, PATTERN_SHARE * pattern_risk + FREQUENCY_SHARE * frequency))

        groups = self.patterns.get_user_patterns(user_id, self.episode_type)
        factors = [p["description"] for group in groups.values() for p in group]
        if recent:
            factors.append(f"{len(recent)} {self.display_name.lower()} episodes in the last {FREQUENCY_DAYS} days")

        return {
            "risk_score": round(risk, 4),
            "confidence": _history_confidence(len(history)),
            "weight": self.weight,
            "contributing_factors": factors,
            "high_risk_periods": self._peak_periods(groups, window, now, risk),
            "recommendations": self._recommendations(groups),
        }

    def _peak_periods(self, groups: Dict[str, List[Dict[str, Any]]], window: str,
                      now: datetime, risk: float) -> List[Dict[str, Any]]:
        horizon = FORECAST_WINDOWS.get(window, {}).get("hours", 24)
        periods = []
        for pattern in groups.get("temporal", []):
            if pattern["pattern_subtype"] != "time_of_day":
                continue
            for peak in pattern["data"]["peak_hours"]:
                for start in _upcoming_hours(now, peak["hour"], horizon, MAX_PERIODS_PER_PEAK):
                    periods.append({
                        "start": start,
                        "end": start + timedelta(hours=PEAK_PERIOD_HOURS),
                        "risk_score": round(min(1.0, risk + peak["percentage"] / 100 * 0.2), 4),
                        "reasons": [
                            f"{self.display_name} peak time ({format_hour_range(peak['hour'])})"
                        ],
                    })
        return periods

    @staticmethod
    def _recommendations(groups: Dict[str, List[Dict[str, Any]]]) -> List[str]:
        recs = []
        for pattern in groups.get("temporal", []):
            if pattern["pattern_subtype"] == "time_of_day":
                hour = pattern["data"]["peak_hours"][0]["hour"]
                recs.append(f"Plan a calming activity before {format_hour_range(hour)}")
        for pattern in groups.get("trigger", []):
            top = pattern["data"]["triggers"][0]["trigger"]
            recs.append(f"Prepare coping strategies for {top} situations")
        for pattern in groups.get("severity", []):
            if pattern["data"]["trend"] == "worsening":
                recs.append("Check in with your support network this week")
        return recs


def attach_history_contributors(registry: EpisodeRegistry, episode_store: EpisodeStore,
                                pattern_source: PatternSource, clock=datetime.now) -> None:
    """Give every registered type an EpisodeHistoryContributor."""
    for episode_type in registry.get_episode_types(enabled_only=False):
        cfg = registry.get_type_config(episode_type)
        registry.attach_contributor(episode_type, EpisodeHistoryContributor(
            episode_type, cfg["display_name"], cfg["weight"],
            episode_store, pattern_source, clock,
        ))
