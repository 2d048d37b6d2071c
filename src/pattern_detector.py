"""
Pattern Detector
================
Summarises a user's recent episode history into pattern records the
forecast engine can act on:

  temporal   time_of_day peaks (hours with > 20% of episodes, top 3)
             day_of_week (weekdays with > 20% of episodes)
  trigger    common_triggers (categories with >= 30% of tagged episodes)
  severity   severity_trend (least-squares slope, per day)
  cascade    episode_sequences (type A followed by type B within 24h, >= 2x)

Every record has the same shape:
    {pattern_type, pattern_subtype, description, data, confidence, significance}

calculate_risk_score() folds the groups into a single per-type risk with
fixed component weights, normalised by the weights actually present.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pandas as pd

from analytics.temporal_stats import (
    category_shares,
    episode_sequences,
    episodes_frame,
    format_hour_range,
    hour_distribution,
    severity_slope,
    weekday_distribution,
)
from collaborators import EpisodeStore

log = logging.getLogger("pattern_detector")

PATTERN_LOOKBACK_DAYS = 90
MIN_PATTERN_EPISODES = 3
TEMPORAL_MIN_SHARE = 0.2
TRIGGER_MIN_SHARE = 0.3
SEQUENCE_MAX_GAP_HOURS = 24
SEQUENCE_MIN_OCCURRENCES = 2

BASE_RISK_NO_PATTERNS = 0.3
RISK_COMPONENT_WEIGHTS = {
    "temporal": 0.3,
    "trigger": 0.25,
    "severity": 0.2,
    "cascade": 0.1,
}

# Windows whose horizon is measured in hours use time-of-day peaks; longer
# windows lean on weekday concentration instead.
HOURLY_WINDOWS = {"24_hour", "3_day"}


def _pattern(pattern_type: str, subtype: str, description: str, data: Dict[str, Any],
             confidence: float, significance: float) -> Dict[str, Any]:
    return {
        "pattern_type": pattern_type,
        "pattern_subtype": subtype,
        "description": description,
        "data": data,
        "confidence": round(confidence, 3),
        "significance": round(significance, 3),
    }


def _concentration_confidence(top_percentage: float, total: int) -> float:
    if top_percentage > 50:
        confidence = 0.9
    elif top_percentage > 40:
        confidence = 0.8
    elif top_percentage > 30:
        confidence = 0.7
    elif top_percentage > 20:
        confidence = 0.6
    else:
        confidence = 0.5
    if total < 10:
        confidence *= 0.8
    elif total < 20:
        confidence *= 0.9
    return confidence


class PatternDetector:
    def __init__(self, episode_store: EpisodeStore, clock=datetime.now,
                 lookback_days: int = PATTERN_LOOKBACK_DAYS):
        self.store = episode_store
        self.clock = clock
        self.lookback_days = lookback_days

    # ─── History ───────────────────────────────────────────

    def _history(self, user_id: int, episode_type: Optional[str] = None) -> pd.DataFrame:
        now = self.clock()
        episodes = self.store.get_episodes(
            user_id, now - timedelta(days=self.lookback_days), now, episode_type
        )
        return episodes_frame(episodes)

    # ─── Individual detectors ──────────────────────────────

    def _time_of_day(self, df: pd.DataFrame) -> Optional[Dict[str, Any]]:
        peaks = hour_distribution(df, min_share=TEMPORAL_MIN_SHARE, top=3)
        if not peaks:
            return None
        primary = peaks[0]
        return _pattern(
            "temporal", "time_of_day",
            f"{round(primary['percentage'])}% of episodes occur around "
            f"{format_hour_range(primary['hour'])}",
            {"peak_hours": peaks},
            _concentration_confidence(primary["percentage"], len(df)),
            primary["percentage"] / 100,
        )

    def _day_of_week(self, df: pd.DataFrame) -> Optional[Dict[str, Any]]:
        dist = weekday_distribution(df, min_share=TEMPORAL_MIN_SHARE)
        days = dist["significant_days"]
        if not days:
            return None
        if dist["weekday_percentage"] > 70:
            description = "Episodes occur primarily on weekdays"
        elif dist["weekend_percentage"] > 40:
            description = "Episodes are more frequent on weekends"
        else:
            description = f"{round(days[0]['percentage'])}% of episodes occur on {days[0]['name']}"
        return _pattern(
            "temporal", "day_of_week", description, dist,
            _concentration_confidence(days[0]["percentage"], len(df)),
            max(dist["weekday_percentage"], dist["weekend_percentage"]) / 100,
        )

    def _common_triggers(self, df: pd.DataFrame) -> Optional[Dict[str, Any]]:
        shares = [s for s in category_shares(df, "trigger_category") if s["share"] >= TRIGGER_MIN_SHARE]
        if not shares:
            return None
        triggers = [
            {
                "trigger": s["value"],
                "count": s["count"],
                "percentage": round(s["share"] * 100, 2),
                "average_severity": round(s["average_severity"], 2),
            }
            for s in shares
        ]
        parts = ", ".join(f"{t['trigger']} ({round(t['percentage'])}%)" for t in triggers[:3])
        return _pattern(
            "trigger", "common_triggers",
            f"Most common triggers: {parts}",
            {"triggers": triggers},
            min(0.5 + 0.05 * triggers[0]["count"], 0.9),
            triggers[0]["percentage"] / 100,
        )

    def _severity_trend(self, df: pd.DataFrame) -> Optional[Dict[str, Any]]:
        slope = severity_slope(df)
        if slope is None:
            return None
        if slope > 0.02:
            trend, description = "worsening", "Episode severity has been rising"
        elif slope < -0.02:
            trend, description = "improving", "Episode severity has been easing"
        else:
            trend, description = "stable", "Episode severity has been steady"
        return _pattern(
            "severity", "severity_trend", description,
            {
                "slope_per_day": round(slope, 4),
                "trend": trend,
                "average_severity": round(float(df["severity_score"].mean()), 2),
            },
            min(0.4 + 0.02 * len(df), 0.9),
            min(abs(slope) * 10, 1.0),
        )

    def _sequences(self, df: pd.DataFrame) -> List[Dict[str, Any]]:
        out = []
        for seq in episode_sequences(df, SEQUENCE_MAX_GAP_HOURS, SEQUENCE_MIN_OCCURRENCES):
            data = dict(seq)
            data["sequence_type"] = f"{seq['from_type']}_to_{seq['expected_next']}"
            out.append(_pattern(
                "cascade", "episode_sequences",
                f"{seq['from_type']} is often followed by {seq['expected_next']} "
                f"within {round(seq['average_gap_hours'])} hours",
                data,
                min(0.5 + 0.1 * seq["occurrences"], 0.9),
                seq["follow_rate"],
            ))
        return out

    # ─── Public surface ────────────────────────────────────

    def get_user_patterns(self, user_id: int,
                          episode_type: Optional[str] = None) -> Dict[str, List[Dict[str, Any]]]:
        """Pattern groups for the user (optionally one episode type); empty groups omitted."""
        typed = self._history(user_id, episode_type)
        groups: Dict[str, List[Dict[str, Any]]] = {}

        if len(typed) >= MIN_PATTERN_EPISODES:
            for detector in (self._time_of_day, self._day_of_week):
                found = detector(typed)
                if found:
                    groups.setdefault("temporal", []).append(found)
            trigger = self._common_triggers(typed)
            if trigger:
                groups["trigger"] = [trigger]
            severity = self._severity_trend(typed)
            if severity:
                groups["severity"] = [severity]

        everything = typed if episode_type is None else self._history(user_id)
        cascades = self._sequences(everything)
        if episode_type is not None:
            cascades = [
                c for c in cascades
                if episode_type in (c["data"]["from_type"], c["data"]["expected_next"])
            ]
        if cascades:
            groups["cascade"] = cascades

        log.debug("User %s patterns (%s): %s", user_id, episode_type or "all",
                  {k: len(v) for k, v in groups.items()})
        return groups

    def check_active_sequence(self, user_id: int,
                              sequence_data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Report the sequence when the user's latest episode is its head and
        the usual gap has not elapsed yet."""
        now = self.clock()
        gap = float(sequence_data.get("average_gap_hours") or SEQUENCE_MAX_GAP_HOURS)
        recent = self.store.get_episodes(user_id, now - timedelta(hours=gap), now)
        if not recent:
            return None
        latest = recent[-1]
        if latest.episode_type != sequence_data.get("from_type"):
            return None

        elapsed = (now - latest.episode_date).total_seconds() / 3600.0
        remaining = max(1, round(gap - elapsed))
        return {
            "type": sequence_data.get("sequence_type")
            or f"{sequence_data['from_type']}_to_{sequence_data['expected_next']}",
            "expected_next": sequence_data["expected_next"],
            "prevention_window": f"Next {remaining} hours",
            "hours_since_trigger": round(elapsed, 2),
        }

    def calculate_risk_score(self, user_id: int, episode_type: str, window: str) -> float:
        patterns = self.get_user_patterns(user_id, episode_type)
        if not patterns:
            return BASE_RISK_NO_PATTERNS

        components: Dict[str, float] = {}
        if "temporal" in patterns:
            components["temporal"] = self._temporal_risk(patterns["temporal"], window)
        if "trigger" in patterns:
            components["trigger"] = patterns["trigger"][0]["significance"]
        if "severity" in patterns:
            components["severity"] = self._severity_risk(patterns["severity"][0])
        if "cascade" in patterns:
            components["cascade"] = self._cascade_risk(user_id, episode_type, patterns["cascade"])

        weight_sum = sum(RISK_COMPONENT_WEIGHTS[k] for k in components)
        score = sum(RISK_COMPONENT_WEIGHTS[k] * v for k, v in components.items())
        if weight_sum > 0:
            score /= weight_sum
        return max(0.0, min(score, 1.0))

    # ─── Risk components ───────────────────────────────────

    @staticmethod
    def _temporal_risk(temporal: List[Dict[str, Any]], window: str) -> float:
        by_subtype = {p["pattern_subtype"]: p for p in temporal}
        preferred = "time_of_day" if window in HOURLY_WINDOWS else "day_of_week"
        chosen = by_subtype.get(preferred) or temporal[0]
        return min(chosen["significance"], 1.0)

    @staticmethod
    def _severity_risk(pattern: Dict[str, Any]) -> float:
        data = pattern["data"]
        level = data["average_severity"] / 10.0
        # slope of +/-2 points per day saturates the trend term
        trend = max(-1.0, min(1.0, data["slope_per_day"] / 2.0))
        return max(0.0, min(1.0, 0.5 * level + 0.5 * (0.5 + trend / 2.0)))

    def _cascade_risk(self, user_id: int, episode_type: str,
                      cascades: List[Dict[str, Any]]) -> float:
        for pattern in cascades:
            data = pattern["data"]
            if data["expected_next"] != episode_type:
                continue
            if self.check_active_sequence(user_id, data):
                return 0.8
        return 0.2
