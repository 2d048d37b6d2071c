"""
Episode Correlation Engine
==========================
Finds time-windowed relationships between a user's episodes, scores them,
persists the significant ones and surfaces recurring patterns.

Pipeline for one new episode (detect_correlations):
  1. Gate       : episode exists and the user has >= 5 episodes
  2. Neighbours : same-user episodes within +/- 7 days, compatible types only
  3. Scoring    : type from signed hour gap, weighted strength, evidence confidence
  4. Upsert     : one row per unordered pair; re-detection refreshes scores in place
  5. Patterns   : per-user lock, every threshold {3,5,10,20} fires exactly once
  6. AI (opt.)  : bounded call, rows with confidence >= 0.7 kept separately

Read side:
  - get_user_correlations      grouped insights with templated titles/actions
  - get_correlation_risk_factors  strong, recent, recurring groups for the forecast

Maintenance:
  - run_daily_analysis  re-scan recently active users, then drop weak stale rows
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from ai_service import call_with_timeout
from collaborators import AIService, CorrelationStore, EpisodeStore, EpisodeTypeRegistry
from constants import (
    ACTIVE_USER_DAYS,
    AI_CORRELATION_MIN_CONFIDENCE,
    BONUS_SHARED_TRIGGER,
    CLEANUP_MAX_AGE_DAYS,
    CLEANUP_MAX_STRENGTH,
    CONCURRENT_MAX_HOURS,
    CONFIDENCE_FLOOR,
    CONFIDENCE_STEPS,
    CORRELATION_WINDOW_DAYS,
    DIRECT_TRIGGER_MAX_HOURS,
    MIN_CORRELATION_STRENGTH,
    MIN_EPISODES_FOR_CORRELATION,
    PATTERN_THRESHOLDS,
    RESCAN_EPISODE_DAYS,
    RISK_FACTOR_LOOKBACK_DAYS,
    RISK_FACTOR_MIN_OCCURRENCES,
    RISK_FACTOR_MIN_PRIMARY_RISK,
    RISK_FACTOR_MIN_STRENGTH,
    SEVERITY_PROXIMITY_FLOOR,
    SEVERITY_PROXIMITY_STEPS,
    TIME_PROXIMITY_FLOOR,
    TIME_PROXIMITY_STEPS,
    WEIGHT_BASE_STRENGTH,
    WEIGHT_HISTORICAL,
    WEIGHT_SEVERITY_PROXIMITY,
    WEIGHT_TIME_PROXIMITY,
)
from events import CORRELATION_DISCOVERED, CORRELATION_PATTERN_DETECTED, EventBus
from models import Correlation, CorrelationPattern, Episode

log = logging.getLogger("correlation_engine")

RiskFunction = Callable[[int, str, str], float]

PATTERN_LEVEL_RANK = {level: i for i, (_n, level) in enumerate(PATTERN_THRESHOLDS)}

TITLE_TEMPLATES = {
    "triggers": "{primary} Often Triggers {related}",
    "triggered_by": "{primary} Often Triggered by {related}",
    "precedes": "{primary} Frequently Precedes {related}",
    "follows": "{primary} Frequently Follows {related}",
    "concurrent": "{primary} and {related} Often Occur Together",
}

DESCRIPTION_TEMPLATES = {
    "triggers": "{primary} episodes appear to trigger {related} episodes.",
    "triggered_by": "{primary} episodes appear to be triggered by {related} episodes.",
    "precedes": "{primary} episodes tend to occur before {related} episodes.",
    "follows": "{primary} episodes tend to follow {related} episodes.",
    "concurrent": "{primary} and {related} episodes occur at nearly the same time.",
}


# ─── Pure scoring helpers ──────────────────────────────────

def time_difference(primary: Episode, related: Episode) -> Dict[str, float]:
    """Signed hours (negative = primary first), absolute hours and whole days."""
    hours = (primary.episode_date - related.episode_date).total_seconds() / 3600.0
    return {"hours": hours, "absolute_hours": abs(hours), "days": int(abs(hours) // 24)}


def classify_correlation(hours: float) -> str:
    absolute = abs(hours)
    if absolute <= CONCURRENT_MAX_HOURS:
        return "concurrent"
    if hours < 0:
        return "triggers" if absolute <= DIRECT_TRIGGER_MAX_HOURS else "precedes"
    return "triggered_by" if absolute <= DIRECT_TRIGGER_MAX_HOURS else "follows"


def time_proximity_factor(absolute_hours: float) -> float:
    for max_hours, factor in TIME_PROXIMITY_STEPS:
        if absolute_hours <= max_hours:
            return factor
    return TIME_PROXIMITY_FLOOR


def severity_proximity_factor(severity_a: float, severity_b: float) -> float:
    delta = abs(float(severity_a) - float(severity_b))
    for max_delta, factor in SEVERITY_PROXIMITY_STEPS:
        if delta <= max_delta:
            return factor
    return SEVERITY_PROXIMITY_FLOOR


def evidence_confidence(prior_count: int) -> float:
    for minimum, confidence in CONFIDENCE_STEPS:
        if prior_count >= minimum:
            return confidence
    return CONFIDENCE_FLOOR


def correlation_factors(primary: Episode, related: Episode) -> List[str]:
    factors = []
    hour_gap = abs(primary.episode_date.hour - related.episode_date.hour)
    if min(hour_gap, 24 - hour_gap) <= 2:
        factors.append("similar_time_of_day")
    if primary.episode_date.weekday() == related.episode_date.weekday():
        factors.append("same_day_of_week")
    if primary.location and primary.location == related.location:
        factors.append("same_location")
    if primary.has_biological_factors and related.has_biological_factors:
        factors.append("biological_factors_present")
    return factors


def insight_confidence(occurrence_count: int, average_strength: float) -> float:
    confidence = 0.5
    if occurrence_count >= 20:
        confidence += 0.3
    elif occurrence_count >= 10:
        confidence += 0.2
    elif occurrence_count >= 5:
        confidence += 0.1
    confidence += average_strength * 0.2
    return min(confidence, 1.0)


def group_correlations(rows: List[Correlation]) -> "OrderedDict[Tuple[str, str, str], List[Correlation]]":
    groups: "OrderedDict[Tuple[str, str, str], List[Correlation]]" = OrderedDict()
    for row in rows:
        groups.setdefault((row.primary_type, row.related_type, row.correlation_type), []).append(row)
    return groups


class CorrelationEngine:
    """
    Detects, stores and summarises episode correlations for one deployment.

    Collaborators are injected; nothing here reaches for module globals.
    """

    def __init__(
        self,
        episode_store: EpisodeStore,
        correlation_store: CorrelationStore,
        registry: EpisodeTypeRegistry,
        risk_function: Optional[RiskFunction] = None,
        ai_service: Optional[AIService] = None,
        events: Optional[EventBus] = None,
        clock: Callable[[], datetime] = datetime.now,
        ai_timeout_seconds: float = 10.0,
    ):
        self.episodes = episode_store
        self.correlations = correlation_store
        self.registry = registry
        self.risk_function = risk_function
        self.ai_service = ai_service
        self.events = events or EventBus()
        self.clock = clock
        self.ai_timeout_seconds = ai_timeout_seconds

        self._user_locks: Dict[int, threading.Lock] = {}
        self._user_locks_guard = threading.Lock()

    def _user_lock(self, user_id: int) -> threading.Lock:
        with self._user_locks_guard:
            return self._user_locks.setdefault(user_id, threading.Lock())

    # ─── Detection ─────────────────────────────────────────

    def detect_correlations(self, episode_id: int, use_ai: bool = True) -> Dict[str, Any]:
        """Score the episode against its neighbours and persist what matters."""
        summary: Dict[str, Any] = {
            "status": "ok",
            "episode_id": episode_id,
            "compared": 0,
            "inserted": 0,
            "updated": 0,
            "patterns": 0,
            "ai_correlations": 0,
        }

        episode = self.episodes.get_episode(episode_id)
        if episode is None:
            log.info("Episode %s not found; skipping correlation detection", episode_id)
            summary["status"] = "not_found"
            return summary

        if self.episodes.count_episodes(episode.user_id) < MIN_EPISODES_FOR_CORRELATION:
            log.debug("User %s has too few episodes for correlation", episode.user_id)
            summary["status"] = "insufficient_data"
            return summary

        window = timedelta(days=CORRELATION_WINDOW_DAYS)
        nearby = self.episodes.get_episodes(
            episode.user_id, episode.episode_date - window, episode.episode_date + window
        )

        for other in nearby:
            if other.episode_id == episode.episode_id:
                continue
            if not self.registry.can_correlate(episode.episode_type, other.episode_type):
                continue
            summary["compared"] += 1

            correlation = self.calculate_correlation(episode, other)
            if correlation.correlation_strength < MIN_CORRELATION_STRENGTH:
                continue

            outcome, stored = self._upsert(correlation)
            summary[outcome] += 1
            if outcome == "inserted":
                self.events.publish(CORRELATION_DISCOVERED, user_id=episode.user_id,
                                    correlation=stored)
                summary["patterns"] += len(self._check_patterns(stored))

        if use_ai and self.ai_service is not None:
            summary["ai_correlations"] = self._run_ai_analysis(episode.user_id)

        log.debug("Correlation pass for episode %s: %s", episode_id, summary)
        return summary

    def calculate_correlation(self, primary: Episode, related: Episode) -> Correlation:
        diff = time_difference(primary, related)
        correlation_type = classify_correlation(diff["hours"])

        strength = WEIGHT_BASE_STRENGTH * self.registry.base_correlation_strength(
            primary.episode_type, related.episode_type
        )
        strength += WEIGHT_TIME_PROXIMITY * time_proximity_factor(diff["absolute_hours"])
        strength += WEIGHT_SEVERITY_PROXIMITY * severity_proximity_factor(
            primary.severity_score, related.severity_score
        )
        if primary.trigger_category and primary.trigger_category == related.trigger_category:
            strength += BONUS_SHARED_TRIGGER
        historical = self.correlations.average_strength(
            primary.user_id, primary.episode_type, related.episode_type
        )
        strength += WEIGHT_HISTORICAL * (historical or 0.0)
        strength = max(0.0, min(1.0, strength))

        prior = self.correlations.count_correlations(
            primary.user_id, primary.episode_type, related.episode_type, correlation_type
        )

        return Correlation(
            user_id=primary.user_id,
            primary_episode_id=primary.episode_id,
            primary_type=primary.episode_type,
            related_episode_id=related.episode_id,
            related_type=related.episode_type,
            correlation_type=correlation_type,
            time_offset_hours=round(diff["hours"], 2),
            correlation_strength=round(strength, 4),
            confidence_score=evidence_confidence(prior),
            factors=correlation_factors(primary, related),
        )

    def _upsert(self, correlation: Correlation) -> Tuple[str, Correlation]:
        # Find and insert are atomic per user
        with self._user_lock(correlation.user_id):
            existing = self.correlations.find_correlation(
                correlation.primary_episode_id, correlation.related_episode_id
            )
            if existing is not None:
                # Orientation of the first detection is kept; only scores move.
                self.correlations.update_correlation_scores(
                    existing.correlation_id,
                    correlation.correlation_strength,
                    correlation.confidence_score,
                )
                existing.correlation_strength = correlation.correlation_strength
                existing.confidence_score = correlation.confidence_score
                return "updated", existing

            correlation.discovered_date = self.clock()
            self.correlations.insert_correlation(correlation)
            return "inserted", correlation

    # ─── Patterns ──────────────────────────────────────────

    def _check_patterns(self, correlation: Correlation) -> List[CorrelationPattern]:
        """Emit every threshold the group has reached but not yet recorded."""
        user_id = correlation.user_id
        subtype = f"{correlation.primary_type}_to_{correlation.related_type}"
        emitted: List[CorrelationPattern] = []

        with self._user_lock(user_id):
            count = self.correlations.count_correlations(
                user_id, correlation.primary_type, correlation.related_type,
                correlation.correlation_type,
            )
            recorded = self.correlations.get_pattern_levels(
                user_id, subtype, correlation.correlation_type
            )
            due = [level for threshold, level in PATTERN_THRESHOLDS
                   if count >= threshold and level not in recorded]
            if not due:
                return emitted

            group = self.correlations.get_group_correlations(
                user_id, correlation.primary_type, correlation.related_type,
                correlation.correlation_type,
            )
            now = self.clock()
            first_seen = min((c.discovered_date for c in group if c.discovered_date), default=now)
            avg_strength = sum(c.correlation_strength for c in group) / len(group)
            avg_offset = sum(abs(c.time_offset_hours) for c in group) / len(group)
            avg_confidence = sum(c.confidence_score for c in group) / len(group)

            for level in due:
                pattern = CorrelationPattern(
                    user_id=user_id,
                    pattern_subtype=subtype,
                    pattern_level=level,
                    correlation_type=correlation.correlation_type,
                    occurrence_count=count,
                    average_strength=round(avg_strength, 4),
                    average_time_offset=round(avg_offset, 2),
                    confidence_score=round(avg_confidence, 4),
                    first_detected=first_seen,
                    last_detected=now,
                )
                if self.correlations.insert_pattern(pattern):
                    emitted.append(pattern)

        for pattern in emitted:
            log.info("Pattern %s reached '%s' for user %s (%d occurrences)",
                     pattern.pattern_subtype, pattern.pattern_level, user_id,
                     pattern.occurrence_count)
            self.events.publish(CORRELATION_PATTERN_DETECTED, user_id=user_id, pattern=pattern)
        return emitted

    # ─── AI ────────────────────────────────────────────────

    def _run_ai_analysis(self, user_id: int) -> int:
        try:
            found = call_with_timeout(
                self.ai_service.detect_correlations, self.ai_timeout_seconds,
                user_id, CORRELATION_WINDOW_DAYS,
            )
        except Exception as e:
            log.warning("AI correlation analysis failed for user %s: %s", user_id, e)
            return 0

        saved = 0
        now = self.clock()
        for item in found or []:
            try:
                confidence = float(item.get("confidence", 0))
            except (TypeError, ValueError, AttributeError):
                continue
            if confidence >= AI_CORRELATION_MIN_CONFIDENCE:
                self.correlations.insert_ai_correlation(user_id, item, now)
                saved += 1
        return saved

    # ─── Insights ──────────────────────────────────────────

    def get_user_correlations(self, user_id: int, limit: int = 10) -> List[Dict[str, Any]]:
        """Grouped, templated insights, strongest (strength x confidence) first."""
        groups = group_correlations(self.correlations.get_correlations(user_id))
        if not groups:
            return []

        best_level: Dict[Tuple[str, str], str] = {}
        for pattern in self.correlations.get_patterns(user_id):
            key = (pattern.pattern_subtype, pattern.correlation_type)
            current = best_level.get(key)
            if current is None or PATTERN_LEVEL_RANK.get(pattern.pattern_level, -1) > PATTERN_LEVEL_RANK.get(current, -1):
                best_level[key] = pattern.pattern_level

        insights = []
        for (primary_type, related_type, correlation_type), rows in groups.items():
            count = len(rows)
            summary = {
                "primary_type": primary_type,
                "related_type": related_type,
                "correlation_type": correlation_type,
                "occurrence_count": count,
                "average_strength": round(sum(r.correlation_strength for r in rows) / count, 4),
                "average_time_offset_hours": round(
                    sum(abs(r.time_offset_hours) for r in rows) / count, 2
                ),
            }
            names = {
                "primary": self._display_name(primary_type),
                "related": self._display_name(related_type),
            }
            insights.append({
                "title": TITLE_TEMPLATES.get(
                    correlation_type, "{primary} Correlates with {related}"
                ).format(**names),
                "description": DESCRIPTION_TEMPLATES.get(
                    correlation_type, "{primary} and {related} episodes are related."
                ).format(**names),
                "strength": summary["average_strength"],
                "average_time_offset_hours": summary["average_time_offset_hours"],
                "confidence": round(insight_confidence(count, summary["average_strength"]), 4),
                "action_items": self._action_items(summary, names),
                "pattern_level": best_level.get((f"{primary_type}_to_{related_type}", correlation_type)),
                "data": summary,
            })

        insights.sort(key=lambda i: i["strength"] * i["confidence"], reverse=True)
        return insights[:limit] if limit else insights

    @staticmethod
    def _action_items(summary: Dict[str, Any], names: Dict[str, str]) -> List[str]:
        actions = []
        if summary["correlation_type"] in ("triggers", "precedes"):
            actions.append(f"Monitor for early signs of {names['primary']} to prevent {names['related']}")
            actions.append(
                f"Implement coping strategies for {names['related']} as soon as you notice "
                f"{names['primary']} symptoms"
            )
        if summary["correlation_type"] == "concurrent":
            actions.append(
                f"Address both {names['primary']} and {names['related']} together with "
                f"comprehensive strategies"
            )
        if summary["average_time_offset_hours"] < 24:
            actions.append("Consider keeping a detailed log of triggers and symptoms throughout the day")
        else:
            actions.append("Look for patterns in your weekly routine that might contribute to this correlation")
        return actions

    def _display_name(self, episode_type: str) -> str:
        cfg = self.registry.get_type_config(episode_type)
        if cfg and cfg.get("display_name"):
            return cfg["display_name"]
        return episode_type.replace("_", " ").title()

    # ─── Forecast feed ─────────────────────────────────────

    def get_correlation_risk_factors(self, user_id: int, window: str) -> List[Dict[str, Any]]:
        """Strong, recent, recurring correlations whose primary type is currently risky."""
        if self.risk_function is None:
            return []

        since = self.clock() - timedelta(days=RISK_FACTOR_LOOKBACK_DAYS)
        rows = self.correlations.get_correlations(
            user_id, min_strength=RISK_FACTOR_MIN_STRENGTH, since=since
        )

        grouped = []
        for (primary_type, related_type, correlation_type), group in group_correlations(rows).items():
            if len(group) < RISK_FACTOR_MIN_OCCURRENCES:
                continue
            n = len(group)
            grouped.append({
                "primary_type": primary_type,
                "related_type": related_type,
                "correlation_type": correlation_type,
                "strength": sum(c.correlation_strength for c in group) / n,
                "confidence": sum(c.confidence_score for c in group) / n,
                "time_offset": sum(abs(c.time_offset_hours) for c in group) / n,
                "occurrence_count": n,
            })
        grouped.sort(key=lambda g: g["strength"], reverse=True)

        type_risk: Dict[str, float] = {}
        factors = []
        for group in grouped:
            primary_type = group["primary_type"]
            if primary_type not in type_risk:
                type_risk[primary_type] = float(self.risk_function(user_id, primary_type, window))
            primary_risk = type_risk[primary_type]
            if primary_risk <= RISK_FACTOR_MIN_PRIMARY_RISK:
                continue
            factors.append({
                "primary_type": primary_type,
                "related_type": group["related_type"],
                "correlation_type": group["correlation_type"],
                "strength": round(group["strength"], 4),
                "risk_increase": round(primary_risk * group["strength"], 4),
                "time_offset": round(group["time_offset"], 2),
                "confidence": round(group["confidence"], 4),
                "occurrence_count": group["occurrence_count"],
                "factor": (
                    f"{self._display_name(primary_type)} episodes may trigger "
                    f"{self._display_name(group['related_type'])} "
                    f"({group['strength'] * 100:.0f}% correlation)"
                ),
            })
        return factors

    # ─── Maintenance ───────────────────────────────────────

    def run_daily_analysis(self) -> Dict[str, Any]:
        """Re-scan recently active users, then delete weak stale correlations."""
        now = self.clock()
        users = self.episodes.get_active_user_ids(now - timedelta(days=ACTIVE_USER_DAYS))
        log.info("Daily correlation analysis: %d active users", len(users))

        totals = {"users": len(users), "episodes": 0, "inserted": 0, "updated": 0,
                  "patterns": 0, "failed_users": 0, "deleted": 0}
        for user_id in users:
            try:
                episodes = self.episodes.get_episodes(
                    user_id, now - timedelta(days=RESCAN_EPISODE_DAYS), now
                )
                for episode in episodes:
                    result = self.detect_correlations(episode.episode_id, use_ai=False)
                    totals["episodes"] += 1
                    for key in ("inserted", "updated", "patterns"):
                        totals[key] += result[key]
            except Exception as e:
                totals["failed_users"] += 1
                log.error("Correlation re-scan failed for user %s: %s", user_id, e)

        totals["deleted"] = self.cleanup_old_correlations()
        log.info("Daily correlation analysis done: %s", totals)
        return totals

    def cleanup_old_correlations(self) -> int:
        cutoff = self.clock() - timedelta(days=CLEANUP_MAX_AGE_DAYS)
        deleted = self.correlations.delete_weak_correlations(CLEANUP_MAX_STRENGTH, cutoff)
        if deleted:
            log.info("Deleted %d weak correlations older than %s", deleted, cutoff.date())
        return deleted
