"""
Unified Forecast Engine
=======================
Risk forecasts for a user over one of four windows (24_hour, 3_day, 7_day,
30_day), gated by membership tier and cached per (user, window).

generate_unified_forecast():
  1. Window     : unknown name -> ValueError
  2. Access     : tier below the window minimum -> structured denial dict
  3. Cache      : fresh entry returned as-is unless force_refresh
  4. Build      : contributors -> correlation nudge -> window algorithms
                  -> risk band -> prevention plan -> insights -> AI blend
                  -> merged high-risk periods
  5. Persist    : cache with cadence TTL, compact forecast log, event

Scheduled refresh (update_hourly_forecasts / update_daily_forecasts) walks
users with an episode in the last 30 days and rebuilds the windows whose
update cadence matches.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from ai_service import call_with_timeout
from collaborators import (
    AIService,
    BiologicalDataSource,
    CopingStrategySource,
    EpisodeStore,
    EpisodeTypeRegistry,
    ForecastCache,
    ForecastLogStore,
    MembershipService,
    PatternSource,
    UserPreferences,
)
from constants import (
    AI_BLEND_WEIGHT,
    AI_DEFAULT_CONFIDENCE,
    AI_TIERS,
    CORRELATION_RISK_NUDGE,
    DEFAULT_TTL_SECONDS,
    DEFAULT_WINDOW,
    FORECAST_ACTIVE_USER_DAYS,
    FORECAST_WINDOWS,
    MULTI_PATTERN_THRESHOLD,
    RISK_TREND_DAYS,
    RISK_TREND_DELTA,
    RISK_TREND_MIN_LOGS,
    STABILITY_DEFAULT_DAYS,
    STABILITY_MIN_DAYS,
    STABILITY_SEVERITY,
    UPDATE_FREQUENCY_SECONDS,
)
from events import FORECAST_GENERATED, EventBus
from forecast_algorithms import AlgorithmContext, apply_algorithm, bump, validate_algorithms
from forecast_cache import forecast_cache_key
from membership import has_access, normalize_tier
from models import ForecastWindow
from prevention import build_prevention_plan, determine_risk_level

log = logging.getLogger("forecast_engine")

ACCESS_DENIED = "insufficient_membership"
AI_DEFAULT_INSIGHT_CONFIDENCE = 0.7


def is_access_denied(result: Any) -> bool:
    return isinstance(result, dict) and result.get("error") == ACCESS_DENIED


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _iso(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else value


def merge_high_risk_periods(periods: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Sort by start and fold overlapping (or touching) periods together.

    A merged period keeps the latest end, the highest risk score and the
    reasons of every member in first-seen order. The result is disjoint.
    """
    ordered = sorted(
        ({**p, "start": _as_datetime(p["start"]), "end": _as_datetime(p["end"])} for p in periods),
        key=lambda p: p["start"],
    )
    merged: List[Dict[str, Any]] = []
    for period in ordered:
        reasons = list(period.get("reasons") or [])
        if merged and period["start"] <= merged[-1]["end"]:
            current = merged[-1]
            current["end"] = max(current["end"], period["end"])
            current["risk_score"] = max(current["risk_score"], float(period.get("risk_score", 0)))
            for reason in reasons:
                if reason not in current["reasons"]:
                    current["reasons"].append(reason)
        else:
            unique: List[str] = []
            for reason in reasons:
                if reason not in unique:
                    unique.append(reason)
            merged.append({
                "start": period["start"],
                "end": period["end"],
                "risk_score": float(period.get("risk_score", 0)),
                "reasons": unique,
            })
    return merged


class ForecastEngine:
    """
    Builds and caches per-window risk forecasts.

    Every collaborator is injected. The algorithm names of every configured
    window and the contributors of every enabled episode type are checked
    here, so a misconfigured deployment fails at startup with KeyError.
    """

    def __init__(
        self,
        registry: EpisodeTypeRegistry,
        membership: MembershipService,
        episode_store: EpisodeStore,
        log_store: ForecastLogStore,
        cache: ForecastCache,
        pattern_source: Optional[PatternSource] = None,
        correlation_engine: Any = None,
        preferences: Optional[UserPreferences] = None,
        coping: Optional[CopingStrategySource] = None,
        biology: Optional[BiologicalDataSource] = None,
        ai_service: Optional[AIService] = None,
        ai_enabled: bool = True,
        events: Optional[EventBus] = None,
        clock: Callable[[], datetime] = datetime.now,
        ai_timeout_seconds: float = 10.0,
        windows: Optional[Dict[str, Dict[str, Any]]] = None,
    ):
        self.registry = registry
        self.membership = membership
        self.episodes = episode_store
        self.logs = log_store
        self.cache = cache
        self.patterns = pattern_source
        self.correlation_engine = correlation_engine
        self.preferences = preferences
        self.coping = coping
        self.biology = biology
        self.ai_service = ai_service
        self.ai_enabled = ai_enabled
        self.events = events or EventBus()
        self.clock = clock
        self.ai_timeout_seconds = ai_timeout_seconds

        self.windows = {
            key: ForecastWindow.from_config(key, cfg)
            for key, cfg in (windows or FORECAST_WINDOWS).items()
        }
        for window in self.windows.values():
            validate_algorithms(window.algorithms)
        self.registry.validate_contributors()

    # ─── Public API ────────────────────────────────────────

    def window(self, window: str) -> ForecastWindow:
        if window not in self.windows:
            raise ValueError(f"Unknown forecast window: {window}")
        return self.windows[window]

    def ttl_seconds(self, window: str) -> int:
        return UPDATE_FREQUENCY_SECONDS.get(self.window(window).update_frequency, DEFAULT_TTL_SECONDS)

    def generate_unified_forecast(self, user_id: int, window: str = DEFAULT_WINDOW,
                                  force_refresh: bool = False) -> Dict[str, Any]:
        cfg = self.window(window)
        tier = normalize_tier(self.membership.get_user_tier(user_id))
        if not has_access(tier, cfg.min_membership):
            log.info("User %s (tier=%s) denied %s forecast", user_id, tier, window)
            return {
                "error": ACCESS_DENIED,
                "message": f"The {cfg.name} requires {normalize_tier(cfg.min_membership).title()} membership",
                "required_level": normalize_tier(cfg.min_membership),
                "current_level": tier,
                "window": window,
            }

        key = forecast_cache_key(user_id, window)
        if not force_refresh:
            cached = self.cache.get(key)
            if cached is not None:
                log.debug("Forecast cache hit %s", key)
                return cached

        forecast = self.build_forecast(user_id, window, tier)
        self.cache.set(key, forecast, self.ttl_seconds(window))
        self._log_forecast(forecast)
        self.events.publish(
            FORECAST_GENERATED,
            user_id=user_id,
            window=window,
            risk_score=forecast["overall_risk"],
            risk_level=forecast["risk_level"]["key"],
        )
        return forecast

    def build_forecast(self, user_id: int, window: str, tier: str = "basic") -> Dict[str, Any]:
        cfg = self.window(window)
        now = self.clock()
        forecast: Dict[str, Any] = {
            "user_id": user_id,
            "window": window,
            "generated_at": now,
            "expires_at": now + timedelta(seconds=self.ttl_seconds(window)),
            "overall_risk": 0.0,
            "confidence": 0.0,
            "has_data": False,
            "episode_risks": {},
            "high_risk_periods": [],
            "active_patterns": [],
            "biological_factors": [],
            "correlation_risks": [],
            "cascade_warning": None,
            "immediate_cascade_risk": False,
            "prevention_plan": {},
            "insights": [],
            "ai_enhanced": False,
        }

        self._apply_contributors(forecast, user_id, window)
        self._apply_correlation_risks(forecast, user_id, window)

        ctx = AlgorithmContext(
            user_id=user_id,
            window=window,
            horizon_hours=cfg.hours,
            now=now,
            episodes=self.episodes,
            patterns=self.patterns,
            biology=self.biology,
        )
        for name in cfg.algorithms:
            apply_algorithm(name, forecast, ctx)

        self._apply_risk_level(forecast, user_id)
        self._add_insights(forecast, user_id, now)
        if not forecast["has_data"]:
            forecast["insights"].append({
                "type": "no_data",
                "message": "Not enough episode history yet to build a personal forecast",
                "severity": "info",
                "action": "Log episodes as they happen to sharpen your forecast",
            })

        if self._ai_allowed(tier) and self._apply_ai(forecast, user_id, window):
            self._apply_risk_level(forecast, user_id)

        forecast["high_risk_periods"] = merge_high_risk_periods(forecast["high_risk_periods"])
        log.info("Forecast user=%s window=%s risk=%.3f level=%s ai=%s",
                 user_id, window, forecast["overall_risk"], forecast["risk_level"]["key"],
                 forecast["ai_enhanced"])
        return forecast

    # ─── Build steps ───────────────────────────────────────

    def _user_episode_types(self, user_id: int) -> List[str]:
        if self.preferences is not None:
            wanted = list(self.preferences.get_enabled_episode_types(user_id))
        else:
            wanted = self.registry.get_episode_types()
        return [t for t in wanted if self.registry.is_enabled(t)]

    def _apply_contributors(self, forecast: Dict[str, Any], user_id: int, window: str) -> None:
        weighted = 0.0
        total_weight = 0.0
        confidences = []

        for episode_type in self._user_episode_types(user_id):
            contributor = self.registry.get_contributor(episode_type)
            if contributor is None:
                continue
            result = contributor.contribute_to_forecast(user_id, window)
            if result is None:
                continue

            cfg = self.registry.get_type_config(episode_type) or {}
            weight = float(result.get("weight", cfg.get("weight", 1.0)))
            risk = float(result["risk_score"])
            weighted += risk * weight
            total_weight += weight
            confidences.append(float(result.get("confidence", 0)))

            periods = list(result.get("high_risk_periods") or [])
            forecast["episode_risks"][episode_type] = {
                "type": episode_type,
                "name": self.registry.display_name(episode_type),
                "color": self.registry.color(episode_type),
                "risk_score": round(risk, 4),
                "confidence": result.get("confidence", 0),
                "factors": list(result.get("contributing_factors") or []),
                "high_risk_periods": periods,
                "recommendations": list(result.get("recommendations") or []),
            }
            forecast["high_risk_periods"].extend(periods)

        if total_weight > 0:
            forecast["overall_risk"] = max(0.0, min(1.0, weighted / total_weight))
            forecast["confidence"] = round(sum(confidences) / len(confidences), 4)
            forecast["has_data"] = True

    def _apply_correlation_risks(self, forecast: Dict[str, Any], user_id: int, window: str) -> None:
        if self.correlation_engine is None:
            return
        factors = self.correlation_engine.get_correlation_risk_factors(user_id, window)
        forecast["correlation_risks"] = factors
        for factor in factors:
            bump(forecast, float(factor["risk_increase"]) * CORRELATION_RISK_NUDGE)

    def _apply_risk_level(self, forecast: Dict[str, Any], user_id: int) -> None:
        level = determine_risk_level(forecast["overall_risk"])
        forecast["risk_level"] = level
        strategies = self.coping.get_effective_strategies(user_id) if self.coping else []
        contacts = []
        if level["key"] == "critical" and self.preferences is not None:
            contacts = self.preferences.get_emergency_contacts(user_id)
        forecast["prevention_plan"] = build_prevention_plan(
            forecast, level["key"], strategies, contacts
        )

    def _add_insights(self, forecast: Dict[str, Any], user_id: int, now: datetime) -> None:
        insights = forecast["insights"]

        logs = self.logs.get_forecast_logs(user_id, DEFAULT_WINDOW, now - timedelta(days=RISK_TREND_DAYS))
        logs = sorted(logs, key=lambda r: r["created_at"])
        if len(logs) >= RISK_TREND_MIN_LOGS:
            half = len(logs) // 2
            first = [float(r["risk_score"]) for r in logs[:half]]
            second = [float(r["risk_score"]) for r in logs[half:]]
            delta = sum(second) / len(second) - sum(first) / len(first)
            if delta > RISK_TREND_DELTA:
                insights.append({
                    "type": "trend",
                    "message": "Your risk levels have been increasing over the past week",
                    "severity": "warning",
                    "action": "Consider scheduling a check-in with your support team",
                })
            elif delta < -RISK_TREND_DELTA:
                insights.append({
                    "type": "trend",
                    "message": "Your risk levels have been decreasing - great progress!",
                    "severity": "positive",
                    "action": "Keep up with your current strategies",
                })

        if len(forecast["active_patterns"]) > MULTI_PATTERN_THRESHOLD:
            insights.append({
                "type": "pattern",
                "message": "Multiple risk patterns are currently active",
                "severity": "warning",
                "action": "Be extra vigilant with your coping strategies",
            })

        if forecast["correlation_risks"]:
            top = max(forecast["correlation_risks"], key=lambda f: f["risk_increase"])
            insights.append({
                "type": "correlation",
                "message": top["factor"],
                "severity": "info",
                "time_window": "Expected in %d hours" % round(float(top["time_offset"])),
            })

        last_severe = self.episodes.get_last_episode_date(user_id, min_severity=STABILITY_SEVERITY)
        if last_severe is None:
            days_stable = STABILITY_DEFAULT_DAYS
        else:
            days_stable = int((now - last_severe).total_seconds() // 86400)
        if days_stable >= STABILITY_MIN_DAYS:
            insights.append({
                "type": "achievement",
                "message": "You've maintained stability for %d days!" % days_stable,
                "severity": "positive",
                "action": "Celebrate this achievement",
            })

    def _ai_allowed(self, tier: str) -> bool:
        return self.ai_enabled and self.ai_service is not None and normalize_tier(tier) in AI_TIERS

    def _apply_ai(self, forecast: Dict[str, Any], user_id: int, window: str) -> bool:
        """Blend an AI prediction in; False (and no change) when it is missing or fails."""
        try:
            prediction = call_with_timeout(
                self.ai_service.predict_episode_risk, self.ai_timeout_seconds,
                user_id, window, forecast,
            )
        except Exception as e:
            log.warning("AI forecast enhancement failed for user %s/%s: %s", user_id, window, e)
            return False
        if not prediction or not prediction.get("predictions"):
            return False

        try:
            confidence = float(prediction.get("confidence", AI_DEFAULT_CONFIDENCE))
            adjustment = float(prediction.get("risk_adjustment", 0)) * confidence * AI_BLEND_WEIGHT
        except (TypeError, ValueError) as e:
            log.warning("Unusable AI prediction for user %s/%s: %s", user_id, window, e)
            return False

        forecast["ai_enhanced"] = True
        forecast["ai_predictions"] = prediction["predictions"]
        bump(forecast, adjustment)

        for insight in prediction.get("insights") or []:
            if not isinstance(insight, dict) or not insight.get("message"):
                continue
            forecast["insights"].append({
                "type": "ai",
                "message": insight["message"],
                "severity": insight.get("severity", "info"),
                "confidence": insight.get("confidence", AI_DEFAULT_INSIGHT_CONFIDENCE),
            })

        for period in prediction.get("high_risk_periods") or []:
            try:
                forecast["high_risk_periods"].append({
                    "start": _as_datetime(period["start"]),
                    "end": _as_datetime(period["end"]),
                    "risk_score": float(period.get("risk_score", forecast["overall_risk"])),
                    "reasons": list(period.get("reasons") or ["AI-predicted risk period"]),
                })
            except (KeyError, TypeError, ValueError) as e:
                log.debug("Skipping malformed AI period %r: %s", period, e)
        return True

    def _log_forecast(self, forecast: Dict[str, Any]) -> None:
        self.logs.log_forecast({
            "user_id": forecast["user_id"],
            "window": forecast["window"],
            "risk_score": forecast["overall_risk"],
            "confidence": forecast["confidence"],
            "risk_level": forecast["risk_level"]["key"],
            "ai_enhanced": forecast["ai_enhanced"],
            "created_at": forecast["generated_at"],
        })

    # ─── Wire shape ────────────────────────────────────────

    def get_forecast_api_data(self, user_id: int, window: str = DEFAULT_WINDOW) -> Dict[str, Any]:
        forecast = self.generate_unified_forecast(user_id, window)
        if is_access_denied(forecast):
            return forecast

        level = forecast["risk_level"]
        return {
            "window": forecast["window"],
            "generated_at": _iso(forecast["generated_at"]),
            "expires_at": _iso(forecast["expires_at"]),
            "risk": {
                "score": round(forecast["overall_risk"], 4),
                "level": level["key"],
                "description": level["description"],
                "color": level["color"],
            },
            "confidence": forecast["confidence"],
            "episode_risks": [
                {"type": r["type"], "name": r["name"], "risk_score": r["risk_score"], "color": r["color"]}
                for r in forecast["episode_risks"].values()
            ],
            "high_risk_periods": [
                {"start": _iso(p["start"]), "end": _iso(p["end"]),
                 "risk_score": p["risk_score"], "reasons": list(p["reasons"])}
                for p in forecast["high_risk_periods"]
            ],
            "prevention_plan": forecast["prevention_plan"],
            "insights": [
                {"message": i["message"], "severity": i.get("severity", "info"), "action": i.get("action")}
                for i in forecast["insights"]
            ],
            "ai_enhanced": forecast["ai_enhanced"],
        }

    # ─── Scheduled refresh ─────────────────────────────────

    def update_hourly_forecasts(self) -> Dict[str, int]:
        return self._refresh(["hourly"])

    def update_daily_forecasts(self) -> Dict[str, int]:
        return self._refresh(["daily", "6_hours"])

    def _refresh(self, frequencies: List[str]) -> Dict[str, int]:
        windows = [
            key for freq in frequencies
            for key, cfg in self.windows.items() if cfg.update_frequency == freq
        ]
        since = self.clock() - timedelta(days=FORECAST_ACTIVE_USER_DAYS)
        users = self.episodes.get_active_user_ids(since)
        log.info("Refreshing %s forecasts for %d users", ",".join(windows) or "no", len(users))

        totals = {"users": len(users), "generated": 0, "skipped": 0, "failed": 0}
        for user_id in users:
            for window in windows:
                try:
                    result = self.generate_unified_forecast(user_id, window, force_refresh=True)
                except Exception as e:
                    totals["failed"] += 1
                    log.error("Forecast refresh failed for user %s/%s: %s", user_id, window, e)
                    continue
                if is_access_denied(result):
                    totals["skipped"] += 1
                else:
                    totals["generated"] += 1
        return totals
