"""
Forecast Algorithms
===================
Named, additive risk adjustments applied in window order by the forecast
engine. Each algorithm receives the forecast under construction plus an
AlgorithmContext, may bump overall_risk (always clamped to [0, 1]) and may
append to insights / active_patterns / biological_factors /
high_risk_periods.

Registry:
  24_hour   immediate_risk, trigger_exposure, temporal_patterns
  3_day     short_term_patterns, biological_cycles, environmental_factors
  7_day     weekly_patterns, correlation_risks, cascade_prediction
  30_day    monthly_cycles, seasonal_patterns, long_term_trends

Unknown names are rejected by validate_algorithms() when the engine is built.
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from analytics.temporal_stats import (
    DAY_NAMES,
    category_shares,
    episodes_frame,
    format_hour_range,
    severity_slope,
)
from collaborators import BiologicalDataSource, EpisodeStore, PatternSource
from models import Episode

log = logging.getLogger("forecast_algorithms")

Forecast = Dict[str, Any]
Algorithm = Callable[[Forecast, "AlgorithmContext"], None]

ALGORITHMS: Dict[str, Algorithm] = {}

# immediate_risk
BURST_HOURS = 48
BURST_MIN_EPISODES = 3
BURST_RISK = 0.2
CASCADE_PROXIMITY_HOURS = 6
CASCADE_PROXIMITY_RISK = 0.1

# temporal_patterns
PEAK_HOUR_TOLERANCE = 2
HOUR_MATCH_WEIGHT = 0.3
DAY_MATCH_WEIGHT = 0.2

# biological_cycles
MENSTRUAL_PHASE_RISK = {"menstrual": 0.2, "follicular": 0.0, "ovulation": 0.1, "luteal": 0.3}
# (last cycle day of phase, phase) for a 28-day cycle
CYCLE_PHASES = [(5, "menstrual"), (13, "follicular"), (16, "ovulation"), (28, "luteal")]
SLEEP_LOOKBACK_DAYS = 7
SLEEP_MIN_HOURS = 6
SLEEP_DEPRIVATION_RISK = 0.15

# cascade_prediction
CASCADE_RISK = 0.25

# trigger_exposure
TRIGGER_DOMINANT_SHARE = 0.3
TRIGGER_EXPOSURE_HOURS = 24
TRIGGER_EXPOSURE_WEIGHT = 0.15

# short_term_patterns
SHORT_TERM_HOURS = 72
BASELINE_DAYS = 30
SHORT_TERM_RATIO = 1.5
SHORT_TERM_MIN_EPISODES = 2
SHORT_TERM_RISK = 0.1

# environmental_factors
LOCATION_LOOKBACK_DAYS = 30
LOCATION_MIN_EPISODES = 3
LOCATION_HOTSPOT_SHARE = 0.4
LOCATION_RISK = 0.05

# weekly_patterns
WEEKLY_DAY_WEIGHT = 0.1

# correlation_risks
CORRELATION_PERIOD_HOURS = 6
CORRELATION_RISK_WEIGHT = 0.05
CORRELATION_RISK_CAP = 0.15

# monthly_cycles
MONTHLY_LOOKBACK_DAYS = 90
MONTHLY_MIN_EPISODES = 8
MONTHLY_WEEK_SHARE = 0.35
MONTHLY_RISK = 0.1

# seasonal_patterns
SEASONAL_LOOKBACK_DAYS = 365
SEASONAL_MIN_EPISODES = 12
SEASONAL_RATIO = 1.5
SEASONAL_RISK = 0.1

# long_term_trends
TREND_LOOKBACK_DAYS = 90
TREND_MIN_EPISODES = 5
TREND_SLOPE = 0.02
TREND_WORSENING_RISK = 0.1
TREND_IMPROVING_RISK = -0.05


@dataclass
class AlgorithmContext:
    user_id: int
    window: str
    horizon_hours: int
    now: datetime
    episodes: EpisodeStore
    patterns: Optional[PatternSource] = None
    biology: Optional[BiologicalDataSource] = None
    _user_patterns: Optional[Dict[str, List[Dict[str, Any]]]] = field(default=None, repr=False)

    def user_patterns(self) -> Dict[str, List[Dict[str, Any]]]:
        if self.patterns is None:
            return {}
        if self._user_patterns is None:
            self._user_patterns = self.patterns.get_user_patterns(self.user_id)
        return self._user_patterns

    def recent_episodes(self, days: float = 0, hours: float = 0) -> List[Episode]:
        start = self.now - timedelta(days=days, hours=hours)
        return self.episodes.get_episodes(self.user_id, start, self.now)

    @property
    def horizon_end(self) -> datetime:
        return self.now + timedelta(hours=self.horizon_hours)


def register(name: str) -> Callable[[Algorithm], Algorithm]:
    def decorator(fn: Algorithm) -> Algorithm:
        ALGORITHMS[name] = fn
        return fn
    return decorator


def validate_algorithms(names: Iterable[str]) -> None:
    missing = sorted({n for n in names if n not in ALGORITHMS})
    if missing:
        raise KeyError(f"Unknown forecast algorithm(s): {', '.join(missing)}")


def apply_algorithm(name: str, forecast: Forecast, ctx: AlgorithmContext) -> None:
    ALGORITHMS[name](forecast, ctx)


def bump(forecast: Forecast, amount: float) -> float:
    """Add *amount* to overall_risk, clamped to [0, 1]; return the applied change."""
    before = forecast["overall_risk"]
    forecast["overall_risk"] = max(0.0, min(1.0, before + amount))
    return forecast["overall_risk"] - before


def cycle_phase(cycle_day: int) -> Dict[str, Any]:
    """Phase for a day of a 28-day cycle and how many days until it ends."""
    day = ((int(cycle_day) - 1) % 28) + 1
    for last_day, phase in CYCLE_PHASES:
        if day <= last_day:
            return {"phase": phase, "days_until_next_phase": last_day - day + 1}
    return {"phase": "luteal", "days_until_next_phase": 1}


def current_cycle_phase(cycle: Dict[str, Any], now: datetime) -> Optional[Dict[str, Any]]:
    """Move the latest cycle log forward to today.

    A logged cycle_day is advanced by the days since the log. A bare phase
    is only trusted when it was logged today.
    """
    log_date = cycle.get("log_date")
    if isinstance(log_date, datetime):
        log_date = log_date.date()
    age = (now.date() - log_date).days if log_date is not None else 0
    if cycle.get("cycle_day"):
        return cycle_phase(int(cycle["cycle_day"]) + max(age, 0))
    if age == 0 and cycle.get("phase"):
        return {"phase": cycle["phase"],
                "days_until_next_phase": cycle.get("days_until_next_phase")}
    return None


# ─── 24 hour ───────────────────────────────────────────────

@register("immediate_risk")
def immediate_risk(forecast: Forecast, ctx: AlgorithmContext) -> None:
    recent = ctx.recent_episodes(hours=BURST_HOURS)
    if len(recent) >= BURST_MIN_EPISODES:
        bump(forecast, BURST_RISK)
        forecast["insights"].append({
            "type": "warning",
            "message": "Recent episode frequency is elevated",
            "severity": "high",
        })

    last = ctx.episodes.get_last_episode_date(ctx.user_id)
    if last is not None:
        hours_since = (ctx.now - last).total_seconds() / 3600.0
        if 0 <= hours_since < CASCADE_PROXIMITY_HOURS:
            forecast["immediate_cascade_risk"] = True
            bump(forecast, CASCADE_PROXIMITY_RISK)


@register("trigger_exposure")
def trigger_exposure(forecast: Forecast, ctx: AlgorithmContext) -> None:
    trigger_patterns = ctx.user_patterns().get("trigger", [])
    if not trigger_patterns:
        return
    top = trigger_patterns[0]["data"]["triggers"][0]
    share = top["percentage"] / 100
    if share < TRIGGER_DOMINANT_SHARE:
        return
    recent = ctx.recent_episodes(hours=TRIGGER_EXPOSURE_HOURS)
    if not any(e.trigger_category == top["trigger"] for e in recent):
        return
    applied = bump(forecast, share * TRIGGER_EXPOSURE_WEIGHT)
    forecast["active_patterns"].append({
        "type": "trigger",
        "pattern": "trigger_exposure",
        "description": f"Recent exposure to {top['trigger']}, your most common trigger",
        "risk_contribution": round(applied, 4),
    })


@register("temporal_patterns")
def temporal_patterns(forecast: Forecast, ctx: AlgorithmContext) -> None:
    current_hour = ctx.now.hour
    current_dow = (ctx.now.weekday() + 1) % 7

    for pattern in ctx.user_patterns().get("temporal", []):
        data = pattern["data"]
        if pattern["pattern_subtype"] == "time_of_day":
            for peak in data.get("peak_hours", []):
                gap = abs(current_hour - peak["hour"])
                if min(gap, 24 - gap) <= PEAK_HOUR_TOLERANCE:
                    applied = bump(forecast, peak["percentage"] / 100 * HOUR_MATCH_WEIGHT)
                    forecast["active_patterns"].append({
                        "type": "temporal",
                        "pattern": "high_risk_hour",
                        "description": f"Currently in high-risk time period ({format_hour_range(peak['hour'])})",
                        "risk_contribution": round(applied, 4),
                    })
                    break
        elif pattern["pattern_subtype"] == "day_of_week":
            for day in data.get("significant_days", []):
                if day["day"] == current_dow:
                    applied = bump(forecast, day["percentage"] / 100 * DAY_MATCH_WEIGHT)
                    forecast["active_patterns"].append({
                        "type": "temporal",
                        "pattern": "high_risk_day",
                        "description": f"{day['name']} is a high-risk day",
                        "risk_contribution": round(applied, 4),
                    })
                    break


# ─── 3 day ─────────────────────────────────────────────────

@register("short_term_patterns")
def short_term_patterns(forecast: Forecast, ctx: AlgorithmContext) -> None:
    baseline_episodes = ctx.recent_episodes(days=BASELINE_DAYS)
    short_cutoff = ctx.now - timedelta(hours=SHORT_TERM_HOURS)
    recent = [e for e in baseline_episodes if e.episode_date >= short_cutoff]
    if len(recent) < SHORT_TERM_MIN_EPISODES:
        return
    baseline_rate = len(baseline_episodes) / BASELINE_DAYS
    recent_rate = len(recent) / (SHORT_TERM_HOURS / 24)
    if baseline_rate <= 0:
        return
    ratio = recent_rate / baseline_rate
    if ratio < SHORT_TERM_RATIO:
        return
    bump(forecast, SHORT_TERM_RISK)
    forecast["insights"].append({
        "type": "pattern",
        "message": f"Episodes over the last 3 days are running at {ratio:.1f}x your usual rate",
        "severity": "warning",
        "action": "Plan extra rest and check-ins over the next few days",
    })


@register("biological_cycles")
def biological_cycles(forecast: Forecast, ctx: AlgorithmContext) -> None:
    if ctx.biology is None:
        return
    prefs = ctx.biology.get_tracking_preferences(ctx.user_id) or {}

    if prefs.get("menstrual_cycle"):
        cycle = ctx.biology.get_menstrual_cycle_data(ctx.user_id)
        current = current_cycle_phase(cycle, ctx.now) if cycle else None
        if current:
            phase = current["phase"]
            days_left = current["days_until_next_phase"]
            increase = MENSTRUAL_PHASE_RISK.get(phase, 0.0)
            if increase > 0:
                applied = bump(forecast, increase)
                forecast["biological_factors"].append({
                    "type": "menstrual_cycle",
                    "phase": phase,
                    "risk_contribution": round(applied, 4),
                    "days_until_next_phase": days_left,
                })

    if prefs.get("sleep"):
        sleep = ctx.biology.get_sleep_summary(ctx.user_id, SLEEP_LOOKBACK_DAYS)
        if sleep and sleep.get("average_hours") is not None and sleep["average_hours"] < SLEEP_MIN_HOURS:
            applied = bump(forecast, SLEEP_DEPRIVATION_RISK)
            forecast["biological_factors"].append({
                "type": "sleep_deprivation",
                "average_hours": round(float(sleep["average_hours"]), 2),
                "risk_contribution": round(applied, 4),
            })


@register("environmental_factors")
def environmental_factors(forecast: Forecast, ctx: AlgorithmContext) -> None:
    episodes = [e for e in ctx.recent_episodes(days=LOCATION_LOOKBACK_DAYS) if e.location]
    if len(episodes) < LOCATION_MIN_EPISODES:
        return
    shares = category_shares(episodes_frame(episodes), "location")
    if not shares or shares[0]["share"] < LOCATION_HOTSPOT_SHARE:
        return
    top = shares[0]
    applied = bump(forecast, LOCATION_RISK)
    forecast["active_patterns"].append({
        "type": "environmental",
        "pattern": "location_hotspot",
        "description": f"{top['share'] * 100:.0f}% of recent episodes happened at {top['value']}",
        "risk_contribution": round(applied, 4),
    })


# ─── 7 day ─────────────────────────────────────────────────

@register("weekly_patterns")
def weekly_patterns(forecast: Forecast, ctx: AlgorithmContext) -> None:
    days = []
    for pattern in ctx.user_patterns().get("temporal", []):
        if pattern["pattern_subtype"] == "day_of_week":
            days = pattern["data"].get("significant_days", [])
    if not days:
        return

    by_dow = {d["day"]: d for d in days}
    midnight = ctx.now.replace(hour=0, minute=0, second=0, microsecond=0)
    offset = 0
    added = 0
    while midnight + timedelta(days=offset) < ctx.horizon_end:
        day_start = midnight + timedelta(days=offset)
        dow = (day_start.weekday() + 1) % 7
        if dow in by_dow:
            info = by_dow[dow]
            forecast["high_risk_periods"].append({
                "start": max(day_start, ctx.now),
                "end": min(day_start + timedelta(days=1), ctx.horizon_end),
                "risk_score": round(max(forecast["overall_risk"], info["percentage"] / 100), 4),
                "reasons": [f"{DAY_NAMES[dow]} is a high-risk day ({info['percentage']:.0f}% of episodes)"],
            })
            added += 1
        offset += 1

    if added:
        top = max(d["percentage"] for d in days)
        bump(forecast, top / 100 * WEEKLY_DAY_WEIGHT)


@register("correlation_risks")
def correlation_risks(forecast: Forecast, ctx: AlgorithmContext) -> None:
    factors = forecast.get("correlation_risks") or []
    if not factors:
        return
    for factor in factors:
        start = ctx.now + timedelta(hours=float(factor.get("time_offset") or 0))
        if start < ctx.horizon_end:
            forecast["high_risk_periods"].append({
                "start": start,
                "end": start + timedelta(hours=CORRELATION_PERIOD_HOURS),
                "risk_score": round(min(1.0, float(factor["risk_increase"])), 4),
                "reasons": [factor["factor"]],
            })
        forecast["active_patterns"].append({
            "type": "correlation",
            "pattern": f"{factor['primary_type']}_to_{factor['related_type']}",
            "description": factor["factor"],
            "risk_contribution": round(float(factor["risk_increase"]) * CORRELATION_RISK_WEIGHT, 4),
        })
    total = sum(float(f["risk_increase"]) for f in factors) * CORRELATION_RISK_WEIGHT
    bump(forecast, min(total, CORRELATION_RISK_CAP))


@register("cascade_prediction")
def cascade_prediction(forecast: Forecast, ctx: AlgorithmContext) -> None:
    if ctx.patterns is None:
        return
    for pattern in ctx.user_patterns().get("cascade", []):
        if pattern["pattern_subtype"] != "episode_sequences":
            continue
        active = ctx.patterns.check_active_sequence(ctx.user_id, pattern["data"])
        if not active:
            continue
        applied = bump(forecast, CASCADE_RISK)
        forecast["cascade_warning"] = {
            "active": True,
            "sequence_type": active["type"],
            "expected_next": active["expected_next"],
            "prevention_window": active["prevention_window"],
            "risk_contribution": round(applied, 4),
        }
        # One warning per forecast; the strongest sequence is listed first.
        break


# ─── 30 day ────────────────────────────────────────────────

@register("monthly_cycles")
def monthly_cycles(forecast: Forecast, ctx: AlgorithmContext) -> None:
    episodes = ctx.recent_episodes(days=MONTHLY_LOOKBACK_DAYS)
    if len(episodes) < MONTHLY_MIN_EPISODES:
        return
    counts: Dict[int, int] = {}
    for e in episodes:
        week = (e.episode_date.day - 1) // 7 + 1
        counts[week] = counts.get(week, 0) + 1
    week, count = max(counts.items(), key=lambda kv: (kv[1], -kv[0]))
    share = count / len(episodes)
    if share < MONTHLY_WEEK_SHARE:
        return
    applied = bump(forecast, MONTHLY_RISK)
    forecast["active_patterns"].append({
        "type": "cyclical",
        "pattern": "monthly_cycle",
        "description": f"Week {week} of the month holds {share * 100:.0f}% of your episodes",
        "risk_contribution": round(applied, 4),
    })


@register("seasonal_patterns")
def seasonal_patterns(forecast: Forecast, ctx: AlgorithmContext) -> None:
    episodes = ctx.recent_episodes(days=SEASONAL_LOOKBACK_DAYS)
    if len(episodes) < SEASONAL_MIN_EPISODES:
        return
    mean_monthly = len(episodes) / 12
    this_month = sum(1 for e in episodes if e.episode_date.month == ctx.now.month)
    if this_month < SEASONAL_RATIO * mean_monthly:
        return
    applied = bump(forecast, SEASONAL_RISK)
    month = calendar.month_name[ctx.now.month]
    forecast["active_patterns"].append({
        "type": "seasonal",
        "pattern": "seasonal_peak",
        "description": f"{month} has historically been a harder month",
        "risk_contribution": round(applied, 4),
    })
    forecast["insights"].append({
        "type": "pattern",
        "message": f"{month} has historically been a harder month for you",
        "severity": "info",
        "action": "Plan supportive routines for the weeks ahead",
    })


@register("long_term_trends")
def long_term_trends(forecast: Forecast, ctx: AlgorithmContext) -> None:
    episodes = ctx.recent_episodes(days=TREND_LOOKBACK_DAYS)
    if len(episodes) < TREND_MIN_EPISODES:
        return
    slope = severity_slope(episodes_frame(episodes))
    if slope is None:
        return
    if slope > TREND_SLOPE:
        bump(forecast, TREND_WORSENING_RISK)
        forecast["insights"].append({
            "type": "trend",
            "message": "Episode severity has been trending upward over the past three months",
            "severity": "warning",
            "action": "Review your coping plan with your support team",
        })
    elif slope < -TREND_SLOPE:
        bump(forecast, TREND_IMPROVING_RISK)
        forecast["insights"].append({
            "type": "trend",
            "message": "Episode severity has been trending downward over the past three months",
            "severity": "positive",
            "action": "Keep up with your current strategies",
        })
