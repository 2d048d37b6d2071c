"""
Shared constants used across the correlation and forecast engines.
Single source of truth for thresholds, forecast windows and risk bands.
"""

# ─── Correlation detection ─────────────────────────────────

MIN_EPISODES_FOR_CORRELATION = 5
CORRELATION_WINDOW_DAYS = 7
MIN_CORRELATION_STRENGTH = 0.3
AI_CORRELATION_MIN_CONFIDENCE = 0.7

# Cleanup: weak correlations older than this are deleted by the daily job
CLEANUP_MAX_STRENGTH = 0.4
CLEANUP_MAX_AGE_DAYS = 180

# Daily re-scan: users active in the last 7 days, episodes from the last 30
ACTIVE_USER_DAYS = 7
RESCAN_EPISODE_DAYS = 30

# Risk-factor feed for the forecast engine
RISK_FACTOR_MIN_STRENGTH = 0.5
RISK_FACTOR_LOOKBACK_DAYS = 90
RISK_FACTOR_MIN_OCCURRENCES = 3
RISK_FACTOR_MIN_PRIMARY_RISK = 0.5

CORRELATION_TYPES = {
    "precedes": {
        "name": "Precedes",
        "description": "Episode A typically occurs before Episode B",
        "time_range": (24, 72),
    },
    "follows": {
        "name": "Follows",
        "description": "Episode A typically occurs after Episode B",
        "time_range": (24, 72),
    },
    "concurrent": {
        "name": "Concurrent",
        "description": "Episodes occur at the same time",
        "time_range": (0, 4),
    },
    "triggers": {
        "name": "Triggers",
        "description": "Episode A appears to trigger Episode B",
        "time_range": (4, 24),
    },
    "triggered_by": {
        "name": "Triggered By",
        "description": "Episode A is triggered by Episode B",
        "time_range": (4, 24),
    },
}

CONCURRENT_MAX_HOURS = 4
DIRECT_TRIGGER_MAX_HOURS = 24

# (max hours, factor); first bucket that fits wins
TIME_PROXIMITY_STEPS = [
    (1, 1.0),
    (4, 0.9),
    (12, 0.8),
    (24, 0.7),
    (48, 0.5),
    (72, 0.3),
]
TIME_PROXIMITY_FLOOR = 0.1

# (max |Δseverity|, factor)
SEVERITY_PROXIMITY_STEPS = [
    (1, 0.9),
    (2, 0.7),
    (3, 0.5),
    (4, 0.3),
]
SEVERITY_PROXIMITY_FLOOR = 0.1

# Strength weights
WEIGHT_BASE_STRENGTH = 0.4
WEIGHT_TIME_PROXIMITY = 0.2
WEIGHT_SEVERITY_PROXIMITY = 0.2
BONUS_SHARED_TRIGGER = 0.1
WEIGHT_HISTORICAL = 0.1

# (min prior occurrences, confidence)
CONFIDENCE_STEPS = [
    (10, 0.95),
    (7, 0.85),
    (5, 0.75),
    (3, 0.65),
    (2, 0.55),
]
CONFIDENCE_FLOOR = 0.45

# Ordered ascending; each threshold fires exactly once per group
PATTERN_THRESHOLDS = [
    (3, "emerging"),
    (5, "established"),
    (10, "strong"),
    (20, "persistent"),
]

# ─── Forecast windows ──────────────────────────────────────

FORECAST_WINDOWS = {
    "24_hour": {
        "name": "24 Hour Forecast",
        "hours": 24,
        "min_membership": "basic",
        "update_frequency": "hourly",
        "algorithms": ["immediate_risk", "trigger_exposure", "temporal_patterns"],
    },
    "3_day": {
        "name": "3 Day Forecast",
        "hours": 72,
        "min_membership": "basic",
        "update_frequency": "6_hours",
        "algorithms": ["short_term_patterns", "biological_cycles", "environmental_factors"],
    },
    "7_day": {
        "name": "7 Day Forecast",
        "hours": 168,
        "min_membership": "premium",
        "update_frequency": "daily",
        "algorithms": ["weekly_patterns", "correlation_risks", "cascade_prediction"],
    },
    "30_day": {
        "name": "30 Day Outlook",
        "hours": 720,
        "min_membership": "platinum",
        "update_frequency": "weekly",
        "algorithms": ["monthly_cycles", "seasonal_patterns", "long_term_trends"],
    },
}

DEFAULT_WINDOW = "24_hour"

# Cache TTL per update cadence (seconds)
UPDATE_FREQUENCY_SECONDS = {
    "hourly": 3600,
    "6_hours": 6 * 3600,
    "daily": 24 * 3600,
    "weekly": 7 * 24 * 3600,
}
DEFAULT_TTL_SECONDS = 24 * 3600

# Scheduled refresh looks at users with an episode in the last 30 days
FORECAST_ACTIVE_USER_DAYS = 30

# ─── Risk bands ────────────────────────────────────────────

RISK_LEVELS = {
    "low": {
        "min": 0.0,
        "max": 0.3,
        "color": "#4CAF50",
        "description": "Low risk - Continue regular self-care",
    },
    "moderate": {
        "min": 0.3,
        "max": 0.6,
        "color": "#FFC107",
        "description": "Moderate risk - Increase preventive measures",
    },
    "high": {
        "min": 0.6,
        "max": 0.8,
        "color": "#FF5722",
        "description": "High risk - Implement active interventions",
    },
    "critical": {
        "min": 0.8,
        "max": 1.0,
        "color": "#D32F2F",
        "description": "Critical risk - Seek immediate support",
    },
}

# Correlation risk factors nudge overall risk by this share
CORRELATION_RISK_NUDGE = 0.1

# AI blend: adjustment × confidence × 0.2
AI_BLEND_WEIGHT = 0.2
AI_DEFAULT_CONFIDENCE = 0.5
AI_TIERS = {"premium", "platinum"}

# Insights
RISK_TREND_DAYS = 7
RISK_TREND_MIN_LOGS = 3
RISK_TREND_DELTA = 0.1
STABILITY_SEVERITY = 7
STABILITY_MIN_DAYS = 7
STABILITY_DEFAULT_DAYS = 30
MULTI_PATTERN_THRESHOLD = 2

DEFAULT_ENABLED_EPISODES = ["overthinking", "anxiety", "depression"]

# Fallbacks when a user has not configured their own
DEFAULT_COPING_STRATEGIES = [
    {"name": "Deep breathing exercises", "effectiveness": 0.8},
    {"name": "10-minute walk", "effectiveness": 0.7},
    {"name": "Call a friend", "effectiveness": 0.6},
]

DEFAULT_EMERGENCY_CONTACTS = [
    {"name": "Crisis Hotline", "number": "988", "available": "24/7"},
    {"name": "Emergency", "number": "911", "available": "24/7"},
]
