"""Risk bands and prevention plans attached to every forecast."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from constants import RISK_LEVELS

DEFAULT_PHASE_DAYS = 7

LEVEL_ACTIONS = {
    "critical": [
        {"action": "Contact your support person or crisis line", "priority": 1, "icon": "phone"},
        {"action": "Move to a safe, comfortable environment", "priority": 2, "icon": "home"},
    ],
    "high": [
        {"action": "Implement your crisis prevention plan", "priority": 1, "icon": "shield"},
        {"action": "Use your most effective coping strategies", "priority": 2, "icon": "heart"},
    ],
    "moderate": [
        {"action": "Increase self-care activities", "priority": 1, "icon": "spa"},
        {"action": "Monitor triggers more closely", "priority": 2, "icon": "visibility"},
    ],
    "low": [],
}

LEVEL_RESOURCES = {
    "low": [
        {"title": "Mindfulness Exercises", "url": "/resources/mindfulness"},
        {"title": "Daily Check-In", "url": "/dashboard/checkin"},
    ],
    "moderate": [
        {"title": "Coping Strategies Guide", "url": "/resources/coping"},
        {"title": "Trigger Management", "url": "/resources/triggers"},
    ],
    "high": [
        {"title": "Crisis Prevention Plan", "url": "/resources/crisis-prevention"},
        {"title": "Support Network", "url": "/resources/support"},
    ],
    "critical": [
        {"title": "Crisis Resources", "url": "/resources/crisis"},
        {"title": "Emergency Contacts", "url": "/settings/emergency"},
    ],
}


def determine_risk_level(score: float) -> Dict[str, Any]:
    """Band for *score*; half-open [min, max) except critical, which includes 1.0."""
    score = max(0.0, min(1.0, float(score)))
    for key, band in RISK_LEVELS.items():
        if band["min"] <= score < band["max"]:
            return {"key": key, **band}
    return {"key": "critical", **RISK_LEVELS["critical"]}


def get_prevention_resources(level: str) -> List[Dict[str, str]]:
    return [dict(r) for r in LEVEL_RESOURCES.get(level, LEVEL_RESOURCES["low"])]


def _daily_practices(forecast: Dict[str, Any]) -> List[Dict[str, str]]:
    practices = []
    for pattern in forecast.get("active_patterns", []):
        if pattern.get("type") == "temporal":
            practices.append({
                "practice": "Set reminders for high-risk time periods",
                "timing": "Before " + pattern["description"],
            })
    for factor in forecast.get("biological_factors", []):
        if factor["type"] == "sleep_deprivation":
            practices.append({
                "practice": "Prioritize 7-9 hours of sleep",
                "timing": "Starting tonight",
            })
        elif factor["type"] == "menstrual_cycle":
            days = factor.get("days_until_next_phase") or DEFAULT_PHASE_DAYS
            practices.append({
                "practice": f"Increase self-care during {factor['phase']} phase",
                "timing": f"Next {days} days",
            })
    return practices


def build_prevention_plan(forecast: Dict[str, Any], level: str,
                          strategies: Optional[List[Dict[str, Any]]] = None,
                          emergency_contacts: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    """
    Level-specific actions, the user's top coping strategies, daily practices
    for whatever is currently active, and reading material for the band.
    Emergency contacts are only attached at critical risk.
    """
    actions = [dict(a) for a in LEVEL_ACTIONS.get(level, [])]
    for strategy in (strategies or [])[:3]:
        actions.append({
            "action": strategy["name"],
            "priority": 3,
            "icon": "check_circle",
            "effectiveness": strategy.get("effectiveness"),
        })

    return {
        "immediate_actions": actions,
        "daily_practices": _daily_practices(forecast),
        "resources": get_prevention_resources(level),
        "emergency_contacts": list(emergency_contacts or []) if level == "critical" else [],
    }
