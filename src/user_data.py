"""
Per-user data the forecast engine reads but never writes: membership titles,
enabled episode types, emergency contacts, coping strategies and biological
tracking (cycle phase, sleep).
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import psycopg2
from psycopg2.extras import RealDictCursor

from constants import (
    DEFAULT_COPING_STRATEGIES,
    DEFAULT_EMERGENCY_CONTACTS,
    DEFAULT_ENABLED_EPISODES,
)

log = logging.getLogger("user_data")

# A cycle log older than this no longer describes the current phase
CYCLE_DATA_MAX_AGE_DAYS = 40
TOP_COPING_STRATEGIES = 3


class PostgresUserDataStore:
    def __init__(self, conn_str: str, default_enabled_episodes: Optional[List[str]] = None,
                 clock=datetime.now):
        if not conn_str:
            raise RuntimeError("POSTGRES_CONNECTION_STRING (or DATABASE_URL) is not configured")
        self.conn_str = conn_str
        self.default_enabled_episodes = list(default_enabled_episodes or DEFAULT_ENABLED_EPISODES)
        self._clock = clock

    def _fetch_all(self, query: str, params: Optional[tuple] = None) -> List[Dict[str, Any]]:
        conn = psycopg2.connect(self.conn_str)
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params or ())
                return [dict(row) for row in cur.fetchall()]
        finally:
            conn.close()

    def _preferences(self, user_id: int) -> Dict[str, Any]:
        rows = self._fetch_all(
            "SELECT * FROM user_preferences WHERE user_id = %s", (user_id,)
        )
        return rows[0] if rows else {}

    def get_membership_titles(self, user_id: int) -> List[str]:
        rows = self._fetch_all(
            """
            SELECT title FROM user_memberships
            WHERE user_id = %s AND status = 'active'
            ORDER BY started_at DESC
            """,
            (user_id,),
        )
        return [r["title"] for r in rows]

    def get_enabled_episode_types(self, user_id: int) -> Iterable[str]:
        raw = self._preferences(user_id).get("enabled_episode_types") or ""
        enabled = [t.strip() for t in raw.split(",") if t.strip()]
        return enabled or list(self.default_enabled_episodes)

    def get_emergency_contacts(self, user_id: int) -> List[Dict[str, Any]]:
        contacts = self._preferences(user_id).get("emergency_contacts")
        if isinstance(contacts, str):
            contacts = json.loads(contacts)
        return list(contacts) if contacts else [dict(c) for c in DEFAULT_EMERGENCY_CONTACTS]

    def get_effective_strategies(self, user_id: int) -> List[Dict[str, Any]]:
        rows = self._fetch_all(
            """
            SELECT name, effectiveness FROM coping_strategies
            WHERE user_id = %s
            ORDER BY effectiveness DESC
            LIMIT %s
            """,
            (user_id, TOP_COPING_STRATEGIES),
        )
        if not rows:
            return [dict(s) for s in DEFAULT_COPING_STRATEGIES]
        return [{"name": r["name"], "effectiveness": float(r["effectiveness"])} for r in rows]

    def get_tracking_preferences(self, user_id: int) -> Dict[str, Any]:
        prefs = self._preferences(user_id)
        return {
            "menstrual_cycle": bool(prefs.get("track_menstrual_cycle")),
            "sleep": bool(prefs.get("track_sleep")),
        }

    def get_menstrual_cycle_data(self, user_id: int) -> Optional[Dict[str, Any]]:
        since = (self._clock() - timedelta(days=CYCLE_DATA_MAX_AGE_DAYS)).date()
        rows = self._fetch_all(
            """
            SELECT log_date, cycle_day, cycle_phase FROM biological_logs
            WHERE user_id = %s AND (cycle_phase IS NOT NULL OR cycle_day IS NOT NULL)
              AND log_date >= %s
            ORDER BY log_date DESC
            LIMIT 1
            """,
            (user_id, since),
        )
        if not rows:
            return None
        row = rows[0]
        return {"phase": row["cycle_phase"], "cycle_day": row["cycle_day"],
                "log_date": row["log_date"]}

    def get_sleep_summary(self, user_id: int, days: int) -> Optional[Dict[str, Any]]:
        since = (self._clock() - timedelta(days=days)).date()
        rows = self._fetch_all(
            """
            SELECT AVG(sleep_hours) AS average_hours, COUNT(sleep_hours) AS nights
            FROM biological_logs
            WHERE user_id = %s AND log_date >= %s AND sleep_hours IS NOT NULL
            """,
            (user_id, since),
        )
        if not rows or not rows[0]["nights"]:
            return None
        return {"average_hours": float(rows[0]["average_hours"]),
                "nights": int(rows[0]["nights"])}


class InMemoryUserDataStore:
    """Dict-backed twin of PostgresUserDataStore with small setters for tests."""

    def __init__(self, default_enabled_episodes: Optional[List[str]] = None,
                 clock=datetime.now):
        self.default_enabled_episodes = list(default_enabled_episodes or DEFAULT_ENABLED_EPISODES)
        self._clock = clock
        self.memberships: Dict[int, List[str]] = {}
        self.enabled_types: Dict[int, List[str]] = {}
        self.contacts: Dict[int, List[Dict[str, Any]]] = {}
        self.strategies: Dict[int, List[Dict[str, Any]]] = {}
        self.tracking: Dict[int, Dict[str, Any]] = {}
        self.cycle_logs: Dict[int, List[Dict[str, Any]]] = {}
        self.sleep_logs: Dict[int, List[Dict[str, Any]]] = {}

    # ── setters ──

    def set_memberships(self, user_id: int, titles: List[str]) -> None:
        self.memberships[user_id] = list(titles)

    def set_enabled_types(self, user_id: int, types: List[str]) -> None:
        self.enabled_types[user_id] = list(types)

    def set_tracking(self, user_id: int, menstrual_cycle: bool = False, sleep: bool = False) -> None:
        self.tracking[user_id] = {"menstrual_cycle": menstrual_cycle, "sleep": sleep}

    def add_cycle_log(self, user_id: int, log_date: datetime, phase: str,
                      cycle_day: Optional[int] = None) -> None:
        self.cycle_logs.setdefault(user_id, []).append(
            {"log_date": log_date, "phase": phase, "cycle_day": cycle_day}
        )

    def add_sleep_log(self, user_id: int, log_date: datetime, hours: float) -> None:
        self.sleep_logs.setdefault(user_id, []).append({"log_date": log_date, "hours": hours})

    # ── protocol surface ──

    def get_membership_titles(self, user_id: int) -> List[str]:
        return list(self.memberships.get(user_id, []))

    def get_enabled_episode_types(self, user_id: int) -> Iterable[str]:
        return list(self.enabled_types.get(user_id) or self.default_enabled_episodes)

    def get_emergency_contacts(self, user_id: int) -> List[Dict[str, Any]]:
        return list(self.contacts.get(user_id) or [dict(c) for c in DEFAULT_EMERGENCY_CONTACTS])

    def get_effective_strategies(self, user_id: int) -> List[Dict[str, Any]]:
        strategies = self.strategies.get(user_id)
        if not strategies:
            return [dict(s) for s in DEFAULT_COPING_STRATEGIES]
        ranked = sorted(strategies, key=lambda s: s.get("effectiveness", 0), reverse=True)
        return ranked[:TOP_COPING_STRATEGIES]

    def get_tracking_preferences(self, user_id: int) -> Dict[str, Any]:
        return dict(self.tracking.get(user_id, {"menstrual_cycle": False, "sleep": False}))

    def get_menstrual_cycle_data(self, user_id: int) -> Optional[Dict[str, Any]]:
        cutoff = self._clock() - timedelta(days=CYCLE_DATA_MAX_AGE_DAYS)
        logs = [l for l in self.cycle_logs.get(user_id, []) if l["log_date"] >= cutoff]
        if not logs:
            return None
        return dict(max(logs, key=lambda l: l["log_date"]))

    def get_sleep_summary(self, user_id: int, days: int) -> Optional[Dict[str, Any]]:
        cutoff = self._clock() - timedelta(days=days)
        hours = [l["hours"] for l in self.sleep_logs.get(user_id, []) if l["log_date"] >= cutoff]
        if not hours:
            return None
        return {"average_hours": sum(hours) / len(hours), "nights": len(hours)}
