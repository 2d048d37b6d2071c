"""
Keyed forecast cache with per-entry TTL.

  - InMemoryForecastCache   per-process dict, for tests and local runs
  - PostgresForecastCache   forecast_cache table, shared by the API and the
                            scheduled refresh

Keys are overwritten in place, so the table holds at most one row per
(user, window).
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

import psycopg2
from psycopg2.extras import RealDictCursor

from db_utils import to_jsonable

log = logging.getLogger("forecast_cache")

# Forecast fields stored as ISO strings in JSONB
TIMESTAMP_FIELDS = ("generated_at", "expires_at")
PERIOD_FIELDS = ("start", "end")


def forecast_cache_key(user_id: int, window: str) -> str:
    return f"forecast:{user_id}:{window}"


def _parse_timestamp(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return value
    return value


def restore_timestamps(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Turn the ISO strings of a JSON-decoded forecast back into datetimes."""
    for field in TIMESTAMP_FIELDS:
        if field in payload:
            payload[field] = _parse_timestamp(payload[field])
    for period in payload.get("high_risk_periods") or []:
        for field in PERIOD_FIELDS:
            if field in period:
                period[field] = _parse_timestamp(period[field])
    return payload


class InMemoryForecastCache:
    """Thread-safe dict cache. Concurrent writers: last write wins."""

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self.clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[datetime, Dict[str, Any]]] = {}

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self.clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (self.clock() + timedelta(seconds=ttl_seconds), value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class PostgresForecastCache:
    """psycopg2-backed cache. Concurrent writers: last write wins."""

    def __init__(self, conn_str: str, clock: Callable[[], datetime] = datetime.now):
        if not conn_str:
            raise RuntimeError("POSTGRES_CONNECTION_STRING (or DATABASE_URL) is not configured")
        self.conn_str = conn_str
        self.clock = clock

    def _execute(self, query: str, params: tuple) -> int:
        conn = psycopg2.connect(self.conn_str)
        try:
            with conn.cursor() as cur:
                cur.execute(query, params)
                count = cur.rowcount
            conn.commit()
            return count
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        conn = psycopg2.connect(self.conn_str)
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    "SELECT payload FROM forecast_cache WHERE cache_key = %s AND expires_at > %s",
                    (key, self.clock()),
                )
                row = cur.fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        payload = row["payload"]
        if isinstance(payload, str):
            payload = json.loads(payload)
        return restore_timestamps(payload)

    def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        expires_at = self.clock() + timedelta(seconds=ttl_seconds)
        self._execute(
            """
            INSERT INTO forecast_cache (cache_key, payload, expires_at)
            VALUES (%s, %s::jsonb, %s)
            ON CONFLICT (cache_key) DO UPDATE
            SET payload = EXCLUDED.payload, expires_at = EXCLUDED.expires_at
            """,
            (key, json.dumps(to_jsonable(value)), expires_at),
        )
        log.debug("Cached %s until %s", key, expires_at.isoformat())

    def delete(self, key: str) -> None:
        self._execute("DELETE FROM forecast_cache WHERE cache_key = %s", (key,))
