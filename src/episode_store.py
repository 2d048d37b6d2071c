"""
Episode Store
=============
Persistence for episodes, correlations, correlation patterns, AI correlation
rows and forecast logs.

Two implementations share one surface:

  - PostgresEpisodeStore   psycopg2, one short-lived connection per call
  - InMemoryEpisodeStore   thread-safe dict/list store for tests and local runs

The engines only ever see the collaborator protocols, so either store can be
plugged in through services.build_services().
"""

from __future__ import annotations

import itertools
import json
import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

import psycopg2
from psycopg2.extras import RealDictCursor

from models import Correlation, CorrelationPattern, Episode

log = logging.getLogger("episode_store")


# ─── PostgreSQL ────────────────────────────────────────────

class PostgresEpisodeStore:
    """psycopg2-backed store. Rows are trusted (validated at insert time)."""

    def __init__(self, conn_str: str):
        if not conn_str:
            raise RuntimeError("POSTGRES_CONNECTION_STRING (or DATABASE_URL) is not configured")
        self.conn_str = conn_str

    # ── low-level helpers ──

    def _fetch_all(self, query: str, params: Optional[tuple] = None) -> List[Dict[str, Any]]:
        conn = psycopg2.connect(self.conn_str)
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params or ())
                return [dict(row) for row in cur.fetchall()]
        finally:
            conn.close()

    def _fetch_one(self, query: str, params: Optional[tuple] = None) -> Optional[Dict[str, Any]]:
        rows = self._fetch_all(query, params)
        return rows[0] if rows else None

    def _execute(self, query: str, params: Optional[tuple] = None,
                 returning: bool = False) -> Any:
        """Run a write statement in its own transaction.

        Returns the first RETURNING row when *returning* is set, otherwise
        the affected row count.
        """
        conn = psycopg2.connect(self.conn_str)
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params or ())
                result = cur.fetchone() if returning else cur.rowcount
            conn.commit()
            return result
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ── episodes ──

    def get_episode(self, episode_id: int) -> Optional[Episode]:
        row = self._fetch_one(
            "SELECT * FROM episodes WHERE episode_id = %s", (episode_id,)
        )
        return Episode.from_row(row) if row else None

    def get_episodes(self, user_id: int, start: datetime, end: datetime,
                     episode_type: Optional[str] = None) -> List[Episode]:
        query = """
            SELECT * FROM episodes
            WHERE user_id = %s AND episode_date BETWEEN %s AND %s
        """
        params: tuple = (user_id, start, end)
        if episode_type:
            query += " AND episode_type = %s"
            params += (episode_type,)
        query += " ORDER BY episode_date ASC"
        return [Episode.from_row(r) for r in self._fetch_all(query, params)]

    def count_episodes(self, user_id: int) -> int:
        row = self._fetch_one(
            "SELECT COUNT(*) AS n FROM episodes WHERE user_id = %s", (user_id,)
        )
        return int(row["n"]) if row else 0

    def get_active_user_ids(self, since: datetime) -> List[int]:
        rows = self._fetch_all(
            """
            SELECT DISTINCT user_id FROM episodes
            WHERE episode_date >= %s
            ORDER BY user_id
            """,
            (since,),
        )
        return [int(r["user_id"]) for r in rows]

    def get_last_episode_date(self, user_id: int,
                              min_severity: Optional[float] = None) -> Optional[datetime]:
        query = "SELECT MAX(episode_date) AS last_date FROM episodes WHERE user_id = %s"
        params: tuple = (user_id,)
        if min_severity is not None:
            query += " AND severity_score >= %s"
            params += (min_severity,)
        row = self._fetch_one(query, params)
        return row["last_date"] if row else None

    # ── correlations ──

    def find_correlation(self, episode_a: int, episode_b: int) -> Optional[Correlation]:
        row = self._fetch_one(
            """
            SELECT * FROM episode_correlations
            WHERE (primary_episode_id = %s AND related_episode_id = %s)
               OR (primary_episode_id = %s AND related_episode_id = %s)
            LIMIT 1
            """,
            (episode_a, episode_b, episode_b, episode_a),
        )
        return Correlation.from_row(row) if row else None

    def insert_correlation(self, correlation: Correlation) -> int:
        # Another process may have stored the pair first; its orientation is kept
        row = self._execute(
            """
            INSERT INTO episode_correlations (
                user_id, primary_episode_id, primary_type, related_episode_id,
                related_type, correlation_type, time_offset_hours,
                correlation_strength, confidence_score, factors, discovered_date
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (
                (LEAST(primary_episode_id, related_episode_id)),
                (GREATEST(primary_episode_id, related_episode_id))
            ) DO UPDATE SET
                correlation_strength = EXCLUDED.correlation_strength,
                confidence_score = EXCLUDED.confidence_score
            RETURNING correlation_id
            """,
            (
                correlation.user_id,
                correlation.primary_episode_id,
                correlation.primary_type,
                correlation.related_episode_id,
                correlation.related_type,
                correlation.correlation_type,
                correlation.time_offset_hours,
                correlation.correlation_strength,
                correlation.confidence_score,
                ",".join(correlation.factors),
                correlation.discovered_date or datetime.now(),
            ),
            returning=True,
        )
        correlation.correlation_id = int(row["correlation_id"])
        return correlation.correlation_id

    def update_correlation_scores(self, correlation_id: int, strength: float,
                                  confidence: float) -> None:
        self._execute(
            """
            UPDATE episode_correlations
            SET correlation_strength = %s, confidence_score = %s
            WHERE correlation_id = %s
            """,
            (strength, confidence, correlation_id),
        )

    def count_correlations(self, user_id: int, primary_type: str, related_type: str,
                           correlation_type: str,
                           min_strength: Optional[float] = None) -> int:
        query = """
            SELECT COUNT(*) AS n FROM episode_correlations
            WHERE user_id = %s AND primary_type = %s AND related_type = %s
              AND correlation_type = %s
        """
        params: tuple = (user_id, primary_type, related_type, correlation_type)
        if min_strength is not None:
            query += " AND correlation_strength >= %s"
            params += (min_strength,)
        row = self._fetch_one(query, params)
        return int(row["n"]) if row else 0

    def average_strength(self, user_id: int, type_a: str, type_b: str) -> Optional[float]:
        row = self._fetch_one(
            """
            SELECT AVG(correlation_strength) AS avg_strength
            FROM episode_correlations
            WHERE user_id = %s
              AND ((primary_type = %s AND related_type = %s)
                OR (primary_type = %s AND related_type = %s))
            """,
            (user_id, type_a, type_b, type_b, type_a),
        )
        if not row or row["avg_strength"] is None:
            return None
        return float(row["avg_strength"])

    def get_correlations(self, user_id: int, min_strength: Optional[float] = None,
                         since: Optional[datetime] = None) -> List[Correlation]:
        query = "SELECT * FROM episode_correlations WHERE user_id = %s"
        params: tuple = (user_id,)
        if min_strength is not None:
            query += " AND correlation_strength >= %s"
            params += (min_strength,)
        if since is not None:
            query += " AND discovered_date >= %s"
            params += (since,)
        query += " ORDER BY discovered_date DESC"
        return [Correlation.from_row(r) for r in self._fetch_all(query, params)]

    def get_group_correlations(self, user_id: int, primary_type: str, related_type: str,
                               correlation_type: str) -> List[Correlation]:
        rows = self._fetch_all(
            """
            SELECT * FROM episode_correlations
            WHERE user_id = %s AND primary_type = %s AND related_type = %s
              AND correlation_type = %s
            ORDER BY discovered_date ASC
            """,
            (user_id, primary_type, related_type, correlation_type),
        )
        return [Correlation.from_row(r) for r in rows]

    def delete_weak_correlations(self, max_strength: float, older_than: datetime) -> int:
        return int(self._execute(
            """
            DELETE FROM episode_correlations
            WHERE correlation_strength < %s AND discovered_date < %s
            """,
            (max_strength, older_than),
        ))

    def insert_ai_correlation(self, user_id: int, correlation: Dict[str, Any],
                              discovered_at: datetime) -> None:
        self._execute(
            """
            INSERT INTO ai_correlations (user_id, correlation_data, confidence, discovered_date)
            VALUES (%s, %s, %s, %s)
            """,
            (user_id, json.dumps(correlation, default=str),
             float(correlation.get("confidence", 0)), discovered_at),
        )

    # ── patterns ──

    def get_pattern_levels(self, user_id: int, pattern_subtype: str,
                           correlation_type: str) -> Set[str]:
        rows = self._fetch_all(
            """
            SELECT pattern_level FROM correlation_patterns
            WHERE user_id = %s AND pattern_subtype = %s AND correlation_type = %s
            """,
            (user_id, pattern_subtype, correlation_type),
        )
        return {r["pattern_level"] for r in rows}

    def insert_pattern(self, pattern: CorrelationPattern) -> bool:
        """Insert unless the level is already recorded; True when a row was written."""
        row = self._execute(
            """
            INSERT INTO correlation_patterns (
                user_id, pattern_type, pattern_subtype, pattern_level,
                correlation_type, occurrence_count, average_strength,
                average_time_offset, confidence_score, first_detected, last_detected
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, pattern_subtype, correlation_type, pattern_level)
            DO NOTHING
            RETURNING pattern_id
            """,
            (
                pattern.user_id,
                pattern.pattern_type,
                pattern.pattern_subtype,
                pattern.pattern_level,
                pattern.correlation_type,
                pattern.occurrence_count,
                pattern.average_strength,
                pattern.average_time_offset,
                pattern.confidence_score,
                pattern.first_detected,
                pattern.last_detected,
            ),
            returning=True,
        )
        if not row:
            return False
        pattern.pattern_id = int(row["pattern_id"])
        return True

    def get_patterns(self, user_id: int) -> List[CorrelationPattern]:
        rows = self._fetch_all(
            """
            SELECT * FROM correlation_patterns
            WHERE user_id = %s
            ORDER BY last_detected DESC
            """,
            (user_id,),
        )
        return [CorrelationPattern.from_row(r) for r in rows]

    # ── forecast logs ──

    def log_forecast(self, record: Dict[str, Any]) -> None:
        self._execute(
            """
            INSERT INTO forecast_logs (
                user_id, forecast_window, risk_score, confidence,
                risk_level, ai_enhanced, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                record["user_id"],
                record["window"],
                record["risk_score"],
                record.get("confidence"),
                record.get("risk_level"),
                bool(record.get("ai_enhanced")),
                record.get("created_at") or datetime.now(),
            ),
        )

    def get_forecast_logs(self, user_id: int, window: str,
                          since: datetime) -> List[Dict[str, Any]]:
        rows = self._fetch_all(
            """
            SELECT forecast_window AS window, risk_score, confidence,
                   risk_level, ai_enhanced, created_at
            FROM forecast_logs
            WHERE user_id = %s AND forecast_window = %s AND created_at >= %s
            ORDER BY created_at ASC
            """,
            (user_id, window, since),
        )
        for row in rows:
            row["risk_score"] = float(row["risk_score"])
        return rows


# ─── In-memory ─────────────────────────────────────────────

class InMemoryEpisodeStore:
    """Process-local store with the same surface as PostgresEpisodeStore."""

    def __init__(self, clock=datetime.now):
        self._clock = clock
        self._lock = threading.RLock()
        self._episode_ids = itertools.count(1)
        self._correlation_ids = itertools.count(1)
        self._pattern_ids = itertools.count(1)
        self.episodes: Dict[int, Episode] = {}
        self.correlations: Dict[int, Correlation] = {}
        self.patterns: List[CorrelationPattern] = []
        self.ai_correlations: List[Dict[str, Any]] = []
        self.forecast_logs: List[Dict[str, Any]] = []

    # ── episodes ──

    def add_episode(self, user_id: int, episode_type: str, episode_date: datetime,
                    severity_score: float, trigger_category: Optional[str] = None,
                    location: Optional[str] = None,
                    has_biological_factors: bool = False) -> Episode:
        with self._lock:
            episode = Episode(
                episode_id=next(self._episode_ids),
                user_id=user_id,
                episode_type=episode_type,
                episode_date=episode_date,
                severity_score=float(severity_score),
                trigger_category=trigger_category,
                location=location,
                has_biological_factors=has_biological_factors,
            )
            self.episodes[episode.episode_id] = episode
            return episode

    def get_episode(self, episode_id: int) -> Optional[Episode]:
        return self.episodes.get(episode_id)

    def get_episodes(self, user_id: int, start: datetime, end: datetime,
                     episode_type: Optional[str] = None) -> List[Episode]:
        with self._lock:
            out = [
                e for e in self.episodes.values()
                if e.user_id == user_id
                and start <= e.episode_date <= end
                and (episode_type is None or e.episode_type == episode_type)
            ]
        return sorted(out, key=lambda e: (e.episode_date, e.episode_id))

    def count_episodes(self, user_id: int) -> int:
        with self._lock:
            return sum(1 for e in self.episodes.values() if e.user_id == user_id)

    def get_active_user_ids(self, since: datetime) -> List[int]:
        with self._lock:
            return sorted({e.user_id for e in self.episodes.values() if e.episode_date >= since})

    def get_last_episode_date(self, user_id: int,
                              min_severity: Optional[float] = None) -> Optional[datetime]:
        with self._lock:
            dates = [
                e.episode_date for e in self.episodes.values()
                if e.user_id == user_id
                and (min_severity is None or e.severity_score >= min_severity)
            ]
        return max(dates) if dates else None

    # ── correlations ──

    def find_correlation(self, episode_a: int, episode_b: int) -> Optional[Correlation]:
        key = frozenset((episode_a, episode_b))
        with self._lock:
            for corr in self.correlations.values():
                if corr.pair_key() == key:
                    return corr
        return None

    def insert_correlation(self, correlation: Correlation) -> int:
        with self._lock:
            if self.find_correlation(correlation.primary_episode_id,
                                     correlation.related_episode_id) is not None:
                raise ValueError(
                    f"Correlation for pair {sorted(correlation.pair_key())} already exists"
                )
            correlation.correlation_id = next(self._correlation_ids)
            if correlation.discovered_date is None:
                correlation.discovered_date = self._clock()
            self.correlations[correlation.correlation_id] = correlation
            return correlation.correlation_id

    def update_correlation_scores(self, correlation_id: int, strength: float,
                                  confidence: float) -> None:
        with self._lock:
            corr = self.correlations[correlation_id]
            corr.correlation_strength = strength
            corr.confidence_score = confidence

    def count_correlations(self, user_id: int, primary_type: str, related_type: str,
                           correlation_type: str,
                           min_strength: Optional[float] = None) -> int:
        return len([
            c for c in self.get_group_correlations(user_id, primary_type, related_type,
                                                   correlation_type)
            if min_strength is None or c.correlation_strength >= min_strength
        ])

    def average_strength(self, user_id: int, type_a: str, type_b: str) -> Optional[float]:
        wanted = {(type_a, type_b), (type_b, type_a)}
        with self._lock:
            values = [
                c.correlation_strength for c in self.correlations.values()
                if c.user_id == user_id and (c.primary_type, c.related_type) in wanted
            ]
        return sum(values) / len(values) if values else None

    def get_correlations(self, user_id: int, min_strength: Optional[float] = None,
                         since: Optional[datetime] = None) -> List[Correlation]:
        with self._lock:
            out = [
                c for c in self.correlations.values()
                if c.user_id == user_id
                and (min_strength is None or c.correlation_strength >= min_strength)
                and (since is None or c.discovered_date >= since)
            ]
        return sorted(out, key=lambda c: c.discovered_date, reverse=True)

    def get_group_correlations(self, user_id: int, primary_type: str, related_type: str,
                               correlation_type: str) -> List[Correlation]:
        with self._lock:
            out = [
                c for c in self.correlations.values()
                if c.user_id == user_id
                and c.primary_type == primary_type
                and c.related_type == related_type
                and c.correlation_type == correlation_type
            ]
        return sorted(out, key=lambda c: c.discovered_date)

    def delete_weak_correlations(self, max_strength: float, older_than: datetime) -> int:
        with self._lock:
            doomed = [
                cid for cid, c in self.correlations.items()
                if c.correlation_strength < max_strength and c.discovered_date < older_than
            ]
            for cid in doomed:
                del self.correlations[cid]
        return len(doomed)

    def insert_ai_correlation(self, user_id: int, correlation: Dict[str, Any],
                              discovered_at: datetime) -> None:
        with self._lock:
            self.ai_correlations.append({
                "user_id": user_id,
                "correlation_data": dict(correlation),
                "confidence": float(correlation.get("confidence", 0)),
                "discovered_date": discovered_at,
            })

    # ── patterns ──

    def get_pattern_levels(self, user_id: int, pattern_subtype: str,
                           correlation_type: str) -> Set[str]:
        with self._lock:
            return {
                p.pattern_level for p in self.patterns
                if p.user_id == user_id
                and p.pattern_subtype == pattern_subtype
                and p.correlation_type == correlation_type
            }

    def insert_pattern(self, pattern: CorrelationPattern) -> bool:
        with self._lock:
            if pattern.pattern_level in self.get_pattern_levels(
                pattern.user_id, pattern.pattern_subtype, pattern.correlation_type
            ):
                return False
            pattern.pattern_id = next(self._pattern_ids)
            self.patterns.append(pattern)
            return True

    def get_patterns(self, user_id: int) -> List[CorrelationPattern]:
        with self._lock:
            out = [p for p in self.patterns if p.user_id == user_id]
        return sorted(out, key=lambda p: p.last_detected, reverse=True)

    # ── forecast logs ──

    def log_forecast(self, record: Dict[str, Any]) -> None:
        entry = dict(record)
        entry.setdefault("created_at", self._clock())
        with self._lock:
            self.forecast_logs.append(entry)

    def get_forecast_logs(self, user_id: int, window: str,
                          since: datetime) -> List[Dict[str, Any]]:
        with self._lock:
            out = [
                dict(r) for r in self.forecast_logs
                if r["user_id"] == user_id and r["window"] == window
                and r["created_at"] >= since
            ]
        return sorted(out, key=lambda r: r["created_at"])
