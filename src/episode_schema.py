"""
Episode Database Schema
=======================
Idempotent DDL for everything the correlation and forecast engines persist.

Tables:
  - episodes              (self-reported episodes, owned by the tracker)
  - episode_correlations  (one row per unordered episode pair)
  - ai_correlations       (high-confidence rows returned by the AI service)
  - correlation_patterns  (threshold crossings, one row per level)
  - forecast_logs         (compact record of every generated forecast)
  - forecast_cache        (latest forecast per user and window, with expiry)
  - user_memberships      (active membership titles per user)
  - user_preferences      (enabled types, contacts, biological opt-ins)
  - coping_strategies     (user-rated coping strategies)
  - biological_logs       (cycle and sleep entries)
"""
import logging

import psycopg2

from db_utils import get_conn_str

logger = logging.getLogger("episode_schema")

EPISODE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS episodes (
    episode_id SERIAL PRIMARY KEY,
    user_id INTEGER NOT NULL,
    episode_type TEXT NOT NULL,
    episode_date TIMESTAMP NOT NULL,
    severity_score NUMERIC(4,1) NOT NULL DEFAULT 0,  -- 0-10
    trigger_category TEXT,
    location TEXT,
    has_biological_factors BOOLEAN DEFAULT FALSE,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_episodes_user_date ON episodes(user_id, episode_date DESC);

CREATE TABLE IF NOT EXISTS episode_correlations (
    correlation_id SERIAL PRIMARY KEY,
    user_id INTEGER NOT NULL,
    primary_episode_id INTEGER NOT NULL,
    primary_type TEXT NOT NULL,
    related_episode_id INTEGER NOT NULL,
    related_type TEXT NOT NULL,
    correlation_type TEXT NOT NULL,  -- precedes, follows, concurrent, triggers, triggered_by
    time_offset_hours NUMERIC(8,2) NOT NULL,
    correlation_strength NUMERIC(4,3) NOT NULL,
    confidence_score NUMERIC(4,3) NOT NULL,
    factors TEXT,  -- comma separated tags
    discovered_date TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
);

-- One row per unordered pair
CREATE UNIQUE INDEX IF NOT EXISTS uq_episode_correlation_pair ON episode_correlations(
    LEAST(primary_episode_id, related_episode_id),
    GREATEST(primary_episode_id, related_episode_id)
);

CREATE INDEX IF NOT EXISTS idx_correlations_user_types
    ON episode_correlations(user_id, primary_type, related_type, correlation_type);

CREATE TABLE IF NOT EXISTS ai_correlations (
    ai_correlation_id SERIAL PRIMARY KEY,
    user_id INTEGER NOT NULL,
    correlation_data JSONB NOT NULL,
    confidence NUMERIC(4,3) NOT NULL,
    discovered_date TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS correlation_patterns (
    pattern_id SERIAL PRIMARY KEY,
    user_id INTEGER NOT NULL,
    pattern_type TEXT NOT NULL DEFAULT 'correlation',
    pattern_subtype TEXT NOT NULL,  -- {primary}_to_{related}
    pattern_level TEXT NOT NULL,    -- emerging, established, strong, persistent
    correlation_type TEXT NOT NULL,
    occurrence_count INTEGER NOT NULL,
    average_strength NUMERIC(4,3),
    average_time_offset NUMERIC(8,2),
    confidence_score NUMERIC(4,3),
    first_detected TIMESTAMP,
    last_detected TIMESTAMP,
    UNIQUE (user_id, pattern_subtype, correlation_type, pattern_level)
);

CREATE TABLE IF NOT EXISTS forecast_logs (
    log_id SERIAL PRIMARY KEY,
    user_id INTEGER NOT NULL,
    forecast_window TEXT NOT NULL,
    risk_score NUMERIC(4,3) NOT NULL,
    confidence NUMERIC(4,3),
    risk_level TEXT,
    ai_enhanced BOOLEAN DEFAULT FALSE,
    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_forecast_logs_user_window
    ON forecast_logs(user_id, forecast_window, created_at DESC);

CREATE TABLE IF NOT EXISTS forecast_cache (
    cache_key TEXT PRIMARY KEY,  -- forecast:{user_id}:{window}
    payload JSONB NOT NULL,
    expires_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS user_memberships (
    membership_id SERIAL PRIMARY KEY,
    user_id INTEGER NOT NULL,
    title TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    started_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS user_preferences (
    user_id INTEGER PRIMARY KEY,
    enabled_episode_types TEXT,  -- comma separated
    emergency_contacts JSONB,
    track_menstrual_cycle BOOLEAN DEFAULT FALSE,
    track_sleep BOOLEAN DEFAULT FALSE,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS coping_strategies (
    strategy_id SERIAL PRIMARY KEY,
    user_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    effectiveness NUMERIC(4,3) NOT NULL DEFAULT 0.5,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS biological_logs (
    log_id SERIAL PRIMARY KEY,
    user_id INTEGER NOT NULL,
    log_date DATE NOT NULL,
    cycle_day INTEGER,
    cycle_phase TEXT,  -- menstrual, follicular, ovulation, luteal
    sleep_hours NUMERIC(4,2),
    UNIQUE (user_id, log_date)
);
"""

# Every table and the columns the engines read from it
SCHEMA_COLUMNS = {
    "episodes": ["episode_id", "user_id", "episode_type", "episode_date", "severity_score"],
    "episode_correlations": [
        "primary_episode_id", "related_episode_id", "correlation_type",
        "correlation_strength", "time_offset_hours", "confidence_score",
    ],
    "ai_correlations": ["user_id", "correlation_data", "confidence"],
    "correlation_patterns": ["pattern_subtype", "pattern_level", "occurrence_count"],
    "forecast_logs": ["user_id", "forecast_window", "risk_score", "risk_level", "ai_enhanced"],
    "forecast_cache": ["cache_key", "payload", "expires_at"],
    "user_memberships": ["user_id", "title", "status"],
    "user_preferences": ["user_id", "enabled_episode_types", "emergency_contacts"],
    "coping_strategies": ["user_id", "name", "effectiveness"],
    "biological_logs": ["user_id", "log_date", "cycle_day", "cycle_phase", "sleep_hours"],
}

SCHEMA_TABLES = list(SCHEMA_COLUMNS)


def upgrade_database(conn_str: str = None):
    """
    Create every episode table and index.
    Safe to run multiple times (uses IF NOT EXISTS).

    Parameters
    ----------
    conn_str : str, optional
        PostgreSQL connection string.  Falls back to
        POSTGRES_CONNECTION_STRING / DATABASE_URL.
    """
    conn_str = conn_str or get_conn_str()

    conn = psycopg2.connect(conn_str)
    try:
        conn.autocommit = True
        with conn.cursor() as cur:
            for statement in EPISODE_SCHEMA_SQL.split(';'):
                stmt = statement.strip()
                if stmt:
                    cur.execute(stmt)
    except Exception as e:
        logger.error("Schema upgrade failed: %s", e)
        raise
    finally:
        conn.close()

    logger.info("Episode schema ready: %s", ", ".join(SCHEMA_TABLES))


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    upgrade_database()
