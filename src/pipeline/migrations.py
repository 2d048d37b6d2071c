"""Startup migration and audit helpers for the episode database."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

import psycopg2
from dotenv import load_dotenv

from db_utils import get_conn_str, normalize_db_url
from episode_schema import SCHEMA_COLUMNS, SCHEMA_TABLES, upgrade_database

log = logging.getLogger("pipeline.migrations")


def _resolve_conn_str(conn_str: str | None) -> str:
    load_dotenv()
    return normalize_db_url(conn_str) or get_conn_str()


def ensure_startup_schema(conn_str: str | None = None) -> None:
    """Run idempotent startup migrations before engines touch the database."""
    cs = _resolve_conn_str(conn_str)
    if not cs:
        raise RuntimeError("POSTGRES_CONNECTION_STRING (or DATABASE_URL) is not configured")

    upgrade_database(cs)

    conn = psycopg2.connect(cs)
    conn.autocommit = True
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_correlations_discovered
                ON episode_correlations(discovered_date)
                """
            )
    finally:
        conn.close()

    log.info("Startup migrations completed.")


def audit_columns(present: Dict[str, List[str]]) -> Dict[str, Any]:
    """Compare the live columns per table against SCHEMA_COLUMNS."""
    out: Dict[str, Any] = {"ok": True, "tables": {}, "missing_tables": []}
    for table, required in SCHEMA_COLUMNS.items():
        cols = present.get(table)
        if cols is None:
            out["missing_tables"].append(table)
            out["tables"][table] = {"exists": False, "columns": [], "missing_columns": list(required)}
            continue
        out["tables"][table] = {
            "exists": True,
            "columns": cols,
            "missing_columns": [c for c in required if c not in cols],
        }
    out["ok"] = not out["missing_tables"] and not any(
        info["missing_columns"] for info in out["tables"].values()
    )
    return out


def schema_audit(conn_str: str | None = None) -> Dict[str, Any]:
    """Table/column audit of the live database for the admin endpoint."""
    cs = _resolve_conn_str(conn_str)
    if not cs:
        return {
            "ok": False,
            "error": "POSTGRES_CONNECTION_STRING (or DATABASE_URL) is not configured",
            "tables": {},
            "missing_tables": [],
        }

    conn = psycopg2.connect(cs)
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT table_name, column_name
                FROM information_schema.columns
                WHERE table_schema = 'public' AND table_name = ANY(%s)
                ORDER BY table_name, ordinal_position
                """,
                (SCHEMA_TABLES,),
            )
            rows = cur.fetchall()
    finally:
        conn.close()

    present: Dict[str, List[str]] = {}
    for table, column in rows:
        present.setdefault(table, []).append(column)
    return audit_columns(present)
