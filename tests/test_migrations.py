"""Schema audit driven by episode_schema.SCHEMA_COLUMNS, with psycopg2 mocked."""

from unittest.mock import MagicMock, patch

from episode_schema import EPISODE_SCHEMA_SQL, SCHEMA_COLUMNS, SCHEMA_TABLES
from pipeline.migrations import audit_columns, schema_audit


def _live_columns():
    return {table: list(columns) for table, columns in SCHEMA_COLUMNS.items()}


class TestSchemaModule:

    def test_every_audited_table_is_created(self):
        for table in SCHEMA_TABLES:
            assert f"CREATE TABLE IF NOT EXISTS {table} (" in EPISODE_SCHEMA_SQL

    def test_forecast_cache_keyed_by_cache_key(self):
        assert "cache_key TEXT PRIMARY KEY" in EPISODE_SCHEMA_SQL


class TestAuditColumns:

    def test_complete_schema(self):
        report = audit_columns(_live_columns())
        assert report["ok"] is True
        assert report["missing_tables"] == []

    def test_missing_table_and_column(self):
        live = _live_columns()
        del live["forecast_cache"]
        live["episodes"].remove("severity_score")

        report = audit_columns(live)

        assert report["ok"] is False
        assert report["missing_tables"] == ["forecast_cache"]
        assert report["tables"]["forecast_cache"]["exists"] is False
        assert report["tables"]["episodes"]["missing_columns"] == ["severity_score"]

    def test_extra_columns_are_fine(self):
        live = _live_columns()
        live["episodes"].append("notes")
        assert audit_columns(live)["ok"] is True


class TestSchemaAudit:

    def test_single_query_grouped_by_table(self):
        cur = MagicMock()
        cur.fetchall.return_value = [
            (table, column) for table, columns in SCHEMA_COLUMNS.items() for column in columns
        ]
        conn = MagicMock()
        conn.cursor.return_value.__enter__.return_value = cur
        driver = MagicMock()
        driver.connect.return_value = conn

        with patch("pipeline.migrations.psycopg2", driver), patch("pipeline.migrations.load_dotenv"):
            report = schema_audit("postgres://db")

        driver.connect.assert_called_once_with("postgresql://db")
        assert cur.execute.call_args.args[1] == (SCHEMA_TABLES,)
        assert report["ok"] is True
        assert report["tables"]["forecast_cache"]["columns"] == ["cache_key", "payload", "expires_at"]
        conn.close.assert_called_once()

    def test_unconfigured(self, monkeypatch):
        monkeypatch.delenv("POSTGRES_CONNECTION_STRING", raising=False)
        monkeypatch.delenv("DATABASE_URL", raising=False)
        with patch("pipeline.migrations.load_dotenv"):
            report = schema_audit("")
        assert report["ok"] is False
        assert "not configured" in report["error"]
