"""Scheduled maintenance orchestration with explicit health signaling."""

from __future__ import annotations

import json
import logging
import os
import traceback
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

from pipeline.migrations import ensure_startup_schema
from services import Services, build_services

log = logging.getLogger("maintenance")


class MaintenancePipeline:
    """Daily correlation sweep plus hourly / daily forecast refreshes."""

    def __init__(self, services: Optional[Services] = None, run_migrations: bool = True):
        self.services = services or build_services()
        # In-memory deployments have no schema to migrate
        self.run_migrations = run_migrations and bool(self.services.settings.conn_str)

    def run(self, correlations: bool = True, hourly: bool = True, daily: bool = True) -> bool:
        """Execute the selected jobs and persist machine-readable status."""
        status: Dict[str, Any] = {
            "run_date": date.today().isoformat(),
            "run_started_at": datetime.now(timezone.utc).isoformat(),
            "migrations_ok": not self.run_migrations,
            "correlations_ok": not correlations,
            "hourly_ok": not hourly,
            "daily_ok": not daily,
            "jobs": {},
            "degraded_reasons": [],
        }

        log.info("=" * 60)
        log.info("  MAINTENANCE RUN STARTED")
        log.info("  Date: %s", date.today())
        log.info("=" * 60)

        try:
            if self.run_migrations:
                log.info("Step 0/3: Running startup migrations...")
                ensure_startup_schema(self.services.settings.conn_str)
                status["migrations_ok"] = True

            if correlations:
                log.info("Step 1/3: Daily correlation analysis...")
                status["correlations_ok"] = self._run_job(
                    status, "correlations", self.services.correlation_engine.run_daily_analysis,
                    failure_key="failed_users",
                )
            else:
                log.info("Step 1/3: SKIPPED")

            if hourly:
                log.info("Step 2/3: Hourly forecast refresh...")
                status["hourly_ok"] = self._run_job(
                    status, "hourly", self.services.forecast_engine.update_hourly_forecasts,
                    failure_key="failed",
                )
            else:
                log.info("Step 2/3: SKIPPED")

            if daily:
                log.info("Step 3/3: Daily forecast refresh...")
                status["daily_ok"] = self._run_job(
                    status, "daily", self.services.forecast_engine.update_daily_forecasts,
                    failure_key="failed",
                )
            else:
                log.info("Step 3/3: SKIPPED")

        except Exception as e:
            status["degraded_reasons"].append("pipeline_exception")
            log.error("Maintenance run failed: %s", e)
            traceback.print_exc()
        finally:
            status["run_finished_at"] = datetime.now(timezone.utc).isoformat()
            status["overall_status"] = self._overall_status(status)
            self._write_pipeline_status_file(status)
            log.info("=" * 60)
            log.info("  MAINTENANCE COMPLETE (status=%s)", status["overall_status"])
            log.info("=" * 60)

        strict_health = os.getenv("STRICT_PIPELINE_HEALTH", "0").strip() == "1"
        if strict_health:
            return status["overall_status"] == "success"
        return status["overall_status"] != "failed"

    @staticmethod
    def _run_job(status: Dict[str, Any], name: str, job, failure_key: str) -> bool:
        """Run one job; a raised error fails it, per-user failures only degrade it."""
        try:
            result = job()
        except Exception as e:
            log.error("%s job failed: %s", name, e)
            status["jobs"][name] = {"error": str(e)}
            status["degraded_reasons"].append(f"{name}_exception")
            return False
        status["jobs"][name] = result
        if result.get(failure_key):
            status["degraded_reasons"].append(f"{name}_partial_failures")
            log.warning("%s job: %d failures", name, result[failure_key])
        return True

    @staticmethod
    def _overall_status(status: Dict[str, Any]) -> str:
        if not status.get("migrations_ok", False):
            return "failed"
        for key in ("correlations_ok", "hourly_ok", "daily_ok"):
            if not status.get(key, False):
                return "failed"
        if status.get("degraded_reasons"):
            return "degraded"
        return "success"

    @staticmethod
    def _write_pipeline_status_file(status: Dict[str, Any]) -> None:
        today = date.today().isoformat()
        default_path = f"maintenance_status_{today}.json"
        path = os.getenv("PIPELINE_STATUS_PATH", default_path)
        try:
            with open(path, "w", encoding="utf-8") as fh:
                json.dump(status, fh, indent=2, ensure_ascii=False, default=str)
            log.info("Pipeline status written to %s", path)
        except OSError as e:
            log.warning("Could not write pipeline status file %s: %s", path, e)
