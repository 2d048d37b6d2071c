"""
Contract/behavior tests for src/api.py.

Route functions are called directly against in-memory services:
- forecast payload shape, membership denial (403) and window validation (400)
- correlation insights and risk factors
- background detection jobs and job status
- health check and migration audit fallbacks
"""

import json
import os
import sys
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from fastapi import BackgroundTasks, HTTPException

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))
import api as api_mod
from config import Settings
from conftest import NOW, FakeClock, log_pairs
from services import build_services


@pytest.fixture
def services(monkeypatch):
    svc = build_services(Settings(), clock=FakeClock())
    monkeypatch.setattr(api_mod, "get_services", lambda: svc)
    monkeypatch.setattr(api_mod, "active_jobs", {})
    return svc


def _body(response):
    return json.loads(response.body)


def test_root_reports_ok():
    assert api_mod.root()["status"] == "ok"


def test_health_check_online(services):
    out = _body(api_mod.health_check())
    assert out["status"] == "Online"


def test_health_check_waking_up(services):
    services.store = MagicMock()
    services.store.count_episodes.side_effect = RuntimeError("connection refused")

    response = api_mod.health_check()

    assert response.status_code == 200
    assert _body(response)["status"] == "Waking up"
    assert "connection refused" in _body(response)["message"]


def test_forecast_payload(services):
    services.store.add_episode(1, "anxiety", NOW - timedelta(days=1), 6)

    out = api_mod.forecast(1, window="24_hour")

    assert out["window"] == "24_hour"
    assert out["risk"]["level"] in {"low", "moderate", "high", "critical"}
    assert 0.0 <= out["risk"]["score"] <= 1.0
    assert isinstance(out["generated_at"], str)
    assert out["episode_risks"][0]["name"] == "Anxiety"


def test_forecast_denied_is_403(services):
    response = api_mod.forecast(1, window="30_day")

    assert response.status_code == 403
    body = _body(response)
    assert body["error"] == "insufficient_membership"
    assert body["required_level"] == "platinum"
    assert body["message"] == "The 30 Day Outlook requires Platinum membership"


def test_forecast_unlocked_by_membership(services):
    services.user_data.set_memberships(1, ["Platinum Annual"])
    out = api_mod.forecast(1, window="30_day")
    assert out["window"] == "30_day"


def test_forecast_unknown_window_is_400(services):
    with pytest.raises(HTTPException) as exc:
        api_mod.forecast(1, window="2_week")
    assert exc.value.status_code == 400


def test_forecast_engine_error_is_500(services, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("store offline")

    monkeypatch.setattr(services.forecast_engine, "get_forecast_api_data", boom)
    with pytest.raises(HTTPException) as exc:
        api_mod.forecast(1, window="24_hour")
    assert exc.value.status_code == 500


def test_correlations_are_json_safe(services):
    for _o, anxiety in log_pairs(services.store):
        services.correlation_engine.detect_correlations(anxiety.episode_id, use_ai=False)

    out = api_mod.user_correlations(1, limit=5)

    assert out["user_id"] == 1
    assert out["correlations"]
    assert len(out["correlations"]) <= 5
    json.dumps(out)
    titles = [c["title"] for c in out["correlations"]]
    assert "Anxiety and Overthinking Often Occur Together" in titles


def test_risk_factors_route(services):
    out = api_mod.correlation_risk_factors(1, window="7_day")
    assert out == {"user_id": 1, "window": "7_day", "risk_factors": []}


def test_risk_factors_unknown_window(services):
    with pytest.raises(HTTPException) as exc:
        api_mod.correlation_risk_factors(1, window="yearly")
    assert exc.value.status_code == 400


def test_detect_queues_background_job(services):
    pairs = log_pairs(services.store)
    episode_id = pairs[-1][1].episode_id
    tasks = BackgroundTasks()

    out = api_mod.detect_correlations(episode_id, tasks, api_mod.DetectRequest(use_ai=False))

    assert out["status"] == "processing"
    assert len(tasks.tasks) == 1
    assert api_mod.get_job_status(out["job_id"])["status"] == "processing"

    api_mod.run_detection_background(out["job_id"], episode_id, False)

    job = api_mod.get_job_status(out["job_id"])
    assert job["status"] == "completed"
    assert job["result"]["status"] == "ok"
    assert job["result"]["inserted"] > 0


def test_failed_background_job_reports_error(services, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("lock timeout")

    monkeypatch.setattr(services.correlation_engine, "detect_correlations", boom)
    api_mod.run_detection_background("job-1", 42, True)

    job = api_mod.get_job_status("job-1")
    assert job == {"status": "failed", "error": "lock timeout"}


def test_unknown_job_is_404(services):
    with pytest.raises(HTTPException) as exc:
        api_mod.get_job_status("missing")
    assert exc.value.status_code == 404


def test_migration_audit_without_database(services, monkeypatch):
    monkeypatch.delenv("POSTGRES_CONNECTION_STRING", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    out = api_mod.migration_audit()

    assert out["ok"] is False
    assert "not configured" in out["error"]
