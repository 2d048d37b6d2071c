"""
FastAPI surface for the episode correlation and forecast engines.

Engines are built once per process by get_services(); tests swap it out with
monkeypatch.
"""

from __future__ import annotations

import logging
import os
import uuid
from functools import lru_cache
from typing import Any, Dict

from fastapi import BackgroundTasks, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from constants import DEFAULT_WINDOW, FORECAST_WINDOWS
from db_utils import to_jsonable
from forecast_engine import is_access_denied
from pipeline.migrations import schema_audit
from services import Services, build_services

log = logging.getLogger("api")


# ─── App setup ─────────────────────────────────────────────

app = FastAPI(title="Episode Forecast API", version="1.0.0")

_origin_env = os.getenv("FRONTEND_ORIGINS", "")
_origins = [o.strip() for o in _origin_env.split(",") if o.strip()] or [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def get_services() -> Services:
    return build_services()


class DetectRequest(BaseModel):
    use_ai: bool = True


active_jobs: Dict[str, Dict[str, Any]] = {}


def _check_window(window: str) -> None:
    if window not in FORECAST_WINDOWS:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown forecast window: {window}. Expected one of {', '.join(FORECAST_WINDOWS)}",
        )


# ─── Routes ────────────────────────────────────────────────

@app.get("/")
def root() -> Dict[str, Any]:
    return {"service": "episode-forecast-api", "status": "ok"}


@app.get("/health-check")
def health_check() -> JSONResponse:
    try:
        get_services().store.count_episodes(0)
        return JSONResponse({"status": "Online", "message": "Online"})
    except Exception as e:
        return JSONResponse(
            status_code=200,
            content={
                "status": "Waking up",
                "message": f"Service starting or DB unavailable: {e}",
            },
        )


@app.get("/api/v1/forecast/{user_id}")
def forecast(user_id: int, window: str = Query(default=DEFAULT_WINDOW)) -> Any:
    _check_window(window)
    try:
        data = get_services().forecast_engine.get_forecast_api_data(user_id, window)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        log.error("Forecast failed for user %s/%s: %s", user_id, window, e)
        raise HTTPException(status_code=500, detail=str(e))

    if is_access_denied(data):
        return JSONResponse(status_code=403, content=data)
    return data


@app.get("/api/v1/correlations/{user_id}")
def user_correlations(user_id: int, limit: int = Query(default=10, ge=1, le=50)) -> Dict[str, Any]:
    try:
        insights = get_services().correlation_engine.get_user_correlations(user_id, limit)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"user_id": user_id, "correlations": to_jsonable(insights)}


@app.get("/api/v1/correlations/{user_id}/risk-factors")
def correlation_risk_factors(user_id: int,
                             window: str = Query(default=DEFAULT_WINDOW)) -> Dict[str, Any]:
    _check_window(window)
    try:
        factors = get_services().correlation_engine.get_correlation_risk_factors(user_id, window)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"user_id": user_id, "window": window, "risk_factors": factors}


def run_detection_background(job_id: str, episode_id: int, use_ai: bool) -> None:
    try:
        summary = get_services().correlation_engine.detect_correlations(episode_id, use_ai=use_ai)
        active_jobs[job_id] = {"status": "completed", "result": summary}
    except Exception as e:
        log.error("Correlation detection job %s failed: %s", job_id, e)
        active_jobs[job_id] = {"status": "failed", "error": str(e)}


@app.post("/api/v1/episodes/{episode_id}/correlations", status_code=202)
def detect_correlations(episode_id: int, background_tasks: BackgroundTasks,
                        body: DetectRequest = DetectRequest()) -> Dict[str, Any]:
    job_id = str(uuid.uuid4())
    active_jobs[job_id] = {"status": "processing", "episode_id": episode_id}
    background_tasks.add_task(run_detection_background, job_id, episode_id, body.use_ai)
    return {"job_id": job_id, "status": "processing", "episode_id": episode_id}


@app.get("/api/v1/jobs/{job_id}")
def get_job_status(job_id: str) -> Dict[str, Any]:
    job_data = active_jobs.get(job_id)
    if not job_data:
        raise HTTPException(status_code=404, detail="Job not found or expired")
    return job_data


@app.get("/api/v1/admin/migration-audit")
def migration_audit() -> Dict[str, Any]:
    try:
        return schema_audit(get_services().settings.conn_str)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
