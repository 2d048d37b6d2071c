"""
AI Service Client
=================
Optional HTTP client for the external correlation / risk-prediction service.

Every call is bounded twice: requests' own timeout per attempt, and
call_with_timeout() around the whole retried call at the engine seam, so a
hung service can never hold a forecast hostage.

Endpoints (JSON):
  POST {base}/correlations/detect   {user_id, window_days}       -> {correlations: [...]}
  POST {base}/forecast/predict      {user_id, window, forecast}  -> {predictions, risk_adjustment,
                                                                     confidence, insights,
                                                                     high_risk_periods}
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from db_utils import to_jsonable

log = logging.getLogger("ai_service")

TRANSIENT_ERRORS = (requests.ConnectionError, requests.Timeout)


class AIServiceError(RuntimeError):
    """The AI service answered, but not with something usable."""


def call_with_timeout(fn: Callable[..., Any], timeout_seconds: float, *args: Any, **kwargs: Any) -> Any:
    """Run *fn* on a worker thread; raise concurrent.futures.TimeoutError past the deadline.

    The worker is not joined on timeout, so a stuck call only costs a thread.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ai-call")
    try:
        future = executor.submit(fn, *args, **kwargs)
        return future.result(timeout=timeout_seconds)
    finally:
        executor.shutdown(wait=False)


class HttpAIService:
    def __init__(self, base_url: str, api_key: str = "", timeout_seconds: float = 10.0,
                 session: Optional[requests.Session] = None):
        if not base_url:
            raise ValueError("AI service base URL is required")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        reraise=True,
    )
    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST with one retry on connection errors / timeouts."""
        resp = self.session.post(
            f"{self.base_url}{path}",
            json=to_jsonable(payload),
            headers=self._headers(),
            timeout=self.timeout_seconds,
        )
        resp.raise_for_status()
        try:
            body = resp.json()
        except ValueError as e:
            raise AIServiceError(f"Non-JSON response from {path}") from e
        if not isinstance(body, dict):
            raise AIServiceError(f"Unexpected response shape from {path}: {type(body).__name__}")
        return body

    def detect_correlations(self, user_id: int, window_days: int) -> List[Dict[str, Any]]:
        body = self._post("/correlations/detect", {"user_id": user_id, "window_days": window_days})
        correlations = body.get("correlations") or []
        return [c for c in correlations if isinstance(c, dict)]

    def predict_episode_risk(self, user_id: int, window: str,
                             forecast: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        context = {
            k: forecast.get(k)
            for k in ("overall_risk", "confidence", "episode_risks", "active_patterns",
                      "correlation_risks", "biological_factors")
        }
        body = self._post(
            "/forecast/predict",
            {"user_id": user_id, "window": window, "forecast": context},
        )
        log.debug("AI prediction for user %s/%s: keys=%s", user_id, window, sorted(body))
        return body or None
