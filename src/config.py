"""Runtime settings resolved from the environment (.env supported)."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

from constants import DEFAULT_ENABLED_EPISODES
from db_utils import get_conn_str

load_dotenv()


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name, "")
    items = [item.strip() for item in raw.split(",") if item.strip()]
    return items or list(default)


@dataclass
class Settings:
    conn_str: str = ""
    ai_service_url: str = ""
    ai_service_api_key: str = ""
    ai_timeout_seconds: float = 10.0
    ai_features_enabled: bool = True
    default_enabled_episodes: List[str] = field(
        default_factory=lambda: list(DEFAULT_ENABLED_EPISODES)
    )

    @property
    def ai_configured(self) -> bool:
        return bool(self.ai_service_url) and self.ai_features_enabled


def load_settings() -> Settings:
    """Build Settings from environment variables."""
    return Settings(
        conn_str=get_conn_str(),
        ai_service_url=os.getenv("AI_SERVICE_URL", "").strip(),
        ai_service_api_key=os.getenv("AI_SERVICE_API_KEY", "").strip(),
        ai_timeout_seconds=_env_float("AI_TIMEOUT_SECONDS", 10.0),
        ai_features_enabled=_env_flag("AI_FEATURES_ENABLED", "1"),
        default_enabled_episodes=_env_list("DEFAULT_ENABLED_EPISODES", DEFAULT_ENABLED_EPISODES),
    )
