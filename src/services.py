"""
Service wiring: builds the stores, registry and both engines from Settings.

PostgreSQL backs everything when a connection string is configured;
otherwise the in-memory stores are used (local runs, demos).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from ai_service import HttpAIService
from config import Settings, load_settings
from contributors import attach_history_contributors
from correlation_engine import CorrelationEngine
from episode_registry import EpisodeRegistry, default_registry
from episode_store import InMemoryEpisodeStore, PostgresEpisodeStore
from events import EventBus
from forecast_cache import InMemoryForecastCache, PostgresForecastCache
from forecast_engine import ForecastEngine
from membership import TitleMembershipService
from pattern_detector import PatternDetector
from user_data import InMemoryUserDataStore, PostgresUserDataStore

log = logging.getLogger("services")


@dataclass
class Services:
    settings: Settings
    store: Any
    user_data: Any
    registry: EpisodeRegistry
    patterns: PatternDetector
    events: EventBus
    correlation_engine: CorrelationEngine
    forecast_engine: ForecastEngine


def build_services(settings: Optional[Settings] = None,
                   clock: Callable[[], datetime] = datetime.now) -> Services:
    settings = settings or load_settings()

    if settings.conn_str:
        store = PostgresEpisodeStore(settings.conn_str)
        user_data = PostgresUserDataStore(settings.conn_str, settings.default_enabled_episodes, clock)
        cache = PostgresForecastCache(settings.conn_str, clock)
        log.info("Using PostgreSQL stores")
    else:
        store = InMemoryEpisodeStore(clock)
        user_data = InMemoryUserDataStore(settings.default_enabled_episodes, clock)
        cache = InMemoryForecastCache(clock)
        log.warning("No database configured; using in-memory stores")

    ai_service = None
    if settings.ai_configured:
        ai_service = HttpAIService(
            settings.ai_service_url, settings.ai_service_api_key, settings.ai_timeout_seconds
        )

    registry = default_registry()
    patterns = PatternDetector(store, clock)
    attach_history_contributors(registry, store, patterns, clock)
    events = EventBus()

    correlation_engine = CorrelationEngine(
        store, store, registry,
        risk_function=patterns.calculate_risk_score,
        ai_service=ai_service,
        events=events,
        clock=clock,
        ai_timeout_seconds=settings.ai_timeout_seconds,
    )
    forecast_engine = ForecastEngine(
        registry,
        TitleMembershipService(user_data),
        store,
        store,
        cache,
        pattern_source=patterns,
        correlation_engine=correlation_engine,
        preferences=user_data,
        coping=user_data,
        biology=user_data,
        ai_service=ai_service,
        ai_enabled=settings.ai_features_enabled,
        events=events,
        clock=clock,
        ai_timeout_seconds=settings.ai_timeout_seconds,
    )
    return Services(
        settings=settings,
        store=store,
        user_data=user_data,
        registry=registry,
        patterns=patterns,
        events=events,
        correlation_engine=correlation_engine,
        forecast_engine=forecast_engine,
    )
