"""
Shared test configuration.

Adds both the project root and src/ to sys.path so flat modules
(correlation_engine, forecast_engine, ...) import with plain
`import module_name`, and provides in-memory engine fixtures driven by a
controllable clock.
"""

import os
import sys
from datetime import datetime, timedelta

import pytest

_project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
_src_dir = os.path.join(_project_root, "src")

if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

if _src_dir not in sys.path:
    sys.path.insert(1, _src_dir)

from contributors import attach_history_contributors  # noqa: E402
from correlation_engine import CorrelationEngine  # noqa: E402
from episode_registry import default_registry  # noqa: E402
from episode_store import InMemoryEpisodeStore  # noqa: E402
from events import EventBus  # noqa: E402
from forecast_cache import InMemoryForecastCache  # noqa: E402
from forecast_engine import ForecastEngine  # noqa: E402
from membership import TitleMembershipService  # noqa: E402
from pattern_detector import PatternDetector  # noqa: E402
from user_data import InMemoryUserDataStore  # noqa: E402

# Wednesday, noon
NOW = datetime(2026, 3, 4, 12, 0)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryEpisodeStore(clock)


@pytest.fixture
def user_data(clock):
    return InMemoryUserDataStore(clock=clock)


@pytest.fixture
def registry():
    return default_registry()


@pytest.fixture
def patterns(store, clock):
    return PatternDetector(store, clock)


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def correlation_engine(store, registry, patterns, events, clock):
    return CorrelationEngine(
        store, store, registry,
        risk_function=patterns.calculate_risk_score,
        events=events,
        clock=clock,
    )


@pytest.fixture
def make_forecast_engine(store, user_data, registry, patterns, correlation_engine, events, clock):
    """Factory so individual tests can swap the AI service or other collaborators."""
    attach_history_contributors(registry, store, patterns, clock)

    def _make(**overrides):
        kwargs = dict(
            pattern_source=patterns,
            correlation_engine=correlation_engine,
            preferences=user_data,
            coping=user_data,
            biology=user_data,
            events=events,
            clock=clock,
            ai_timeout_seconds=1.0,
        )
        kwargs.update(overrides)
        return ForecastEngine(
            registry,
            TitleMembershipService(user_data),
            store,
            store,
            InMemoryForecastCache(clock),
            **kwargs,
        )

    return _make


@pytest.fixture
def forecast_engine(make_forecast_engine):
    return make_forecast_engine()


def log_pairs(store, user_id=1, pairs=5, start=None, first="overthinking", second="anxiety",
              gap_hours=1, every_days=2, severity=6):
    """Log *pairs* (first, second) episode pairs *gap_hours* apart, one pair every *every_days*."""
    start = start or NOW - timedelta(days=every_days * pairs)
    logged = []
    for i in range(pairs):
        at = start + timedelta(days=every_days * i)
        a = store.add_episode(user_id, first, at, severity)
        b = store.add_episode(user_id, second, at + timedelta(hours=gap_hours), severity)
        logged.append((a, b))
    return logged
