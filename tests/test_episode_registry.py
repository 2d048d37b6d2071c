"""Episode type registry, event bus and forecast cache."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from episode_registry import EpisodeRegistry, default_registry
from events import EventBus
from forecast_cache import InMemoryForecastCache, forecast_cache_key


class TestRegistry:

    def test_defaults(self, registry):
        assert registry.get_episode_types() == [
            "overthinking", "anxiety", "ptsd", "depression", "caregiver",
        ]
        assert "panic" in registry.get_episode_types(enabled_only=False)
        assert registry.display_name("caregiver") == "Caregiver Stress"

    def test_matrix_is_symmetric(self, registry):
        for a in registry.get_episode_types(enabled_only=False):
            for b, strength in registry.get_type_correlations(a).items():
                assert registry.base_correlation_strength(b, a) == strength

    def test_later_registration_overwrites_pair(self):
        registry = EpisodeRegistry()
        registry.register_type("a", {"name": "A", "description": "", "color": "#000",
                                     "correlations": {"b": 0.3}})
        registry.register_type("b", {"name": "B", "description": "", "color": "#111",
                                     "correlations": {"a": 0.9}})
        assert registry.base_correlation_strength("a", "b") == 0.9

    def test_incompatible_pair(self, registry):
        assert not registry.can_correlate("caregiver", "panic")
        assert registry.base_correlation_strength("caregiver", "panic") == 0.0

    def test_missing_fields_rejected(self):
        with pytest.raises(ValueError, match="color"):
            EpisodeRegistry().register_type("x", {"name": "X", "description": "d"})

    def test_unknown_type_falls_back(self, registry):
        assert registry.display_name("burn_out") == "Burn Out"
        assert registry.color("burn_out") == "#999999"

    def test_contributors_validated(self):
        registry = default_registry()
        with pytest.raises(KeyError):
            registry.validate_contributors()
        for episode_type in registry.get_episode_types():
            registry.attach_contributor(episode_type, MagicMock())
        registry.validate_contributors()

    def test_attach_to_unknown_type(self, registry):
        with pytest.raises(KeyError):
            registry.attach_contributor("burn_out", MagicMock())


class TestEventBus:

    def test_failing_subscriber_does_not_block_others(self):
        bus = EventBus()
        seen = []

        def broken(**kw):
            raise RuntimeError("boom")

        bus.subscribe("x", broken)
        bus.subscribe("x", lambda **kw: seen.append(kw["value"]))

        assert bus.publish("x", value=1) == 1
        assert seen == [1]

    def test_unsubscribe(self):
        bus = EventBus()
        callback = MagicMock()
        bus.subscribe("x", callback)
        bus.unsubscribe("x", callback)
        assert bus.publish("x") == 0
        callback.assert_not_called()


class TestForecastCache:

    def test_ttl(self, clock):
        cache = InMemoryForecastCache(clock)
        key = forecast_cache_key(1, "24_hour")
        cache.set(key, {"risk": 0.2}, 60)

        assert cache.get(key) == {"risk": 0.2}
        clock.advance(seconds=60)
        assert cache.get(key) is None
        assert len(cache) == 0

    def test_last_write_wins(self, clock):
        cache = InMemoryForecastCache(clock)
        cache.set("k", {"v": 1}, 60)
        cache.set("k", {"v": 2}, 60)
        assert cache.get("k") == {"v": 2}

    def test_key_format(self):
        assert forecast_cache_key(7, "3_day") == "forecast:7:3_day"
