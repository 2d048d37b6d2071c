"""
Episode Type Registry
=====================
Which episode types exist, how they look, how much they weigh in the
forecast, and which pairs of types may correlate.

The base-strength matrix is symmetric: registering a type writes each of its
correlations in both directions, so a later registration overwrites the value
an earlier one set for the same pair.

Forecast contributors are attached explicitly (attach_contributor) and
checked by validate_contributors() when the forecast engine is built.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from collaborators import ForecastContributor

log = logging.getLogger("episode_registry")

REQUIRED_FIELDS = ("name", "description", "color")

DEFAULT_EPISODE_TYPES: Dict[str, Dict[str, Any]] = {
    "overthinking": {
        "name": "Overthinking",
        "description": "Rumination and thought spirals",
        "color": "#6B46C1",
        "weight": 1.0,
        "correlations": {"anxiety": 0.7, "depression": 0.5, "ptsd": 0.4, "panic": 0.6},
        "enabled": True,
    },
    "anxiety": {
        "name": "Anxiety",
        "description": "Anxiety and worry episodes",
        "color": "#FF6B6B",
        "weight": 0.9,
        "correlations": {"overthinking": 0.7, "panic": 0.8, "ptsd": 0.5, "depression": 0.4},
        "enabled": True,
    },
    "ptsd": {
        "name": "PTSD",
        "description": "PTSD symptoms and triggers",
        "color": "#4ECDC4",
        "weight": 1.1,
        "correlations": {"anxiety": 0.5, "depression": 0.6, "dissociation": 0.7, "panic": 0.6},
        "enabled": True,
    },
    "depression": {
        "name": "Depression",
        "description": "Depression and low mood",
        "color": "#45B7D1",
        "weight": 1.0,
        "correlations": {"overthinking": 0.5, "anxiety": 0.4, "ptsd": 0.6, "caregiver": 0.5},
        "enabled": True,
    },
    "caregiver": {
        "name": "Caregiver Stress",
        "description": "Caregiver burnout and stress",
        "color": "#96CEB4",
        "weight": 0.8,
        "correlations": {"depression": 0.5, "anxiety": 0.6, "overthinking": 0.4},
        "enabled": True,
    },
    "panic": {
        "name": "Panic Attack",
        "description": "Panic attacks and acute anxiety",
        "color": "#FFA07A",
        "weight": 1.2,
        "correlations": {"anxiety": 0.8, "overthinking": 0.6, "ptsd": 0.6},
        "enabled": False,
    },
    "dissociation": {
        "name": "Dissociation",
        "description": "Dissociation and disconnection",
        "color": "#DDA0DD",
        "weight": 1.0,
        "correlations": {"ptsd": 0.7, "anxiety": 0.5, "depression": 0.4},
        "enabled": False,
    },
}


class EpisodeRegistry:
    def __init__(self):
        self._types: Dict[str, Dict[str, Any]] = {}
        self._matrix: Dict[str, Dict[str, float]] = {}
        self._contributors: Dict[str, ForecastContributor] = {}

    # ─── Registration ──────────────────────────────────────

    def register_type(self, episode_type: str, config: Dict[str, Any]) -> None:
        missing = [f for f in REQUIRED_FIELDS if f not in config]
        if missing:
            raise ValueError(
                f"Missing required field(s) {', '.join(missing)} for episode type: {episode_type}"
            )

        correlations = dict(config.get("correlations") or {})
        self._types[episode_type] = {
            "display_name": config["name"],
            "description": config["description"],
            "color": config["color"],
            "weight": float(config.get("weight", 1.0)),
            "correlatable_with": correlations,
            "enabled": bool(config.get("enabled", True)),
        }

        self._matrix.setdefault(episode_type, {})
        for related, strength in correlations.items():
            self._matrix[episode_type][related] = float(strength)
            self._matrix.setdefault(related, {})[episode_type] = float(strength)

        log.debug("Registered episode type %s (%d correlations)", episode_type, len(correlations))

    def attach_contributor(self, episode_type: str, contributor: ForecastContributor) -> None:
        if episode_type not in self._types:
            raise KeyError(f"Unknown episode type: {episode_type}")
        self._contributors[episode_type] = contributor

    def validate_contributors(self, episode_types: Optional[List[str]] = None) -> None:
        """Raise KeyError when an enabled type has no contributor attached."""
        wanted = episode_types if episode_types is not None else self.get_episode_types()
        missing = [t for t in wanted if t in self._types and t not in self._contributors]
        if missing:
            raise KeyError(f"No forecast contributor registered for: {', '.join(missing)}")

    def enable_type(self, episode_type: str) -> None:
        self._types[episode_type]["enabled"] = True

    def disable_type(self, episode_type: str) -> None:
        self._types[episode_type]["enabled"] = False

    # ─── Lookups ───────────────────────────────────────────

    def is_registered(self, episode_type: str) -> bool:
        return episode_type in self._types

    def is_enabled(self, episode_type: str) -> bool:
        return episode_type in self._types and self._types[episode_type]["enabled"]

    def get_episode_types(self, enabled_only: bool = True) -> List[str]:
        return [t for t, cfg in self._types.items() if cfg["enabled"] or not enabled_only]

    def get_type_config(self, episode_type: str) -> Optional[Dict[str, Any]]:
        cfg = self._types.get(episode_type)
        return dict(cfg) if cfg else None

    def display_name(self, episode_type: str) -> str:
        cfg = self._types.get(episode_type)
        return cfg["display_name"] if cfg else episode_type.replace("_", " ").title()

    def color(self, episode_type: str) -> str:
        cfg = self._types.get(episode_type)
        return cfg["color"] if cfg else "#999999"

    def can_correlate(self, type_a: str, type_b: str) -> bool:
        return self._matrix.get(type_a, {}).get(type_b, 0) > 0

    def base_correlation_strength(self, type_a: str, type_b: str) -> float:
        if not self.can_correlate(type_a, type_b):
            return 0.0
        return self._matrix[type_a][type_b]

    def get_type_correlations(self, episode_type: str) -> Dict[str, float]:
        return dict(self._matrix.get(episode_type, {}))

    def get_contributor(self, episode_type: str) -> Optional[ForecastContributor]:
        return self._contributors.get(episode_type)


def default_registry() -> EpisodeRegistry:
    """Registry pre-loaded with the seven built-in episode types."""
    registry = EpisodeRegistry()
    for episode_type, config in DEFAULT_EPISODE_TYPES.items():
        registry.register_type(episode_type, config)
    return registry
