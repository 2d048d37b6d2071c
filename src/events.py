"""Explicit publish/subscribe channel for engine notifications."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

log = logging.getLogger("events")

CORRELATION_DISCOVERED = "correlation_discovered"
CORRELATION_PATTERN_DETECTED = "correlation_pattern_detected"
FORECAST_GENERATED = "forecast_generated"

Subscriber = Callable[..., Any]


class EventBus:
    """In-process event channel; subscribers never break the publisher."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Subscriber]] = defaultdict(list)

    def subscribe(self, event: str, callback: Subscriber) -> None:
        self._subscribers[event].append(callback)

    def unsubscribe(self, event: str, callback: Subscriber) -> None:
        if callback in self._subscribers.get(event, []):
            self._subscribers[event].remove(callback)

    def publish(self, event: str, **payload: Any) -> int:
        """Deliver *payload* to every subscriber; return how many succeeded."""
        delivered = 0
        for callback in list(self._subscribers.get(event, [])):
            try:
                callback(**payload)
                delivered += 1
            except Exception as e:
                log.warning("Subscriber %r failed on %s: %s", callback, event, e)
        return delivered
