from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from typing import Any

from app.context import get_correlation_id

EventHandler = Callable[[dict[str, Any]], None]

published_events: list[dict[str, Any]] = []
_subscribers: dict[str, list[EventHandler]] = defaultdict(list)


def subscribe(event_type: str, handler: EventHandler) -> None:
    if handler not in _subscribers[event_type]:
        _subscribers[event_type].append(handler)


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        for handler in _subscribers.get(event_type, []):
            handler(envelope)


def events_of_type(event_type: str) -> list[dict[str, Any]]:
    return [event for event in published_events if event.get("event_type") == event_type]
