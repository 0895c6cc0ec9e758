from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous fan-out to handlers subscribed by event name or prefix wildcard (``crm.*``)."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        if handler not in self._subscribers[event_name]:
            self._subscribers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = InternalEvent(name=event_name, payload=payload)
        for handler in self._handlers_for(event_name):
            handler(event)

    def _handlers_for(self, event_name: str) -> list[EventHandler]:
        handlers = list(self._subscribers.get(event_name, []))
        for pattern, subscribed in self._subscribers.items():
            if pattern.endswith(".*") and event_name.startswith(pattern[:-1]):
                handlers.extend(subscribed)
        return handlers


event_bus = InProcessEventBus()
