from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


ALL_EVENTS = "*"


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous fan-out of CRM domain events to in-process subscribers.

    Handlers registered under ``ALL_EVENTS`` receive every event after the specific ones.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        self._subscribers[event_name].append(handler)

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = InternalEvent(name=event_name, payload=payload)
        handlers = [*self._subscribers.get(event_name, []), *self._subscribers.get(ALL_EVENTS, [])]
        for handler in handlers:
            handler(event)


event_bus = InProcessEventBus()
