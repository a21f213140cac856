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
    """Synchronous fan-out of domain events.

    Handlers subscribe to an exact name (``entity.moved``) or to a whole
    namespace (``invitation.*``). Exact subscribers run first, then namespace
    subscribers, each in subscription order.
    """

    def __init__(self) -> None:
        self._exact: dict[str, list[EventHandler]] = defaultdict(list)
        self._namespaces: dict[str, list[EventHandler]] = defaultdict(list)

    def _bucket(self, pattern: str) -> tuple[dict[str, list[EventHandler]], str]:
        if pattern.endswith(".*"):
            return self._namespaces, pattern[:-2]
        return self._exact, pattern

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        bucket, key = self._bucket(pattern)
        if handler not in bucket[key]:
            bucket[key].append(handler)

    def unsubscribe(self, pattern: str, handler: EventHandler) -> None:
        bucket, key = self._bucket(pattern)
        handlers = bucket.get(key, [])
        if handler in handlers:
            handlers.remove(handler)

    def handlers_for(self, event_name: str) -> list[EventHandler]:
        namespace = event_name.split(".", 1)[0]
        return [*self._exact.get(event_name, []), *self._namespaces.get(namespace, [])]

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = InternalEvent(name=event_name, payload=payload)
        for handler in self.handlers_for(event_name):
            handler(event)


event_bus = InProcessEventBus()
