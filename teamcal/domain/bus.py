"""Simple synchronous in-process change bus."""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable


class ChangeBus:
    """Publish/subscribe bus for store change notifications, keyed by path.

    Handlers are called synchronously in registration order.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Callable]] = defaultdict(list)

    def subscribe(self, path: str, handler: Callable) -> Callable[[], None]:
        self._subscribers[path].append(handler)

        def _unsubscribe() -> None:
            handlers = self._subscribers.get(path, [])
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def publish(self, path: str, event: Any) -> None:
        for handler in list(self._subscribers.get(path, [])):
            handler(event)

    def subscriber_count(self, path: str) -> int:
        return len(self._subscribers.get(path, []))
