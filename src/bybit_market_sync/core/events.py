from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Generic, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


class EventChannel(Generic[T]):
    """Typed fan-out point for a single kind of event.

    Listeners run synchronously, in registration order, on the publisher's
    event loop. A failing listener is logged and skipped; it never reaches the
    publisher and never prevents later listeners from running.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._listeners: list[Callable[[T], None]] = []

    @property
    def name(self) -> str:
        return self._name

    def __len__(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: Callable[[T], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def publish(self, payload: T) -> None:
        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception:
                logger.exception("Event listener failed", extra={"channel": self._name})
