"""Token-keyed observer registry used for worker, queue and credential signals."""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

EventT = TypeVar("EventT")


class Subscription:
    """Disposer returned by `EventChannel.subscribe`; safe to call repeatedly."""

    def __init__(self, channel: EventChannel, token: int) -> None:
        self._channel = channel
        self.token = token

    def __call__(self) -> None:
        self._channel.unsubscribe(self.token)

    dispose = __call__


class EventChannel(Generic[EventT]):
    """Synchronous fan-out of events to subscribed listeners."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._listeners: dict[int, Callable[[EventT], None]] = {}
        self._tokens = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(self, listener: Callable[[EventT], None]) -> Subscription:
        with self._lock:
            token = next(self._tokens)
            self._listeners[token] = listener
        return Subscription(self, token)

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._listeners.pop(token, None) is not None

    def publish(self, event: EventT) -> None:
        """Deliver to every listener; one failing listener does not stop the rest."""

        with self._lock:
            listeners = list(self._listeners.values())
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Listener on %s channel failed", self.name)

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)
