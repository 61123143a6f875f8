"""Thread-safe observer streams for link events.

``EventStream`` replays its most recent value to new subscribers;
``HistoryStream`` replays a bounded window of past values.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Callable, Deque, Generic, List, Optional, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
Subscriber = Callable[[T], None]


class _Stream(Generic[T]):
    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._subscribers: List[Subscriber] = []

    def _replay(self) -> List[T]:
        raise NotImplementedError

    def _record(self, value: T) -> None:
        raise NotImplementedError

    def subscribe(self, callback: Subscriber, *, replay: bool = True) -> Callable[[], None]:
        """Register ``callback`` and return a function that unregisters it."""
        with self._lock:
            self._subscribers.append(callback)
            backlog = self._replay() if replay else []

        for value in backlog:
            self._deliver(callback, value)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, value: T) -> None:
        with self._lock:
            self._record(value)
            subscribers = list(self._subscribers)

        for callback in subscribers:
            self._deliver(callback, value)

    def _deliver(self, callback: Subscriber, value: T) -> None:
        try:
            callback(value)
        except Exception:
            LOGGER.exception("Subscriber of %s stream failed", self.name)


class EventStream(_Stream[T]):
    def __init__(self, name: str, initial: Optional[T] = None) -> None:
        super().__init__(name)
        self._latest: Optional[T] = initial
        self._has_value = initial is not None

    @property
    def value(self) -> Optional[T]:
        with self._lock:
            return self._latest

    def _replay(self) -> List[T]:
        return [self._latest] if self._has_value else []

    def _record(self, value: T) -> None:
        self._latest = value
        self._has_value = True


class HistoryStream(_Stream[T]):
    def __init__(self, name: str, maxlen: int = 100) -> None:
        super().__init__(name)
        self._history: Deque[T] = deque(maxlen=maxlen)

    def history(self) -> List[T]:
        with self._lock:
            return list(self._history)

    def clear(self) -> None:
        with self._lock:
            self._history.clear()

    def _replay(self) -> List[T]:
        return list(self._history)

    def _record(self, value: T) -> None:
        self._history.append(value)
