"""Explicit observer registration for process notifications."""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Generic, TypeVar

from procpipe.logging import get_logger

__all__ = ["Observers"]

logger = get_logger(__name__)

T = TypeVar("T")


class Observers(Generic[T]):
    """Thread-safe list of callbacks for one kind of notification.

    Any number of observers may subscribe. Delivery calls them one after
    another on the emitting thread; the order between observers is not
    part of the contract.

    Attributes:
        name: Channel name used in log records.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[T], None]] = []

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Register a callback.

        Returns:
            A function that removes this registration when called.
        """
        with self._lock:
            self._callbacks.append(callback)
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: Callable[[T], None]) -> bool:
        """Remove a callback. Returns False if it was not registered."""
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                return False
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._callbacks)

    def _snapshot(self) -> list[Callable[[T], None]]:
        with self._lock:
            return list(self._callbacks)

    def emit(self, event: T) -> None:
        """Deliver an event, letting observer exceptions propagate."""
        for callback in self._snapshot():
            callback(event)

    def emit_safely(self, event: T) -> None:
        """Deliver an event, logging and dropping observer exceptions."""
        for callback in self._snapshot():
            try:
                callback(event)
            except Exception:
                logger.exception("observer_raised", channel=self.name)
