"""
Status subscription bus.

Observers register per transfer id (or globally, for every transfer) and are
invoked synchronously, in registration order, for each published snapshot.
A failing observer is logged and skipped; it never blocks the others.
"""

from typing import Any, Callable

import structlog

logger = structlog.get_logger()

Observer = Callable[[Any], None]


class StatusBus:
    """Publish/subscribe keyed by transfer id."""

    def __init__(self) -> None:
        self._observers: dict[str, list[Observer]] = {}
        self._listeners: list[Observer] = []

    def subscribe(self, key: str, observer: Observer) -> Callable[[], None]:
        """
        Register an observer for one key.

        Returns:
            A function that deregisters the observer; calling it more than
            once, or after the key was dropped, does nothing.
        """
        self._observers.setdefault(key, []).append(observer)

        def unsubscribe() -> None:
            observers = self._observers.get(key)
            if observers and observer in observers:
                observers.remove(observer)

        return unsubscribe

    def add_listener(self, listener: Observer) -> Callable[[], None]:
        """Register an observer for every key."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def observer_count(self, key: str) -> int:
        return len(self._observers.get(key, []))

    def drop(self, key: str) -> None:
        """Forget all observers of a key."""
        self._observers.pop(key, None)

    def publish(self, key: str, event: Any) -> None:
        """Deliver `event` to the key's observers, then to global listeners."""
        # Copy so observers may unsubscribe during delivery
        for observer in list(self._observers.get(key, [])) + list(self._listeners):
            self.deliver(key, observer, event)

    def deliver(self, key: str, observer: Observer, event: Any) -> None:
        """Invoke a single observer, isolating its failures."""
        try:
            observer(event)
        except Exception:
            logger.error(
                "observer_failed",
                key=key,
                observer=getattr(observer, "__qualname__", repr(observer)),
                exc_info=True,
            )
