"""Event bus for match notifications."""

import logging
import threading
from collections.abc import Callable
from typing import Any


class EventBus:
    """Event bus for pub/sub.

    Safe to use from several threads: the subscriber table is guarded by a
    lock and callbacks run outside of it.
    """

    def __init__(self) -> None:
        """Initialize event bus."""
        self.subscribers: dict[str, list[Callable[..., None]]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event: str, callback: Callable[..., None]) -> None:
        """Subscribe to event."""
        with self._lock:
            self.subscribers.setdefault(event, []).append(callback)
        logging.debug(f"Subscribed to event: {event}")

    def emit(self, event: str, /, **data: Any) -> None:
        """Emit event.

        Handler errors are logged and never reach the emitter.
        """
        with self._lock:
            callbacks = list(self.subscribers.get(event, ()))

        if not callbacks:
            return

        logging.debug(f"Emitting event: {event}")
        for callback in callbacks:
            try:
                callback(**data)
            except Exception as e:
                logging.error(f"Error in event handler for {event}: {e}")


class Events:
    """Standard event names.

    FINGERPRINT_MATCHED: A submission matched an existing context
        kwargs: event (MatchEvent)
    CONTEXT_CREATED: A new context was minted from an unmatched submission
        kwargs: event (MatchEvent)
    """

    FINGERPRINT_MATCHED = "fingerprint.matched"  # kwargs: event (MatchEvent)
    CONTEXT_CREATED = "context.created"  # kwargs: event (MatchEvent)
