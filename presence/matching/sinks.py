"""Event sinks for match notifications.

Delivery is best effort: the coordinator logs sink failures and never rolls
back a decision because of them.
"""

from __future__ import annotations

import logging

import requests

from presence.core.event_bus import EventBus
from presence.core.models import MatchEvent

logger = logging.getLogger(__name__)


class EventBusSink:
    """Publish events on an in-process EventBus.

    Subscribers receive the event as the ``event`` keyword argument, under
    the event's type as the event name.
    """

    def __init__(self, bus: EventBus):
        self.bus = bus

    def publish(self, event: MatchEvent) -> None:
        self.bus.emit(event.type, event=event)


class HttpEventSink:
    """POST events as JSON to an external events endpoint."""

    def __init__(
        self,
        endpoint: str,
        timeout_seconds: float = 2.0,
        session: requests.Session | None = None,
    ):
        """Initialize sink.

        Args:
            endpoint: URL receiving ``{type, source, timestamp, payload}``
            timeout_seconds: Per-request timeout
            session: Optional session (connection pooling, testing)
        """
        self.endpoint = endpoint
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def publish(self, event: MatchEvent) -> None:
        """Send one event.

        Raises:
            requests.RequestException: On connection errors or non-2xx replies
        """
        response = self.session.post(
            self.endpoint,
            json=event.to_dict(),
            timeout=self.timeout_seconds,
        )
        response.raise_for_status()
        logger.debug(f"Event {event.type} published successfully")
