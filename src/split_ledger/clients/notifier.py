"""Room broadcasters for ledger change notifications."""

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from ..config import Settings
from ..exceptions import TransportError

logger = logging.getLogger(__name__)

# Event names shared with the client application
TRANSACTION_UPDATE = "transaction-update"
BALANCE_UPDATE = "balance-update"
GROUP_SETTLED = "group-settled"
BUDGET_ALERT = "budget-alert"
BUDGET_CREATED = "budget-created"
BUDGET_UPDATED = "budget-updated"
BUDGET_DELETED = "budget-deleted"


def group_room(group_id: int) -> str:
    """Name of the broadcast room for a group."""
    return f"group-{group_id}"


class Broadcaster(Protocol):
    """Anything that can publish an event to a room.

    Delivery failures are raised as TransportError.
    """

    def emit(self, room: str, event: str, payload: dict[str, Any]) -> None: ...


class WebhookBroadcaster:
    """Client for a socket relay that fans events out to room subscribers."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize the relay client."""
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.client = httpx.Client(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def close(self):
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

    def emit(self, room: str, event: str, payload: dict[str, Any]) -> None:
        """
        Publish an event to a room.

        Raises:
            TransportError: If the relay is unreachable or rejects the event
        """
        try:
            response = self.client.post(
                "/emit", json={"room": room, "event": event, "payload": payload}
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise TransportError(f"Failed to emit {event} to {room}: {e}") from e

        logger.debug(f"Emitted {event} to {room}")


class LoggingBroadcaster:
    """Writes events to the log instead of a network relay."""

    def emit(self, room: str, event: str, payload: dict[str, Any]) -> None:
        logger.info(f"[{room}] {event}")


@dataclass
class EmittedEvent:
    """An event captured by RecordingBroadcaster."""

    room: str
    event: str
    payload: dict[str, Any]


@dataclass
class RecordingBroadcaster:
    """Keeps every emitted event in memory."""

    events: list[EmittedEvent] = field(default_factory=list)

    def emit(self, room: str, event: str, payload: dict[str, Any]) -> None:
        self.events.append(EmittedEvent(room=room, event=event, payload=payload))

    def named(self, event: str) -> list[EmittedEvent]:
        """Events with the given name, oldest first."""
        return [emitted for emitted in self.events if emitted.event == event]


def build_broadcaster(settings: Settings) -> Broadcaster:
    """Pick the relay client when configured, otherwise log events."""
    if settings.notify_url:
        return WebhookBroadcaster(
            settings.notify_url,
            token=settings.notify_token,
            timeout=settings.notify_timeout,
        )
    return LoggingBroadcaster()
