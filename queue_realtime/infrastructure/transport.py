"""
Event transport abstraction for the queue realtime core.

This module defines the EventTransport protocol (interface) that abstracts the
bidirectional connection to the queue event server. The connection manager
depends on this abstraction, not on a specific websocket library, so tests can
substitute an in-memory transport.
"""

import json
from collections.abc import Callable
from typing import Any, Protocol


class EventTransport(Protocol):
    """
    Protocol defining one bidirectional connection to the event server.

    A transport instance is single-use: it is opened once, used, and closed.
    Reconnection creates a new instance through a TransportFactory.
    """

    async def open(self, url: str, timeout: float) -> str:
        """
        Perform the handshake.

        Args:
            url: Event server URL
            timeout: Handshake timeout in seconds

        Returns:
            str: Opaque transport identifier

        Raises:
            TransportError: If the handshake fails
        """
        ...

    async def send(self, event_name: str, payload: Any) -> None:
        """
        Send one event frame.

        Raises:
            TransportError: If the frame could not be written
        """
        ...

    async def receive(self) -> tuple[str, Any]:
        """
        Wait for the next event frame.

        Returns:
            tuple: (event name, payload)

        Raises:
            TransportClosedError: When the connection is closed
            ValueError: When a frame cannot be decoded (the connection stays usable)
        """
        ...

    async def close(self) -> None:
        """Close the connection; closing twice is a no-op."""
        ...

    def is_open(self) -> bool:
        """Check whether the connection is usable."""
        ...


TransportFactory = Callable[[], EventTransport]


def encode_frame(event_name: str, payload: Any) -> str:
    """Encode an event as a JSON text frame: {"event": name, "data": payload}."""
    return json.dumps({"event": event_name, "data": payload})


def decode_frame(raw: str | bytes) -> tuple[str, Any]:
    """
    Decode a JSON text frame.

    Raises:
        ValueError: If the frame is not a JSON object with a string "event" field
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")

    try:
        frame = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Frame is not valid JSON: {e}") from e

    if not isinstance(frame, dict):
        raise ValueError("Frame must be a JSON object")

    event_name = frame.get("event")
    if not isinstance(event_name, str) or not event_name:
        raise ValueError("Frame is missing the 'event' field")

    return event_name, frame.get("data")
