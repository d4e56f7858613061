"""
Websocket implementation of the EventTransport protocol.

Wraps the websockets client so the connection manager stays independent of
library details. Frames are JSON text messages (see transport.encode_frame).
"""

from typing import Any
from uuid import uuid4

import websockets
from websockets.exceptions import ConnectionClosed

from ..exceptions import TransportClosedError, TransportError
from ..structured_logging.enhanced_logging_config import get_logger
from .transport import decode_frame, encode_frame

logger = get_logger(__name__)


def to_websocket_url(url: str) -> str:
    """Convert an http(s) server URL to its ws(s) equivalent."""
    if url.startswith("https://"):
        return "wss://" + url[len("https://") :]
    if url.startswith("http://"):
        return "ws://" + url[len("http://") :]
    return url


class WebSocketTransport:
    """
    Websocket implementation of EventTransport.

    One instance represents one connection; the connection manager asks its
    factory for a fresh instance on every (re)connection attempt.
    """

    def __init__(self) -> None:
        self._socket: Any = None
        self._open = False
        self.transport_id: str | None = None
        self._logger = get_logger(__name__)

    async def open(self, url: str, timeout: float) -> str:
        """
        Connect to the event server.

        Returns:
            str: Transport identifier

        Raises:
            TransportError: If the handshake fails
        """
        ws_url = to_websocket_url(url)
        try:
            self._socket = await websockets.connect(ws_url, open_timeout=timeout)
        except Exception as e:
            raise TransportError(f"Failed to connect to {ws_url}: {e}", details={"url": ws_url}) from e

        self._open = True
        self.transport_id = str(getattr(self._socket, "id", None) or uuid4())
        self._logger.info("Websocket transport opened", url=ws_url, transport_id=self.transport_id)
        return self.transport_id

    async def send(self, event_name: str, payload: Any) -> None:
        """
        Send one event frame.

        Raises:
            TransportError: If the frame could not be written
        """
        if not self.is_open():
            raise TransportError("Websocket transport is not open", details={"event": event_name})

        try:
            await self._socket.send(encode_frame(event_name, payload))
        except ConnectionClosed as e:
            self._open = False
            raise TransportClosedError(f"Connection closed while sending {event_name}", reason=str(e)) from e
        except Exception as e:
            raise TransportError(f"Failed to send {event_name}: {e}") from e

        self._logger.debug("Sent frame", event_name=event_name, transport_id=self.transport_id)

    async def receive(self) -> tuple[str, Any]:
        """
        Wait for the next event frame.

        Raises:
            TransportClosedError: When the connection is closed
            ValueError: When the frame cannot be decoded
        """
        if self._socket is None:
            raise TransportClosedError("Websocket transport was never opened", reason="not opened")

        try:
            raw = await self._socket.recv()
        except ConnectionClosed as e:
            self._open = False
            reason = e.rcvd.reason if getattr(e, "rcvd", None) else "transport close"
            raise TransportClosedError("Websocket connection closed", reason=reason or "transport close") from e

        return decode_frame(raw)

    async def close(self) -> None:
        """Close the connection; closing twice is a no-op."""
        if self._socket is None or not self._open:
            self._open = False
            return

        self._open = False
        try:
            await self._socket.close()
            self._logger.info("Websocket transport closed", transport_id=self.transport_id)
        except Exception as e:
            self._logger.warning("Error closing websocket transport", transport_id=self.transport_id, error=str(e))

    def is_open(self) -> bool:
        """Check whether the connection is usable."""
        return self._socket is not None and self._open
