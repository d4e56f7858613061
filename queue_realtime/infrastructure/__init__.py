"""
Infrastructure layer for the queue realtime core.

Abstractions for the connection to the event server. Components depend on the
EventTransport protocol, not on the websocket implementation.
"""

from .transport import EventTransport, TransportFactory

__all__ = ["EventTransport", "TransportFactory"]
