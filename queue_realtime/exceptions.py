"""
Exception hierarchy for the queue realtime core.

None of these errors are allowed to reach UI code: components catch them at
their boundary, log them and turn them into signals or fallbacks. They exist
so that failures carry structured context into the logs.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .structured_logging.enhanced_logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class ErrorContext:
    """Contextual information attached to an error for structured logging."""

    staff_id: str | None = None
    role: str | None = None
    queue_entry_id: str | None = None
    event_type: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert context to dictionary for logging."""
        return {
            "staff_id": self.staff_id,
            "role": self.role,
            "queue_entry_id": self.queue_entry_id,
            "event_type": self.event_type,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }


class QueueRealtimeError(Exception):
    """
    Base exception for all queue realtime errors.

    The error is logged with its context when constructed.
    """

    def __init__(
        self,
        message: str,
        context: ErrorContext | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = context or ErrorContext()
        self.details = details or {}
        self.timestamp = datetime.now(UTC)
        self._log_error()

    def _log_error(self) -> None:
        logger.warning(
            "Queue realtime error occurred",
            error_type=self.__class__.__name__,
            message=self.message,
            context=self.context.to_dict(),
            details=self.details,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context.to_dict(),
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class TransportError(QueueRealtimeError):
    """Connection-level failure (handshake, send or receive)."""


class TransportClosedError(TransportError):
    """The transport was closed by the server or the network."""

    def __init__(self, message: str, reason: str = "transport close", **kwargs: Any):
        super().__init__(message, **kwargs)
        self.reason = reason
        self.details["reason"] = reason


class ConnectionExhaustedError(TransportError):
    """All automatic reconnection attempts failed."""

    def __init__(self, message: str, attempts: int, last_error: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.attempts = attempts
        self.last_error = last_error
        self.details["attempts"] = attempts
        self.details["last_error"] = last_error


class EnrichmentError(QueueRealtimeError):
    """Patient lookup failed; callers fall back to a placeholder name."""


class AlertDeliveryError(QueueRealtimeError):
    """A local alert could not be scheduled."""


class PushRegistrationError(QueueRealtimeError):
    """Registering or unregistering the remote push token failed."""


class QueueFetchError(QueueRealtimeError):
    """Fetching a queue listing from the REST API failed."""
