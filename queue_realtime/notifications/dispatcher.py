"""
Notification dispatcher.

Maps canonical events to local alerts. The same state change on the server
can reach the client more than once (for example a specific "patient on
hold" event and an overlapping handler for the same entry), so deliveries are
deduplicated per (kind, queue entry) within a short coalescing window.
"""

import asyncio
import math
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from ..events.event_types import CanonicalEvent, EventKind
from ..exceptions import AlertDeliveryError, ErrorContext
from ..structured_logging.enhanced_logging_config import get_logger
from .templates import AlertUrgency, is_success_kind, render

logger = get_logger(__name__)

DEFAULT_DEDUPE_WINDOW_SECONDS = 3.0
DEFAULT_ALERT_TIMEOUT_SECONDS = 5.0


class LocalAlertSink(Protocol):
    """Local (on-device) alert delivery."""

    async def has_permission(self) -> bool: ...

    async def schedule_alert(self, title: str, body: str, data: dict[str, Any]) -> None: ...


class HapticFeedback(Protocol):
    async def success(self) -> None: ...


@dataclass(frozen=True)
class NotificationRecord:
    """A delivered notification."""

    dedupe_key: str
    title: str
    body: str
    urgency: AlertUrgency
    delivered_at: float


class DedupeLedger:
    """
    Tracks the last delivery per (kind, queue entry).

    A delivery is suppressed when the previous one for the same pair is less
    than `window_seconds` old. Slots are claimed before the alert is
    scheduled and released if delivery does not happen, so concurrent
    dispatches of the same event cannot both get through.
    """

    def __init__(self, window_seconds: float = DEFAULT_DEDUPE_WINDOW_SECONDS, clock: Callable[[], float] = time.time):
        self._window = window_seconds
        self._clock = clock
        self._last: dict[tuple[EventKind, str], float] = {}

    @property
    def window_seconds(self) -> float:
        return self._window

    def dedupe_key(self, kind: EventKind, queue_entry_id: str, at: float) -> str:
        """Key for a delivery: kind, entry and the coalescing bucket the instant falls into."""
        bucket = math.floor(at / self._window) if self._window > 0 else int(at)
        return f"{kind.value}:{queue_entry_id}:{bucket}"

    def claim(self, kind: EventKind, queue_entry_id: str) -> float | None:
        """
        Claim the delivery slot for (kind, entry).

        Returns:
            The claim instant, or None if a delivery happened inside the window
        """
        now = self._clock()
        self._prune(now)
        last = self._last.get((kind, queue_entry_id))
        if last is not None and now - last < self._window:
            return None
        self._last[(kind, queue_entry_id)] = now
        return now

    def release(self, kind: EventKind, queue_entry_id: str, claimed_at: float) -> None:
        """Give back a slot whose delivery did not happen."""
        if self._last.get((kind, queue_entry_id)) == claimed_at:
            del self._last[(kind, queue_entry_id)]

    def clear(self) -> None:
        self._last.clear()

    def __len__(self) -> int:
        return len(self._last)

    def _prune(self, now: float) -> None:
        expired = [key for key, at in self._last.items() if now - at >= self._window]
        for key in expired:
            del self._last[key]


class NotificationDispatcher:
    """
    Turns canonical events into at most one local alert per dedupe window.

    Every collaborator failure is logged and swallowed: a failed alert must
    never affect other consumers of the same event. Every collaborator call is
    bounded by alert_timeout_seconds so a hung sink cannot stall the event bus.
    """

    def __init__(
        self,
        alert_sink: LocalAlertSink,
        haptics: HapticFeedback | None = None,
        dedupe_window_seconds: float = DEFAULT_DEDUPE_WINDOW_SECONDS,
        haptics_enabled: bool = True,
        clock: Callable[[], float] = time.time,
        alert_timeout_seconds: float = DEFAULT_ALERT_TIMEOUT_SECONDS,
    ) -> None:
        self._alert_sink = alert_sink
        self._haptics = haptics
        self._haptics_enabled = haptics_enabled
        self._alert_timeout = alert_timeout_seconds
        self._ledger = DedupeLedger(dedupe_window_seconds, clock)
        # Most recent deliveries, newest last
        self.delivered: deque[NotificationRecord] = deque(maxlen=100)

    @property
    def ledger(self) -> DedupeLedger:
        return self._ledger

    async def dispatch(self, event: CanonicalEvent) -> NotificationRecord | None:
        """
        Deliver the alert for an event.

        Returns:
            The delivered record, or None when the event was silent,
            deduplicated, not permitted or failed to deliver
        """
        title, body, urgency = render(event)
        if urgency is AlertUrgency.SILENT:
            logger.debug("Silent event; no alert", kind=event.kind.value, queue_entry_id=event.queue_entry_id)
            return None

        claimed_at = self._ledger.claim(event.kind, event.queue_entry_id)
        if claimed_at is None:
            logger.info(
                "Suppressed duplicate notification",
                kind=event.kind.value,
                queue_entry_id=event.queue_entry_id,
                window_seconds=self._ledger.window_seconds,
            )
            return None

        if not await self._permitted():
            self._ledger.release(event.kind, event.queue_entry_id, claimed_at)
            logger.info("Alert permission not granted; notification skipped", kind=event.kind.value)
            return None

        data = {**event.to_dict(), "urgency": urgency.value}
        try:
            await asyncio.wait_for(self._alert_sink.schedule_alert(title, body, data), timeout=self._alert_timeout)
        except TimeoutError:
            self._ledger.release(event.kind, event.queue_entry_id, claimed_at)
            error = AlertDeliveryError(
                "Alert sink did not respond in time",
                context=ErrorContext(queue_entry_id=event.queue_entry_id, event_type=event.kind.value),
                details={"timeout_seconds": self._alert_timeout},
            )
            logger.error("Notification delivery timed out", kind=event.kind.value, error=error.message)
            return None
        except Exception as e:
            self._ledger.release(event.kind, event.queue_entry_id, claimed_at)
            error = e if isinstance(e, AlertDeliveryError) else AlertDeliveryError(
                f"Failed to schedule alert: {e}",
                context=ErrorContext(queue_entry_id=event.queue_entry_id, event_type=event.kind.value),
                details={"error_type": type(e).__name__},
            )
            logger.error("Notification delivery failed", kind=event.kind.value, error=error.message)
            return None

        record = NotificationRecord(
            dedupe_key=self._ledger.dedupe_key(event.kind, event.queue_entry_id, claimed_at),
            title=title,
            body=body,
            urgency=urgency,
            delivered_at=claimed_at,
        )
        self.delivered.append(record)
        logger.info("Notification delivered", kind=event.kind.value, dedupe_key=record.dedupe_key, title=title)

        if is_success_kind(event.kind):
            await self._trigger_haptics(event)
        return record

    async def handle_event(self, event: CanonicalEvent) -> None:
        """Event bus subscriber."""
        await self.dispatch(event)

    async def _permitted(self) -> bool:
        try:
            return bool(await asyncio.wait_for(self._alert_sink.has_permission(), timeout=self._alert_timeout))
        except Exception as e:
            logger.warning("Alert permission check failed", error=str(e), error_type=type(e).__name__)
            return False

    async def _trigger_haptics(self, event: CanonicalEvent) -> None:
        if self._haptics is None or not self._haptics_enabled:
            return
        try:
            await asyncio.wait_for(self._haptics.success(), timeout=self._alert_timeout)
        except Exception as e:
            logger.warning(
                "Haptic feedback failed",
                kind=event.kind.value,
                error=str(e),
                error_type=type(e).__name__,
            )
