"""
Event bus for canonical queue events.

In-memory pub/sub on asyncio. Every subscriber receives every event it is
subscribed to, and a failing subscriber never prevents its siblings (the
notification dispatcher, the query invalidation bridge) from processing the
same event. Events are handled strictly in publish order.
"""

import asyncio
import inspect
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from ..structured_logging.enhanced_logging_config import get_logger
from .event_types import CanonicalEvent, EventKind

logger = get_logger(__name__)

EventSubscriber = Callable[[CanonicalEvent], Any]


@dataclass(frozen=True)
class _Subscription:
    handler: EventSubscriber
    kinds: frozenset[EventKind] | None

    def accepts(self, event: CanonicalEvent) -> bool:
        return self.kinds is None or event.kind in self.kinds


class EventBus:
    """
    Asyncio event bus for canonical events.

    Processing starts on demand with the first publish inside a running
    loop, and stops with shutdown().
    """

    def __init__(self) -> None:
        self._subscriptions: list[_Subscription] = []
        self._event_queue: asyncio.Queue[CanonicalEvent | None] = asyncio.Queue()
        self._running: bool = False
        self._processing_task: asyncio.Task | None = None
        self._active_tasks: set[asyncio.Task] = set()
        self._logger = get_logger("EventBus")

    def _ensure_async_processing(self) -> None:
        """Start the processing task if it is not running yet."""
        if self._running and self._processing_task is not None and not self._processing_task.done():
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError as e:
            self._logger.warning(
                "EventBus will start processing on first publish inside an event loop",
                error=str(e),
            )
            return
        self._running = True
        self._processing_task = asyncio.create_task(self._process_events_async(), name="canonical-event-bus")
        self._logger.debug("EventBus processing started on-demand")

    async def _process_events_async(self) -> None:
        """Deliver queued events one at a time, in order."""
        try:
            while self._running:
                event = await self._event_queue.get()
                try:
                    if event is None:
                        break
                    await self._handle_event_async(event)
                except Exception as e:
                    self._logger.error("Error processing event", error=str(e), exc_info=True)
                finally:
                    self._event_queue.task_done()
        finally:
            self._logger.debug("EventBus processing stopped")

    async def _handle_event_async(self, event: CanonicalEvent) -> None:
        """
        Call every matching subscriber for one event.

        Sync subscribers run first, in subscription order. Async subscribers
        run concurrently through gather(return_exceptions=True) so that one
        failure cannot cancel the others.
        """
        subscribers = [s.handler for s in self._subscriptions if s.accepts(event)]
        if not subscribers:
            self._logger.debug("No subscribers for event kind", kind=event.kind.value)
            return

        async_subscribers: list[EventSubscriber] = []
        for subscriber in subscribers:
            if inspect.iscoroutinefunction(subscriber):
                async_subscribers.append(subscriber)
                continue
            try:
                result = subscriber(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self._logger.error(
                    "Error in sync event subscriber",
                    subscriber_name=getattr(subscriber, "__name__", "unknown"),
                    kind=event.kind.value,
                    error=str(e),
                )

        if not async_subscribers:
            return

        tasks: list[asyncio.Task] = []
        for subscriber in async_subscribers:
            task = asyncio.create_task(subscriber(event))
            self._active_tasks.add(task)
            task.add_done_callback(self._active_tasks.discard)
            tasks.append(task)

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for subscriber, result in zip(async_subscribers, results, strict=True):
            if isinstance(result, Exception):
                self._logger.error(
                    "Error in async subscriber",
                    subscriber_name=getattr(subscriber, "__name__", "unknown"),
                    kind=event.kind.value,
                    error=str(result),
                    error_type=type(result).__name__,
                )

    def publish(self, event: CanonicalEvent) -> None:
        """
        Queue an event for delivery.

        Args:
            event: The canonical event to publish

        Raises:
            ValueError: If event is not a CanonicalEvent
        """
        if not isinstance(event, CanonicalEvent):
            raise ValueError("Event must be a CanonicalEvent")

        self._ensure_async_processing()
        self._event_queue.put_nowait(event)
        self._logger.debug(
            "Published event to queue",
            kind=event.kind.value,
            queue_entry_id=event.queue_entry_id,
            queue_size=self._event_queue.qsize(),
        )

    def subscribe(self, handler: EventSubscriber, kinds: Iterable[EventKind] | None = None) -> None:
        """
        Subscribe a handler to canonical events.

        Args:
            handler: Called with each matching event; may be sync or async
            kinds: Restrict delivery to these kinds (all kinds when None)
        """
        if not callable(handler):
            raise ValueError("Handler must be callable")
        subscription = _Subscription(handler, frozenset(kinds) if kinds is not None else None)
        if any(s.handler == handler for s in self._subscriptions):
            self._logger.debug("Handler already subscribed", subscriber_name=getattr(handler, "__name__", "unknown"))
            return
        self._subscriptions.append(subscription)

    def unsubscribe(self, handler: EventSubscriber) -> bool:
        """Remove a handler; returns False if it was not subscribed."""
        for subscription in self._subscriptions:
            if subscription.handler == handler:
                self._subscriptions.remove(subscription)
                return True
        return False

    def get_subscriber_count(self, kind: EventKind | None = None) -> int:
        """Number of subscribers (receiving `kind`, when given)."""
        if kind is None:
            return len(self._subscriptions)
        return sum(1 for s in self._subscriptions if s.kinds is None or kind in s.kinds)

    async def wait_idle(self) -> None:
        """Wait until every published event has been handled."""
        if self._running:
            await self._event_queue.join()

    async def shutdown(self) -> None:
        """Stop processing; events still queued are discarded."""
        if not self._running:
            return
        self._running = False
        self._event_queue.put_nowait(None)

        task, self._processing_task = self._processing_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        for active in list(self._active_tasks):
            active.cancel()
        if self._active_tasks:
            await asyncio.gather(*self._active_tasks, return_exceptions=True)
        self._active_tasks.clear()

        # Discard leftovers so a restarted bus does not replay them
        while not self._event_queue.empty():
            self._event_queue.get_nowait()
            self._event_queue.task_done()

        self._logger.info("EventBus stopped")
