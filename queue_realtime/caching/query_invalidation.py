"""
Query invalidation bridge.

Every canonical event marks the cached queue listings it affects as stale so
that their consumers refetch. The kind -> keys table is fixed and every kind
affects at least one listing.
"""

import asyncio
import inspect
from collections.abc import Callable, Iterable, Mapping
from enum import Enum
from types import MappingProxyType
from typing import Any, Protocol

from ..events.event_types import CanonicalEvent, EventKind
from ..structured_logging.enhanced_logging_config import get_logger

logger = get_logger(__name__)


class QueryKey(str, Enum):
    """Logical keys of the cached queue listings."""

    EYE_DROP_QUEUE = "eyeDropQueue"
    DOCTOR_QUEUE = "doctorQueue"
    OPTOMETRIST_QUEUE = "optometrist-queue"


INVALIDATION_MAP: Mapping[EventKind, frozenset[QueryKey]] = MappingProxyType(
    {
        EventKind.PATIENT_ON_HOLD: frozenset({QueryKey.EYE_DROP_QUEUE}),
        EventKind.PATIENT_AVAILABLE: frozenset({QueryKey.EYE_DROP_QUEUE, QueryKey.DOCTOR_QUEUE}),
        EventKind.PATIENT_ASSIGNED: frozenset({QueryKey.DOCTOR_QUEUE}),
        EventKind.PATIENT_RESUMED: frozenset({QueryKey.EYE_DROP_QUEUE, QueryKey.DOCTOR_QUEUE}),
        EventKind.PATIENT_READY: frozenset({QueryKey.EYE_DROP_QUEUE, QueryKey.DOCTOR_QUEUE}),
        EventKind.QUEUE_UPDATED: frozenset({QueryKey.OPTOMETRIST_QUEUE, QueryKey.DOCTOR_QUEUE}),
        EventKind.QUEUE_REORDERED: frozenset({QueryKey.OPTOMETRIST_QUEUE, QueryKey.DOCTOR_QUEUE}),
        EventKind.PATIENT_CALLED: frozenset({QueryKey.OPTOMETRIST_QUEUE, QueryKey.DOCTOR_QUEUE}),
        EventKind.PATIENT_CHECKED_IN: frozenset({QueryKey.OPTOMETRIST_QUEUE}),
    }
)


class StaleQuerySink(Protocol):
    def mark_stale(self, query_key: QueryKey) -> Any: ...


class QueryInvalidationBridge:
    """Marks the listings affected by each canonical event as stale."""

    def __init__(self, sink: StaleQuerySink) -> None:
        self._sink = sink

    def keys_for(self, kind: EventKind) -> frozenset[QueryKey]:
        return INVALIDATION_MAP[kind]

    def invalidate(self, event: CanonicalEvent) -> frozenset[QueryKey]:
        """
        Mark every listing affected by the event as stale.

        A failure for one key does not stop the others.

        Returns:
            frozenset of keys the sink accepted
        """
        keys = self._mark(INVALIDATION_MAP[event.kind])
        logger.debug(
            "Invalidated queries",
            kind=event.kind.value,
            queue_entry_id=event.queue_entry_id,
            keys=sorted(k.value for k in keys),
        )
        return keys

    def invalidate_all(self) -> frozenset[QueryKey]:
        """Mark every listing as stale (after a reconnect, events may have been missed)."""
        keys = self._mark(QueryKey)
        logger.info("Invalidated all queue queries", keys=sorted(k.value for k in keys))
        return keys

    def handle_event(self, event: CanonicalEvent) -> None:
        """Event bus subscriber."""
        self.invalidate(event)

    def _mark(self, keys: Iterable[QueryKey]) -> frozenset[QueryKey]:
        marked: set[QueryKey] = set()
        for key in keys:
            try:
                self._sink.mark_stale(key)
            except Exception as e:
                logger.error("Failed to mark query stale", query_key=key.value, error=str(e), exc_info=True)
                continue
            marked.add(key)
        return frozenset(marked)


StaleListener = Callable[[QueryKey], Any]


class InMemoryQueryCache:
    """
    Minimal query cache: data, staleness and stale listeners per key.

    Stale listeners typically trigger a refetch; coroutine listeners are run
    as tasks.
    """

    def __init__(self) -> None:
        self._data: dict[QueryKey, Any] = {}
        self._stale: set[QueryKey] = set()
        self._listeners: dict[QueryKey, list[StaleListener]] = {}
        self._tasks: set[asyncio.Task] = set()

    def get(self, query_key: QueryKey) -> Any:
        return self._data.get(query_key)

    def set(self, query_key: QueryKey, data: Any) -> None:
        """Store fresh data for a key."""
        self._data[query_key] = data
        self._stale.discard(query_key)

    def is_stale(self, query_key: QueryKey) -> bool:
        return query_key in self._stale

    def stale_keys(self) -> frozenset[QueryKey]:
        return frozenset(self._stale)

    def mark_fresh(self, query_key: QueryKey) -> None:
        self._stale.discard(query_key)

    def mark_stale(self, query_key: QueryKey) -> None:
        self._stale.add(query_key)
        for listener in list(self._listeners.get(query_key, [])):
            try:
                result = listener(query_key)
            except Exception as e:
                logger.error("Error in stale query listener", query_key=query_key.value, error=str(e))
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    def on_stale(self, query_key: QueryKey, listener: StaleListener) -> Callable[[], None]:
        """Register a listener for one key; returns a function that removes it."""
        listeners = self._listeners.setdefault(query_key, [])
        if listener not in listeners:
            listeners.append(listener)

        def remove() -> None:
            current = self._listeners.get(query_key)
            if current and listener in current:
                current.remove(listener)

        return remove

    async def drain(self) -> None:
        """Wait for stale listener tasks (refetches) to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
