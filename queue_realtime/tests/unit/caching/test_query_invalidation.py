"""
Unit tests for the query invalidation bridge and the in-memory query cache.
"""

from unittest.mock import MagicMock

import pytest

from queue_realtime.caching.query_invalidation import (
    INVALIDATION_MAP,
    InMemoryQueryCache,
    QueryInvalidationBridge,
    QueryKey,
)
from queue_realtime.events.event_types import CanonicalEvent, EventKind


def _event(kind):
    return CanonicalEvent(kind, "Q1", "Ada Lovelace", "Eye drops")


@pytest.fixture
def cache():
    return InMemoryQueryCache()


@pytest.fixture
def bridge(cache):
    return QueryInvalidationBridge(cache)


@pytest.mark.parametrize("kind", list(EventKind))
def test_every_kind_invalidates_at_least_one_key(kind):
    assert len(INVALIDATION_MAP[kind]) >= 1


@pytest.mark.parametrize(
    ("kind", "expected"),
    [
        (EventKind.PATIENT_ON_HOLD, {QueryKey.EYE_DROP_QUEUE}),
        (EventKind.PATIENT_AVAILABLE, {QueryKey.EYE_DROP_QUEUE, QueryKey.DOCTOR_QUEUE}),
        (EventKind.PATIENT_ASSIGNED, {QueryKey.DOCTOR_QUEUE}),
        (EventKind.QUEUE_UPDATED, {QueryKey.OPTOMETRIST_QUEUE, QueryKey.DOCTOR_QUEUE}),
        (EventKind.PATIENT_CHECKED_IN, {QueryKey.OPTOMETRIST_QUEUE}),
    ],
)
def test_invalidate_marks_affected_keys(bridge, cache, kind, expected):
    assert bridge.invalidate(_event(kind)) == expected
    assert cache.stale_keys() == expected


def test_invalidate_all_marks_every_key(bridge, cache):
    assert bridge.invalidate_all() == frozenset(QueryKey)
    assert cache.stale_keys() == frozenset(QueryKey)


def test_failure_for_one_key_does_not_stop_others():
    sink = MagicMock()

    def mark_stale(key):
        if key is QueryKey.EYE_DROP_QUEUE:
            raise RuntimeError("cache bug")

    sink.mark_stale.side_effect = mark_stale
    bridge = QueryInvalidationBridge(sink)

    keys = bridge.invalidate(_event(EventKind.PATIENT_READY))

    assert keys == {QueryKey.DOCTOR_QUEUE}
    assert sink.mark_stale.call_count == 2


def test_handle_event_invalidates(bridge, cache):
    bridge.handle_event(_event(EventKind.PATIENT_ASSIGNED))
    assert cache.is_stale(QueryKey.DOCTOR_QUEUE)
    assert not cache.is_stale(QueryKey.EYE_DROP_QUEUE)


def test_cache_set_clears_staleness(cache):
    cache.mark_stale(QueryKey.DOCTOR_QUEUE)
    cache.set(QueryKey.DOCTOR_QUEUE, [{"queueEntryId": "Q1"}])

    assert cache.get(QueryKey.DOCTOR_QUEUE) == [{"queueEntryId": "Q1"}]
    assert not cache.is_stale(QueryKey.DOCTOR_QUEUE)


def test_cache_mark_fresh(cache):
    cache.mark_stale(QueryKey.EYE_DROP_QUEUE)
    cache.mark_fresh(QueryKey.EYE_DROP_QUEUE)
    assert cache.stale_keys() == frozenset()


def test_stale_listener_called_and_removable(cache):
    listener = MagicMock()
    remove = cache.on_stale(QueryKey.EYE_DROP_QUEUE, listener)

    cache.mark_stale(QueryKey.EYE_DROP_QUEUE)
    cache.mark_stale(QueryKey.DOCTOR_QUEUE)
    listener.assert_called_once_with(QueryKey.EYE_DROP_QUEUE)

    remove()
    cache.mark_stale(QueryKey.EYE_DROP_QUEUE)
    assert listener.call_count == 1


def test_failing_stale_listener_isolated(cache):
    healthy = MagicMock()
    cache.on_stale(QueryKey.EYE_DROP_QUEUE, MagicMock(side_effect=RuntimeError("refetch bug")))
    cache.on_stale(QueryKey.EYE_DROP_QUEUE, healthy)

    cache.mark_stale(QueryKey.EYE_DROP_QUEUE)

    healthy.assert_called_once()
    assert cache.is_stale(QueryKey.EYE_DROP_QUEUE)


@pytest.mark.asyncio
async def test_async_stale_listener_runs_as_task(cache):
    refetched = []

    async def refetch(key):
        refetched.append(key)
        cache.set(key, ["fresh"])

    cache.on_stale(QueryKey.DOCTOR_QUEUE, refetch)
    cache.mark_stale(QueryKey.DOCTOR_QUEUE)
    await cache.drain()

    assert refetched == [QueryKey.DOCTOR_QUEUE]
    assert cache.get(QueryKey.DOCTOR_QUEUE) == ["fresh"]
    assert not cache.is_stale(QueryKey.DOCTOR_QUEUE)
