"""
Unit tests for the application container.

Tests component construction order, shared connection wiring and best-effort
shutdown using in-memory collaborators.
"""

from unittest.mock import AsyncMock

import pytest

from queue_realtime.caching.query_invalidation import InMemoryQueryCache, QueryKey
from queue_realtime.config.models import AppConfig
from queue_realtime.container import ApplicationContainer
from queue_realtime.realtime.pipeline import StaffIdentity

from ..fakes import settle


@pytest.fixture
def container(fake_server, alert_sink, haptics, fake_clock):
    lookup = AsyncMock()
    lookup.get_patient.return_value = {"firstName": "Grace", "lastName": "Hopper"}
    return ApplicationContainer(
        alert_sink=alert_sink,
        config=AppConfig(),
        haptics=haptics,
        transport_factory=fake_server.factory,
        patient_lookup=lookup,
        push_registry=AsyncMock(),
        eye_drop_queue=AsyncMock(**{"fetch_queue.return_value": []}),
        clock=fake_clock,
    )


@pytest.mark.asyncio
async def test_initialize_builds_every_component(container):
    await container.initialize()

    assert container.is_initialized
    for component in (
        container.connection_manager,
        container.event_bus,
        container.normalizer,
        container.dispatcher,
        container.invalidation_bridge,
        container.membership,
        container.push_registration,
        container.timer_engine,
        container.dilation_sync,
        container.queue_refresher,
        container.pipeline,
    ):
        assert component is not None
    assert isinstance(container.query_cache, InMemoryQueryCache)
    assert container.pipeline.is_running
    assert container.queue_refresher.running
    await container.shutdown()


@pytest.mark.asyncio
async def test_initialize_twice_is_noop(container):
    await container.initialize()
    connection = container.connection_manager

    await container.initialize()

    assert container.connection_manager is connection
    await container.shutdown()


@pytest.mark.asyncio
async def test_connect_requires_initialize(container):
    with pytest.raises(RuntimeError):
        await container.connect()


@pytest.mark.asyncio
async def test_event_flows_from_server_to_alert(container, fake_server, alert_sink):
    """A patient-id-only event is enriched through the lookup before the alert is shown."""
    await container.initialize()
    await container.connect("http://queue.test")
    assert await container.connection_manager.wait_until_connected(timeout=1.0)

    fake_server.push("queue:patient-assigned", {"queueEntryId": "Q5", "patientId": "P5"})
    await settle(20)
    await container.normalizer.drain()
    await container.event_bus.wait_idle()

    assert alert_sink.titles == ["New Patient Assigned"]
    assert "Grace Hopper" in alert_sink.alerts[0][1]
    assert container.query_cache.is_stale(QueryKey.DOCTOR_QUEUE)
    await container.shutdown()


@pytest.mark.asyncio
async def test_shutdown_ends_session_and_disconnects(container, fake_server):
    await container.initialize()
    await container.connect("http://queue.test")
    assert await container.connection_manager.wait_until_connected(timeout=1.0)
    await container.pipeline.start_session(StaffIdentity("S1", "doctor"), push_token="tok-1")

    await container.shutdown()

    assert not container.is_initialized
    assert not container.connection_manager.is_connected()
    assert container.connection_manager.listener_count() == 0
    assert not container.membership.attached
    container.push_registry.unregister.assert_awaited_once_with("tok-1")


@pytest.mark.asyncio
async def test_shutdown_continues_after_failing_step(container):
    await container.initialize()
    container.timer_engine.shutdown = AsyncMock(side_effect=RuntimeError("timer bug"))

    await container.shutdown()

    assert not container.is_initialized
    assert not container.connection_manager.is_connected()


@pytest.mark.asyncio
async def test_shutdown_without_initialize_is_noop(container):
    await container.shutdown()
    assert not container.is_initialized


@pytest.mark.asyncio
async def test_connect_after_disconnect_still_delivers_alerts(container, fake_server, alert_sink):
    await container.initialize()
    await container.connect("http://queue.test")
    assert await container.connection_manager.wait_until_connected(timeout=1.0)
    await container.pipeline.start_session(StaffIdentity("S1", "receptionist2"))

    await container.connection_manager.disconnect()
    await container.connect("http://queue.test")
    assert await container.connection_manager.wait_until_connected(timeout=1.0)

    fake_server.push("queue:patient-on-hold", {"queueEntryId": "Q9", "patientName": "Ada Lovelace"})
    await settle(20)
    await container.normalizer.drain()
    await container.event_bus.wait_idle()

    assert alert_sink.titles == ["New Patient in Queue"]
    assert container.membership.hooked
    await container.shutdown()


@pytest.mark.asyncio
async def test_on_hold_event_refetches_queue_and_starts_countdown(container, fake_server):
    await container.initialize()
    await settle()
    queue_client = container.eye_drop_queue
    queue_client.fetch_queue.assert_awaited_once()
    queue_client.fetch_queue.return_value = [
        {
            "queueEntryId": "Q9",
            "patient": {"fullName": "Ada Lovelace"},
            "timing": {"dilationRound": 1, "waitingSinceMinutes": 2},
            "customWaitMinutes": 10,
        }
    ]
    await container.connect("http://queue.test")
    assert await container.connection_manager.wait_until_connected(timeout=1.0)

    fake_server.push("queue:patient-on-hold", {"queueEntryId": "Q9", "patientName": "Ada Lovelace"})
    await settle(20)
    await container.normalizer.drain()
    await container.event_bus.wait_idle()
    await container.queue_refresher.drain()

    assert queue_client.fetch_queue.await_count == 2
    assert container.timer_engine.is_running("Q9")
    assert container.timer_engine.remaining("Q9") == 8 * 60
    assert not container.query_cache.is_stale(QueryKey.EYE_DROP_QUEUE)
    await container.shutdown()
    assert not container.queue_refresher.running
