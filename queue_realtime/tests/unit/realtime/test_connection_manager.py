"""
Unit tests for the connection manager.

Tests connection lifecycle signals, reconnection with backoff, listener
management and frame delivery against the in-memory fake server.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from queue_realtime.exceptions import ConnectionExhaustedError
from queue_realtime.realtime.connection_manager import (
    CLIENT_DISCONNECT_REASON,
    ConnectionManager,
    ConnectionStatus,
    LifecycleSignal,
)
from queue_realtime.realtime.reconnect_policy import ReconnectPolicy

from ...fakes import settle


def _signal_event(connection: ConnectionManager, signal: LifecycleSignal) -> tuple[asyncio.Event, list]:
    """Register a lifecycle recorder; returns (fired event, recorded args)."""
    fired = asyncio.Event()
    calls: list = []

    def record(*args):
        calls.append(args)
        fired.set()

    connection.on_lifecycle(signal, record)
    return fired, calls


def test_initial_state(connection):
    """A new manager is disconnected with no transport id."""
    state = connection.state
    assert state.status is ConnectionStatus.DISCONNECTED
    assert state.transport_id is None
    assert connection.is_connected() is False


@pytest.mark.asyncio
async def test_connect_emits_connect_and_sets_state(connection, fake_server):
    """connect() opens a transport and fires CONNECT."""
    fired, calls = _signal_event(connection, LifecycleSignal.CONNECT)

    await connection.connect("http://queue.test")
    await asyncio.wait_for(fired.wait(), timeout=1.0)

    assert connection.is_connected()
    assert connection.state.status is ConnectionStatus.CONNECTED
    assert connection.state.transport_id == fake_server.current.transport_id
    assert calls == [()]
    await connection.disconnect()


@pytest.mark.asyncio
async def test_connect_twice_is_noop(connection, fake_server):
    """A second connect() while connecting or connected opens nothing new."""
    await connection.connect("http://queue.test")
    await connection.connect("http://queue.test")
    assert await connection.wait_until_connected(timeout=1.0)
    await connection.connect("http://queue.test")
    await settle()

    assert len(fake_server.open_attempts) == 1
    await connection.disconnect()


@pytest.mark.asyncio
async def test_state_is_a_snapshot(connection):
    """Mutating the returned state does not affect the manager."""
    state = connection.state
    state.status = ConnectionStatus.CONNECTED
    assert connection.state.status is ConnectionStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_frames_delivered_in_order(connection, fake_server):
    """Server events reach their handlers in transport order."""
    received = []
    connection.on("queue:updated", lambda data: received.append(data["n"]))
    await connection.connect("http://queue.test")
    assert await connection.wait_until_connected(timeout=1.0)

    for n in range(5):
        fake_server.push("queue:updated", {"n": n})
    await settle()

    assert received == [0, 1, 2, 3, 4]
    await connection.disconnect()


@pytest.mark.asyncio
async def test_on_is_idempotent(connection, fake_server):
    """Registering the same handler twice delivers each frame once."""
    handler = MagicMock()
    connection.on("queue:updated", handler)
    connection.on("queue:updated", handler)
    assert connection.listener_count("queue:updated") == 1

    await connection.connect("http://queue.test")
    assert await connection.wait_until_connected(timeout=1.0)
    fake_server.push("queue:updated", {})
    await settle()

    handler.assert_called_once_with({})
    await connection.disconnect()


def test_off_removes_handler(connection):
    """off() removes a handler and reports whether it was registered."""
    handler = MagicMock()
    connection.on("queue:updated", handler)
    assert connection.off("queue:updated", handler) is True
    assert connection.off("queue:updated", handler) is False
    assert connection.listener_count() == 0


def test_has_listener_reports_registration(connection):
    handler = MagicMock()
    assert connection.has_listener("queue:updated", handler) is False

    connection.on("queue:updated", handler)
    connection.on_lifecycle(LifecycleSignal.RECONNECT, handler)

    assert connection.has_listener("queue:updated", handler) is True
    assert connection.has_listener("queue:reordered", handler) is False
    assert connection.has_lifecycle_listener(LifecycleSignal.RECONNECT, handler) is True
    assert connection.has_lifecycle_listener(LifecycleSignal.CONNECT, handler) is False


@pytest.mark.asyncio
async def test_handler_error_does_not_block_others(connection, fake_server):
    """A failing handler is logged; sibling handlers and later frames still run."""
    failing = MagicMock(side_effect=RuntimeError("boom"))
    healthy = MagicMock()
    connection.on("queue:updated", failing)
    connection.on("queue:updated", healthy)
    await connection.connect("http://queue.test")
    assert await connection.wait_until_connected(timeout=1.0)

    fake_server.push("queue:updated", {"n": 1})
    fake_server.push("queue:updated", {"n": 2})
    await settle()

    assert healthy.call_count == 2
    assert connection.is_connected()
    await connection.disconnect()


@pytest.mark.asyncio
async def test_async_handler_is_awaited(connection, fake_server):
    """Coroutine handlers run as tasks."""
    handler = AsyncMock()
    connection.on("queue:patient-ready", handler)
    await connection.connect("http://queue.test")
    assert await connection.wait_until_connected(timeout=1.0)

    fake_server.push("queue:patient-ready", {"queueEntryId": "Q1"})
    await settle()

    handler.assert_awaited_once_with({"queueEntryId": "Q1"})
    await connection.disconnect()


@pytest.mark.asyncio
async def test_malformed_frame_is_skipped(connection, fake_server):
    """A frame the transport cannot decode is dropped; the next frame is delivered."""
    handler = MagicMock()
    connection.on("queue:updated", handler)
    await connection.connect("http://queue.test")
    assert await connection.wait_until_connected(timeout=1.0)

    fake_server.current.feed_error(ValueError("invalid frame"))
    fake_server.push("queue:updated", {"ok": True})
    await settle()

    handler.assert_called_once_with({"ok": True})
    assert connection.is_connected()
    await connection.disconnect()


@pytest.mark.asyncio
async def test_send_when_disconnected_is_dropped(connection, fake_server):
    """send() while disconnected returns False and never queues."""
    assert connection.send("queue:join-optometrist") is False
    await connection.connect("http://queue.test")
    assert await connection.wait_until_connected(timeout=1.0)
    await settle()

    assert fake_server.received == []
    await connection.disconnect()


@pytest.mark.asyncio
async def test_send_when_connected(connection, fake_server):
    """send() hands the event to the transport."""
    await connection.connect("http://queue.test")
    assert await connection.wait_until_connected(timeout=1.0)

    assert connection.send("queue:join-doctor", "D1") is True
    await settle()

    assert fake_server.received == [("queue:join-doctor", "D1")]
    await connection.disconnect()


@pytest.mark.asyncio
async def test_server_drop_triggers_reconnect(connection, fake_server, recording_sleep):
    """A dropped transport fires DISCONNECT(reason) and then RECONNECT(attempts)."""
    disconnected, disconnect_calls = _signal_event(connection, LifecycleSignal.DISCONNECT)
    reconnected, reconnect_calls = _signal_event(connection, LifecycleSignal.RECONNECT)
    await connection.connect("http://queue.test")
    assert await connection.wait_until_connected(timeout=1.0)
    first_transport = fake_server.current

    fake_server.drop("transport close")
    await asyncio.wait_for(disconnected.wait(), timeout=1.0)
    await asyncio.wait_for(reconnected.wait(), timeout=1.0)

    assert disconnect_calls == [("transport close",)]
    assert reconnect_calls == [(1,)]
    assert recording_sleep.delays == [1.0]
    assert fake_server.current is not first_transport
    assert connection.is_connected()
    await connection.disconnect()


@pytest.mark.asyncio
async def test_reconnect_backoff_grows_and_is_capped(connection, fake_server, recording_sleep):
    """Failed reconnect attempts back off exponentially up to the cap."""
    reconnected, reconnect_calls = _signal_event(connection, LifecycleSignal.RECONNECT)
    await connection.connect("http://queue.test")
    assert await connection.wait_until_connected(timeout=1.0)

    fake_server.fail_next_opens = 3
    fake_server.drop()
    await asyncio.wait_for(reconnected.wait(), timeout=1.0)

    assert recording_sleep.delays == [1.0, 2.0, 4.0, 5.0]
    assert reconnect_calls == [(4,)]
    await connection.disconnect()


@pytest.mark.asyncio
async def test_exhausted_attempts_surface_terminal_error(connection, fake_server):
    """After the last attempt the manager stays disconnected and reports ConnectionExhaustedError."""
    exhausted = asyncio.Event()
    errors = []

    def on_error(error):
        errors.append(error)
        if isinstance(error, ConnectionExhaustedError):
            exhausted.set()

    connection.on_lifecycle(LifecycleSignal.CONNECT_ERROR, on_error)
    fake_server.refuse_all = True

    await connection.connect("http://queue.test")
    await asyncio.wait_for(exhausted.wait(), timeout=1.0)
    await settle()

    terminal = errors[-1]
    assert isinstance(terminal, ConnectionExhaustedError)
    assert terminal.attempts == 6
    assert len(fake_server.open_attempts) == 6
    assert connection.state.status is ConnectionStatus.DISCONNECTED
    assert connection.state.last_error == "connection refused"

    # No further automatic attempts
    await settle()
    assert len(fake_server.open_attempts) == 6


@pytest.mark.asyncio
async def test_connect_after_exhaustion_retries(connection, fake_server):
    """An explicit connect() after exhaustion starts over."""
    exhausted = asyncio.Event()
    connection.on_lifecycle(
        LifecycleSignal.CONNECT_ERROR,
        lambda e: exhausted.set() if isinstance(e, ConnectionExhaustedError) else None,
    )
    fake_server.refuse_all = True
    await connection.connect("http://queue.test")
    await asyncio.wait_for(exhausted.wait(), timeout=1.0)

    fake_server.refuse_all = False
    await connection.connect("http://queue.test")
    assert await connection.wait_until_connected(timeout=1.0)
    await connection.disconnect()


@pytest.mark.asyncio
async def test_disconnect_clears_listeners_and_emits(connection, fake_server):
    """disconnect() fires DISCONNECT for the client and removes every listener."""
    _, disconnect_calls = _signal_event(connection, LifecycleSignal.DISCONNECT)
    connection.on("queue:updated", MagicMock())
    await connection.connect("http://queue.test")
    assert await connection.wait_until_connected(timeout=1.0)
    transport = fake_server.current

    await connection.disconnect()

    assert disconnect_calls == [(CLIENT_DISCONNECT_REASON,)]
    assert connection.listener_count() == 0
    for signal in LifecycleSignal:
        assert connection.lifecycle_listener_count(signal) == 0
    assert connection.state.status is ConnectionStatus.DISCONNECTED
    assert transport.is_open() is False


@pytest.mark.asyncio
async def test_disconnect_cancels_scheduled_callbacks(connection):
    """Delayed callbacks owned by the connection never run after disconnect()."""
    callback = MagicMock()
    connection.schedule(0.01, callback)
    assert connection.pending_scheduled == 1

    await connection.disconnect()
    await asyncio.sleep(0.03)

    callback.assert_not_called()
    assert connection.pending_scheduled == 0


@pytest.mark.asyncio
async def test_scheduled_callback_runs(connection):
    """schedule() runs the callback after the delay."""
    callback = MagicMock()
    connection.schedule(0.01, callback)
    await asyncio.sleep(0.03)

    callback.assert_called_once_with()
    assert connection.pending_scheduled == 0


@pytest.mark.asyncio
async def test_wait_until_connected_times_out(fake_server):
    """wait_until_connected() returns False when the connection never comes up."""
    fake_server.refuse_all = True
    manager = ConnectionManager(
        fake_server.factory,
        policy=ReconnectPolicy(max_attempts=0, jitter=0.0),
        sleep=AsyncMock(),
    )
    await manager.connect("http://queue.test")
    assert await manager.wait_until_connected(timeout=0.05) is False
    await manager.disconnect()
