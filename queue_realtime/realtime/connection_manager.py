"""
Connection manager for the queue event server.

Owns the one long-lived connection shared by every feature of the client:
establishes it, reconnects with bounded exponential backoff, fans inbound
frames out to registered listeners, and reports lifecycle changes as signals.
Nothing here raises into callers; failures are observable only through
`state` and the lifecycle signals.
"""

import asyncio
import inspect
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from ..exceptions import ConnectionExhaustedError, TransportClosedError
from ..infrastructure.transport import EventTransport, TransportFactory
from ..structured_logging.enhanced_logging_config import get_logger
from .reconnect_policy import ReconnectPolicy

logger = get_logger(__name__)

EventHandler = Callable[..., Any]

CLIENT_DISCONNECT_REASON = "io client disconnect"


class ConnectionStatus(str, Enum):
    """Connection status as seen by observers."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class LifecycleSignal(str, Enum):
    """
    Lifecycle signals emitted by the connection manager.

    - CONNECT: first successful connection after connect()
    - DISCONNECT(reason): the transport went away
    - RECONNECT(attempt_count): an automatic reconnection succeeded
    - CONNECT_ERROR(error): a connection attempt failed; the terminal
      failure carries a ConnectionExhaustedError
    """

    CONNECT = "connect"
    DISCONNECT = "disconnect"
    RECONNECT = "reconnect"
    CONNECT_ERROR = "connect_error"


@dataclass
class ConnectionState:
    """Connection state; mutated only by ConnectionManager."""

    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    transport_id: str | None = None
    last_error: str | None = None


class ConnectionManager:
    """
    Manages the shared connection to the queue event server.

    One instance is created by the application container and shared by all
    features; each feature registers its own listeners on it rather than
    opening a separate connection.
    """

    def __init__(
        self,
        transport_factory: TransportFactory,
        policy: ReconnectPolicy | None = None,
        connect_timeout: float = 20.0,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        """
        Initialize the connection manager.

        Args:
            transport_factory: Creates a fresh transport for every attempt
            policy: Reconnection policy (defaults to ReconnectPolicy())
            connect_timeout: Handshake timeout in seconds
            sleep: Coroutine used for backoff delays
        """
        self._transport_factory = transport_factory
        self._policy = policy or ReconnectPolicy()
        self._connect_timeout = connect_timeout
        self._sleep = sleep

        self._state = ConnectionState()
        self._transport: EventTransport | None = None
        self._server_url: str | None = None
        self._supervisor: asyncio.Task | None = None
        self._connected = asyncio.Event()

        # event name -> handlers in registration order
        self._event_handlers: dict[str, list[EventHandler]] = {}
        self._lifecycle_handlers: dict[LifecycleSignal, list[EventHandler]] = {s: [] for s in LifecycleSignal}

        # Delayed callbacks and in-flight handler/send tasks owned by this connection
        self._scheduled: set[asyncio.TimerHandle] = set()
        self._tasks: set[asyncio.Task] = set()

    @property
    def state(self) -> ConnectionState:
        """Snapshot of the connection state."""
        return replace(self._state)

    @property
    def server_url(self) -> str | None:
        """URL passed to the last connect() call."""
        return self._server_url

    def is_connected(self) -> bool:
        """Check whether the transport is connected."""
        return self._state.status is ConnectionStatus.CONNECTED and self._transport is not None

    async def connect(self, server_url: str) -> None:
        """
        Establish the connection.

        Returns as soon as the supervisor task is started; the outcome is
        reported through CONNECT / CONNECT_ERROR. Calling connect() while
        connecting or connected is a no-op.
        """
        supervising = self._supervisor is not None and not self._supervisor.done()
        if self._state.status is not ConnectionStatus.DISCONNECTED or supervising:
            logger.debug("connect() ignored; connection already active", status=self._state.status.value)
            return

        self._server_url = server_url
        self._state.last_error = None
        self._set_status(ConnectionStatus.CONNECTING)
        self._supervisor = asyncio.create_task(self._supervise(server_url), name="queue-connection-supervisor")
        logger.info("Connecting to queue event server", server_url=server_url)

    async def disconnect(self) -> None:
        """
        Tear down the transport and clear every registered listener.

        Also cancels scheduled callbacks (such as pending channel joins).
        Countdown timers are not owned by the connection and keep running.
        """
        for handle in list(self._scheduled):
            handle.cancel()
        self._scheduled.clear()

        supervisor, self._supervisor = self._supervisor, None
        if supervisor is not None and not supervisor.done():
            supervisor.cancel()
            with suppress(asyncio.CancelledError):
                await supervisor

        transport, self._transport = self._transport, None
        if transport is not None:
            with suppress(Exception):
                await transport.close()

        was_connected = self._state.status is ConnectionStatus.CONNECTED
        self._state.transport_id = None
        self._set_status(ConnectionStatus.DISCONNECTED)
        if was_connected:
            self._emit(LifecycleSignal.DISCONNECT, CLIENT_DISCONNECT_REASON)

        for task in list(self._tasks):
            if not task.done():
                task.cancel()
        self._tasks.clear()

        self._event_handlers.clear()
        for handlers in self._lifecycle_handlers.values():
            handlers.clear()

        logger.info("Disconnected from queue event server")

    async def wait_until_connected(self, timeout: float | None = None) -> bool:
        """Wait until the connection is established; False on timeout."""
        if self.is_connected():
            return True
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return self.is_connected()

    def send(self, event_name: str, payload: Any = None) -> bool:
        """
        Send an event without waiting for delivery.

        Events sent while not connected are dropped and logged, never queued.

        Returns:
            bool: True if the event was handed to the transport
        """
        transport = self._transport
        if transport is None or not self.is_connected():
            logger.warning("Dropped outbound event; not connected", event_name=event_name)
            return False

        self._track(asyncio.create_task(self._send(transport, event_name, payload)))
        return True

    async def _send(self, transport: EventTransport, event_name: str, payload: Any) -> None:
        try:
            await transport.send(event_name, payload)
        except Exception as e:
            logger.error("Failed to send event", event_name=event_name, error=str(e), error_type=type(e).__name__)

    def on(self, event_name: str, handler: EventHandler) -> None:
        """Register a server event handler; registering the same handler twice is a no-op."""
        handlers = self._event_handlers.setdefault(event_name, [])
        if handler not in handlers:
            handlers.append(handler)

    def off(self, event_name: str, handler: EventHandler) -> bool:
        """Remove a server event handler; returns False if it was not registered."""
        handlers = self._event_handlers.get(event_name)
        if not handlers or handler not in handlers:
            return False
        handlers.remove(handler)
        if not handlers:
            del self._event_handlers[event_name]
        return True

    def on_lifecycle(self, signal: LifecycleSignal, handler: EventHandler) -> None:
        """Register a lifecycle handler; registering the same handler twice is a no-op."""
        handlers = self._lifecycle_handlers[signal]
        if handler not in handlers:
            handlers.append(handler)

    def off_lifecycle(self, signal: LifecycleSignal, handler: EventHandler) -> bool:
        """Remove a lifecycle handler; returns False if it was not registered."""
        handlers = self._lifecycle_handlers[signal]
        if handler not in handlers:
            return False
        handlers.remove(handler)
        return True

    def has_listener(self, event_name: str, handler: EventHandler) -> bool:
        return handler in self._event_handlers.get(event_name, [])

    def has_lifecycle_listener(self, signal: LifecycleSignal, handler: EventHandler) -> bool:
        return handler in self._lifecycle_handlers[signal]

    def listener_count(self, event_name: str | None = None) -> int:
        """Number of registered server event handlers (for one event or all)."""
        if event_name is not None:
            return len(self._event_handlers.get(event_name, []))
        return sum(len(handlers) for handlers in self._event_handlers.values())

    def lifecycle_listener_count(self, signal: LifecycleSignal) -> int:
        """Number of registered handlers for a lifecycle signal."""
        return len(self._lifecycle_handlers[signal])

    def schedule(self, delay: float, callback: Callable[[], Any]) -> asyncio.TimerHandle:
        """
        Run a callback after a delay, owned by the connection lifetime.

        disconnect() cancels every callback that has not run yet.
        """
        loop = asyncio.get_running_loop()

        def _run() -> None:
            self._scheduled.discard(handle)
            self._invoke(callback)

        handle = loop.call_later(delay, _run)
        self._scheduled.add(handle)
        return handle

    def cancel_scheduled(self, handle: asyncio.TimerHandle) -> None:
        """Cancel a callback returned by schedule()."""
        handle.cancel()
        self._scheduled.discard(handle)

    @property
    def pending_scheduled(self) -> int:
        """Number of scheduled callbacks that have not run yet."""
        return len(self._scheduled)

    async def _supervise(self, url: str) -> None:
        """Connect, pump frames, and reconnect until exhausted or cancelled."""
        reconnecting = False
        while True:
            transport, transport_id, retries = await self._establish(url, reconnecting)
            if transport is None:
                attempts = retries if reconnecting else retries + 1
                error = ConnectionExhaustedError(
                    "Unable to reach queue event server",
                    attempts=attempts,
                    last_error=self._state.last_error,
                    details={"url": url},
                )
                self._supervisor = None
                self._set_status(ConnectionStatus.DISCONNECTED)
                self._emit(LifecycleSignal.CONNECT_ERROR, error)
                return

            self._transport = transport
            self._state.transport_id = transport_id
            self._state.last_error = None
            self._set_status(ConnectionStatus.CONNECTED)
            if reconnecting:
                logger.info("Reconnected to queue event server", attempts=retries, transport_id=transport_id)
                self._emit(LifecycleSignal.RECONNECT, retries)
            else:
                logger.info("Connected to queue event server", transport_id=transport_id)
                self._emit(LifecycleSignal.CONNECT)

            reason = await self._pump(transport)

            self._transport = None
            with suppress(Exception):
                await transport.close()
            self._state.transport_id = None
            self._set_status(ConnectionStatus.DISCONNECTED)
            logger.warning("Connection to queue event server lost", reason=reason)
            self._emit(LifecycleSignal.DISCONNECT, reason)

            self._set_status(ConnectionStatus.CONNECTING)
            reconnecting = True

    async def _establish(self, url: str, reconnecting: bool) -> tuple[EventTransport | None, str | None, int]:
        """
        Open a transport, retrying per the policy.

        Returns:
            (transport, transport_id, retries used); transport is None when exhausted
        """
        retries = 0
        first_attempt = not reconnecting
        while True:
            if not first_attempt:
                if not self._policy.should_retry(retries):
                    return None, None, retries
                await self._sleep(self._policy.calculate_delay(retries))
                retries += 1
            first_attempt = False

            transport = self._transport_factory()
            try:
                transport_id = await transport.open(url, self._connect_timeout)
                return transport, transport_id, retries
            except asyncio.CancelledError:
                with suppress(Exception):
                    await transport.close()
                raise
            except Exception as e:
                self._state.last_error = str(e)
                logger.warning(
                    "Connection attempt failed",
                    url=url,
                    retries=retries,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                with suppress(Exception):
                    await transport.close()
                self._emit(LifecycleSignal.CONNECT_ERROR, e)

    async def _pump(self, transport: EventTransport) -> str:
        """Deliver inbound frames in order until the transport closes; returns the close reason."""
        while True:
            try:
                event_name, payload = await transport.receive()
            except TransportClosedError as e:
                return e.reason
            except ValueError as e:
                logger.warning("Dropped malformed frame", error=str(e))
                continue
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Transport receive failed", error=str(e), error_type=type(e).__name__)
                return "transport error"

            handlers = list(self._event_handlers.get(event_name, []))
            if not handlers:
                logger.debug("No listeners for server event", event_name=event_name)
            for handler in handlers:
                self._invoke(handler, payload)

    def _emit(self, signal: LifecycleSignal, *args: Any) -> None:
        for handler in list(self._lifecycle_handlers[signal]):
            self._invoke(handler, *args)

    def _invoke(self, handler: EventHandler, *args: Any) -> None:
        """Call a handler; coroutine results become tracked tasks and errors are logged."""
        handler_name = getattr(handler, "__name__", repr(handler))
        try:
            result = handler(*args)
        except Exception as e:
            logger.error("Error in connection listener", handler=handler_name, error=str(e), exc_info=True)
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._track(task)

            def _log_failure(t: asyncio.Task, name: str = handler_name) -> None:
                if not t.cancelled() and t.exception() is not None:
                    logger.error("Error in async connection listener", handler=name, error=str(t.exception()))

            task.add_done_callback(_log_failure)

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _set_status(self, status: ConnectionStatus) -> None:
        previous = self._state.status
        self._state.status = status
        if status is ConnectionStatus.CONNECTED:
            self._connected.set()
        else:
            self._connected.clear()
        if previous is not status:
            logger.debug("Connection status changed", previous=previous.value, status=status.value)
