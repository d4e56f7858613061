"""
Queue event pipeline.

Wires the shared connection to the normalizer, and the canonical event bus to
its consumers (notification dispatcher and query invalidation bridge). Every
listener the pipeline adds is recorded and exactly those are removed on stop().
"""

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ..caching.query_invalidation import QueryInvalidationBridge
from ..events.event_bus import EventBus
from ..events.event_types import WIRE_EVENT_KINDS, RawEvent
from ..events.normalizer import EventNormalizer
from ..notifications.dispatcher import NotificationDispatcher
from ..notifications.push_registration import PushRegistrationService
from ..structured_logging.enhanced_logging_config import (
    bind_request_context,
    clear_request_context,
    get_logger,
)
from .channel_membership import ChannelMembershipController
from .connection_manager import ConnectionManager, LifecycleSignal

logger = get_logger(__name__)


@dataclass(frozen=True)
class StaffIdentity:
    """The authenticated caller, as far as the realtime core needs it."""

    staff_id: str
    staff_type: str


class QueueEventPipeline:
    """
    Connection -> normalizer -> event bus -> (dispatcher, invalidation bridge).

    start()/stop() manage the listeners; start_session()/end_session() manage
    the identity-dependent parts (channel membership, push registration and
    the logging context).
    """

    def __init__(
        self,
        connection: ConnectionManager,
        normalizer: EventNormalizer,
        event_bus: EventBus,
        dispatcher: NotificationDispatcher,
        invalidation_bridge: QueryInvalidationBridge,
        membership: ChannelMembershipController,
        push_registration: PushRegistrationService | None = None,
    ) -> None:
        self._connection = connection
        self._normalizer = normalizer
        self._event_bus = event_bus
        self._dispatcher = dispatcher
        self._bridge = invalidation_bridge
        self._membership = membership
        self._push_registration = push_registration

        self._wire_handlers: dict[str, Callable[..., Any]] = {}
        self._identity: StaffIdentity | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def identity(self) -> StaffIdentity | None:
        return self._identity

    def start(self) -> None:
        """
        Register the pipeline's listeners.

        Calling start() while running is a no-op unless the connection dropped
        its listeners (ConnectionManager.disconnect() clears every registry);
        then the connection-side listeners and channel membership are restored.
        """
        if self._running:
            if self._connection_hooked():
                return
            logger.warning("Connection listeners were cleared, re-registering queue event pipeline")
            self._register_connection_listeners()
            self._membership.reattach()
            return

        self._register_connection_listeners()
        self._event_bus.subscribe(self._dispatcher.handle_event)
        self._event_bus.subscribe(self._bridge.handle_event)
        self._running = True
        logger.info("Queue event pipeline started", wire_events=len(self._wire_handlers))

    def _connection_hooked(self) -> bool:
        if not self._connection.has_lifecycle_listener(LifecycleSignal.RECONNECT, self._on_reconnect):
            return False
        return all(
            self._connection.has_listener(event_name, handler) for event_name, handler in self._wire_handlers.items()
        )

    def _register_connection_listeners(self) -> None:
        self._wire_handlers.clear()
        for event_name in WIRE_EVENT_KINDS:
            handler = self._wire_handler(event_name)
            self._wire_handlers[event_name] = handler
            self._connection.on(event_name, handler)
        self._connection.on_lifecycle(LifecycleSignal.RECONNECT, self._on_reconnect)

    def stop(self) -> None:
        """Remove exactly the listeners start() added."""
        if not self._running:
            return

        for event_name, handler in self._wire_handlers.items():
            self._connection.off(event_name, handler)
        self._wire_handlers.clear()

        self._event_bus.unsubscribe(self._dispatcher.handle_event)
        self._event_bus.unsubscribe(self._bridge.handle_event)
        self._connection.off_lifecycle(LifecycleSignal.RECONNECT, self._on_reconnect)
        self._running = False
        logger.info("Queue event pipeline stopped")

    async def start_session(self, identity: StaffIdentity, push_token: str | None = None) -> None:
        """
        Begin an authenticated session.

        Starts the pipeline if needed, joins the identity's channels on every
        (re)connect, and registers the push token once.
        """
        if self._identity is not None and self._identity != identity:
            await self.end_session()

        self.start()
        self._identity = identity
        bind_request_context(staff_id=identity.staff_id, role=identity.staff_type)
        self._membership.attach(identity.staff_type, identity.staff_id)
        logger.info("Queue session started", channels=sorted(self._membership.channels))

        if self._push_registration is not None:
            await self._push_registration.register(push_token, identity.staff_id, identity.staff_type)

    async def end_session(self) -> None:
        """End the session (logout): leave channel maintenance and unregister push."""
        if self._identity is None:
            return
        self._membership.detach()
        if self._push_registration is not None:
            await self._push_registration.unregister()
        logger.info("Queue session ended")
        self._identity = None
        clear_request_context()

    def _wire_handler(self, event_name: str) -> Callable[..., Any]:
        def handle(payload: Any = None) -> None:
            self._normalizer.submit(RawEvent.from_wire(event_name, payload))

        handle.__name__ = f"on_{event_name.replace(':', '_').replace('-', '_')}"
        return handle

    def _on_reconnect(self, attempts: int = 0) -> None:
        # Events sent while the connection was down are lost; refresh every listing
        logger.info("Refreshing queue listings after reconnect", attempts=attempts)
        self._bridge.invalidate_all()
