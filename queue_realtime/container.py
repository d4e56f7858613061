"""
Application container for the queue realtime core.

The composition root: builds every component once, in dependency order, and
tears them down in reverse. The connection manager is created here and shared
by all features; nothing in the package keeps a module-level instance.

USAGE:
    container = ApplicationContainer(alert_sink=my_sink)
    await container.initialize()
    await container.connect()
    await container.pipeline.start_session(StaffIdentity("S1", "optometrist"))
    ...
    await container.shutdown()

Tests pass fakes for the transport, alert sink and HTTP collaborators.
"""

import asyncio
from collections.abc import Callable
from typing import Any

from .caching.query_invalidation import InMemoryQueryCache, QueryInvalidationBridge, StaleQuerySink
from .clients.eye_drop_queue import EyeDropQueueClient, HttpEyeDropQueueClient
from .clients.patient_lookup import HttpPatientLookup, PatientLookup
from .config import get_config
from .config.models import AppConfig
from .events.event_bus import EventBus
from .events.normalizer import EventNormalizer
from .infrastructure.transport import TransportFactory
from .infrastructure.websocket_transport import WebSocketTransport
from .notifications.dispatcher import HapticFeedback, LocalAlertSink, NotificationDispatcher
from .notifications.push_registration import HttpPushRegistry, PushRegistrationService, PushRegistry
from .realtime.channel_membership import ChannelMembershipController
from .realtime.connection_manager import ConnectionManager
from .realtime.pipeline import QueueEventPipeline
from .realtime.reconnect_policy import ReconnectPolicy
from .structured_logging.enhanced_logging_config import get_logger
from .timers.countdown import CountdownTimerEngine
from .timers.dilation_sync import DilationTimerSync
from .timers.queue_refresh import EyeDropQueueRefresher

logger = get_logger(__name__)


class ApplicationContainer:
    """
    Owns the lifecycle of every realtime component.

    Collaborators that live outside the core (alert sink, haptics, HTTP
    clients, the transport) can be injected; anything not injected is built
    from configuration.
    """

    def __init__(
        self,
        alert_sink: LocalAlertSink,
        config: AppConfig | None = None,
        haptics: HapticFeedback | None = None,
        transport_factory: TransportFactory | None = None,
        patient_lookup: PatientLookup | None = None,
        push_registry: PushRegistry | None = None,
        query_cache: StaleQuerySink | None = None,
        eye_drop_queue: EyeDropQueueClient | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        """
        Create the container. Nothing is built until initialize().

        Args:
            alert_sink: Local alert delivery
            config: Configuration (defaults to get_config())
            haptics: Haptic feedback for success-class alerts
            transport_factory: Transport per connection attempt (defaults to WebSocketTransport)
            patient_lookup: Name lookup (defaults to HttpPatientLookup)
            push_registry: Push token registry (defaults to HttpPushRegistry)
            query_cache: Stale-query sink (defaults to InMemoryQueryCache)
            eye_drop_queue: Eye-drop queue listing (defaults to HttpEyeDropQueueClient)
            clock: Wall clock for timers and dedupe (defaults to time.time)
        """
        self._alert_sink = alert_sink
        self._haptics = haptics
        self._transport_factory = transport_factory
        self._clock = clock
        self._owned_http_clients: list[Any] = []

        self.config: AppConfig | None = config
        self.patient_lookup: PatientLookup | None = patient_lookup
        self.push_registry: PushRegistry | None = push_registry
        self.query_cache: StaleQuerySink | None = query_cache
        self.eye_drop_queue: EyeDropQueueClient | None = eye_drop_queue

        self.connection_manager: ConnectionManager | None = None
        self.event_bus: EventBus | None = None
        self.normalizer: EventNormalizer | None = None
        self.dispatcher: NotificationDispatcher | None = None
        self.invalidation_bridge: QueryInvalidationBridge | None = None
        self.membership: ChannelMembershipController | None = None
        self.push_registration: PushRegistrationService | None = None
        self.timer_engine: CountdownTimerEngine | None = None
        self.dilation_sync: DilationTimerSync | None = None
        self.queue_refresher: EyeDropQueueRefresher | None = None
        self.pipeline: QueueEventPipeline | None = None

        self._initialized: bool = False
        self._initialization_lock = asyncio.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """
        Build every component in dependency order.

        INITIALIZATION ORDER:
        1. Configuration
        2. Connection manager (transport factory, reconnect policy)
        3. Event bus and its consumers (dispatcher, invalidation bridge)
        4. Normalizer (patient lookup)
        5. Channel membership, push registration, pipeline
        6. Timer engine, dilation sync and the eye-drop queue refresher
        """
        async with self._initialization_lock:
            if self._initialized:
                logger.warning("Container already initialized - skipping re-initialization")
                return

            logger.info("Initializing ApplicationContainer...")
            config = self.config or get_config()
            self.config = config

            self.connection_manager = ConnectionManager(
                transport_factory=self._transport_factory or WebSocketTransport,
                policy=ReconnectPolicy.from_config(config.connection),
                connect_timeout=config.connection.connect_timeout,
            )

            clock_kwargs: dict[str, Any] = {"clock": self._clock} if self._clock is not None else {}

            self.event_bus = EventBus()
            self.dispatcher = NotificationDispatcher(
                self._alert_sink,
                haptics=self._haptics,
                dedupe_window_seconds=config.notifications.dedupe_window_seconds,
                haptics_enabled=config.notifications.haptics_enabled,
                alert_timeout_seconds=config.notifications.alert_timeout_seconds,
                **clock_kwargs,
            )
            if self.query_cache is None:
                self.query_cache = InMemoryQueryCache()
            self.invalidation_bridge = QueryInvalidationBridge(self.query_cache)

            if self.patient_lookup is None:
                lookup = HttpPatientLookup(config.api.base_url, timeout=config.api.timeout)
                self._owned_http_clients.append(lookup)
                self.patient_lookup = lookup
            self.normalizer = EventNormalizer(
                self.event_bus.publish,
                lookup=self.patient_lookup,
                placeholder_name=config.notifications.placeholder_name,
            )

            if self.push_registry is None:
                registry = HttpPushRegistry(config.api.base_url, timeout=config.api.timeout)
                self._owned_http_clients.append(registry)
                self.push_registry = registry
            self.push_registration = PushRegistrationService(self.push_registry)

            self.membership = ChannelMembershipController(
                self.connection_manager, join_delay=config.connection.join_delay
            )
            self.pipeline = QueueEventPipeline(
                connection=self.connection_manager,
                normalizer=self.normalizer,
                event_bus=self.event_bus,
                dispatcher=self.dispatcher,
                invalidation_bridge=self.invalidation_bridge,
                membership=self.membership,
                push_registration=self.push_registration,
            )

            self.timer_engine = CountdownTimerEngine(tick_interval=config.timers.tick_interval, **clock_kwargs)
            self.dilation_sync = DilationTimerSync(
                self.timer_engine, default_duration_minutes=config.timers.default_duration_minutes
            )
            if self.eye_drop_queue is None:
                queue_client = HttpEyeDropQueueClient(config.api.base_url, timeout=config.api.timeout)
                self._owned_http_clients.append(queue_client)
                self.eye_drop_queue = queue_client
            self.queue_refresher = EyeDropQueueRefresher(
                self.eye_drop_queue,
                self.dilation_sync,
                cache=self.query_cache,
                interval_seconds=config.timers.refetch_interval_seconds,
            )

            self.pipeline.start()
            self.queue_refresher.start()
            self._initialized = True
            logger.info("ApplicationContainer initialized", socket_url=config.socket_url)

    async def connect(self, server_url: str | None = None) -> None:
        """
        Connect the shared connection (to the configured socket URL by default).

        Safe after ConnectionManager.disconnect(): the pipeline listeners and
        channel membership it cleared are registered again first.
        """
        if not self._initialized or self.connection_manager is None or self.config is None:
            raise RuntimeError("Container not initialized")
        if self.pipeline is not None:
            self.pipeline.start()
        await self.connection_manager.connect(server_url or self.config.socket_url)

    async def shutdown(self) -> None:
        """
        Tear down in reverse order.

        Each step is best effort: a failure is logged and the remaining
        components are still shut down.
        """
        if not self._initialized:
            return
        logger.info("Shutting down ApplicationContainer...")

        await self._shutdown_step("session", self._end_session)
        await self._shutdown_step(
            "queue refresher", self.queue_refresher.shutdown if self.queue_refresher else None
        )
        await self._shutdown_step("timer engine", self.timer_engine.shutdown if self.timer_engine else None)
        await self._shutdown_step("connection", self.connection_manager.disconnect if self.connection_manager else None)
        await self._shutdown_step("normalizer", self.normalizer.shutdown if self.normalizer else None)
        await self._shutdown_step("event bus", self.event_bus.shutdown if self.event_bus else None)
        for client in self._owned_http_clients:
            await self._shutdown_step("http client", client.aclose)
        self._owned_http_clients.clear()

        self._initialized = False
        logger.info("ApplicationContainer shutdown complete")

    async def _end_session(self) -> None:
        if self.pipeline is not None:
            await self.pipeline.end_session()
            self.pipeline.stop()

    async def _shutdown_step(self, name: str, step: Callable[[], Any] | None) -> None:
        if step is None:
            return
        try:
            await step()
        except Exception as e:
            logger.error("Error during shutdown", component=name, error=str(e), exc_info=True)
