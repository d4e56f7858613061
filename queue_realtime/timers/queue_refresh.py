"""
Eye-drop queue refetching.

Keeps the dilation countdowns fed: the listing is fetched once on start,
again whenever a queue event marks it stale, and every refetch interval as a
fallback for missed events. Each fetched listing is stored in the query cache
and applied to DilationTimerSync.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from ..caching.query_invalidation import QueryKey
from ..clients.eye_drop_queue import EyeDropQueueClient
from ..exceptions import QueueFetchError
from ..structured_logging.enhanced_logging_config import get_logger
from .dilation_sync import DilationTimerSync, SyncResult

logger = get_logger(__name__)

DEFAULT_REFETCH_INTERVAL_SECONDS = 30.0


class EyeDropQueueRefresher:
    """
    Fetches the eye-drop queue and applies it to the dilation countdowns.

    Refreshes never overlap; a stale signal that arrives while a fetch is in
    flight runs another fetch after it so the newest listing always wins.
    """

    def __init__(
        self,
        client: EyeDropQueueClient,
        dilation_sync: DilationTimerSync,
        cache: Any = None,
        interval_seconds: float = DEFAULT_REFETCH_INTERVAL_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._client = client
        self._sync = dilation_sync
        self._cache = cache
        self._interval = interval_seconds
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._pending: set[asyncio.Task] = set()
        self._remove_stale_listener: Callable[[], None] | None = None
        self.refresh_count = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def refresh(self) -> SyncResult | None:
        """
        Fetch the listing once and reconcile the countdowns with it.

        Returns:
            SyncResult, or None when the fetch failed (the failure is logged
            and the next stale signal or interval retries)
        """
        async with self._lock:
            try:
                entries = await self._client.fetch_queue()
            except QueueFetchError as e:
                logger.warning("Eye-drop queue refetch failed", error=str(e), details=e.details)
                return None

            self.refresh_count += 1
            set_data = getattr(self._cache, "set", None)
            if set_data is not None:
                set_data(QueryKey.EYE_DROP_QUEUE, entries)
            return self._sync.apply_snapshot(entries)

    def start(self) -> None:
        """Hook the stale signal and start the periodic refetch; a no-op when running."""
        if self.running:
            return

        on_stale = getattr(self._cache, "on_stale", None)
        if on_stale is not None:
            self._remove_stale_listener = on_stale(QueryKey.EYE_DROP_QUEUE, self._on_stale)
        else:
            logger.info("Query cache has no stale listeners, relying on periodic refetch only")

        self._task = asyncio.get_running_loop().create_task(self._run(), name="eye-drop-queue-refresh")
        logger.info("Eye-drop queue refresher started", interval_seconds=self._interval)

    async def drain(self) -> None:
        """Wait for refetches triggered by stale signals to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def shutdown(self) -> None:
        """Stop refetching, cancel in-flight refetches and remove the stale listener."""
        if self._remove_stale_listener is not None:
            self._remove_stale_listener()
            self._remove_stale_listener = None

        tasks = list(self._pending)
        if self._task is not None:
            tasks.append(self._task)
        self._task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()
        logger.info("Eye-drop queue refresher stopped")

    def _on_stale(self, _query_key: QueryKey) -> None:
        task = asyncio.get_running_loop().create_task(self._guarded_refresh(), name="eye-drop-queue-refetch")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _guarded_refresh(self) -> None:
        try:
            await self.refresh()
        except Exception as e:
            logger.error("Unexpected error refreshing eye-drop queue", error=str(e), exc_info=True)

    async def _run(self) -> None:
        while True:
            await self._guarded_refresh()
            await self._sleep(self._interval)
