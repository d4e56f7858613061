"""
Countdown timer engine.

One countdown per queue entry (dilation wait). Two mechanisms cooperate:
a periodic tick refreshes the displayed remaining seconds, and a wall-clock
expiry instant decides correctness. Remaining time is always recomputed from
the wall clock, so a suspended loop or a remounted observer never extends or
resets a countdown.

Timers belong to queue-entry state, not to the connection: nothing in the
connection lifecycle cancels them.
"""

import asyncio
import inspect
import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..structured_logging.enhanced_logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_TIMER_DURATION_MINUTES = 10

ExpireListener = Callable[[str], Any]
TimerObserver = Callable[["CountdownTimer"], Any]


class TimerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


@dataclass
class CountdownTimer:
    """State of one countdown; mutated only by CountdownTimerEngine."""

    queue_entry_id: str
    duration_seconds: int
    expires_at: float
    remaining_seconds: int
    state: TimerState = TimerState.IDLE
    on_expire: ExpireListener | None = field(default=None, repr=False)

    @property
    def expired(self) -> bool:
        return self.state is TimerState.EXPIRED

    @property
    def running(self) -> bool:
        return self.state is TimerState.RUNNING


class CountdownTimerEngine:
    """
    Maintains at most one running countdown per queue entry.

    Expiry is signalled exactly once per start(): to the per-timer callback
    given to start() and to every listener added with add_expire_listener().
    No signal is ever delivered synchronously from inside start().
    """

    def __init__(self, clock: Callable[[], float] = time.time, tick_interval: float = 1.0) -> None:
        """
        Initialize the engine.

        Args:
            clock: Wall-clock source in seconds; must match the expires_at values passed to start()
            tick_interval: Seconds between display refreshes
        """
        if tick_interval <= 0:
            raise ValueError("tick_interval must be positive")
        self._clock = clock
        self._tick_interval = tick_interval
        self._timers: dict[str, CountdownTimer] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._observers: dict[str, list[TimerObserver]] = {}
        self._expire_listeners: list[ExpireListener] = []
        self._callback_tasks: set[asyncio.Task] = set()

    def now(self) -> float:
        """Current time on the engine's wall clock."""
        return self._clock()

    def start(
        self,
        queue_entry_id: str,
        duration_seconds: float,
        expires_at: float | None = None,
        on_expire: ExpireListener | None = None,
    ) -> CountdownTimer:
        """
        Start (or restart) the countdown for an entry.

        Any existing timer for the entry is cancelled first; its expiry never fires.

        Args:
            queue_entry_id: Queue entry the countdown belongs to
            duration_seconds: Countdown length; zero or negative expires on the next tick
            expires_at: Absolute wall-clock expiry; when given it wins over duration_seconds
            on_expire: Called with queue_entry_id when this timer expires

        Returns:
            CountdownTimer: The running timer
        """
        loop = asyncio.get_running_loop()
        self._stop(queue_entry_id, TimerState.CANCELLED, notify=False)

        now = self._clock()
        if expires_at is None:
            expires_at = now + max(0.0, float(duration_seconds))
        timer = CountdownTimer(
            queue_entry_id=queue_entry_id,
            duration_seconds=max(0, math.ceil(duration_seconds)),
            expires_at=expires_at,
            remaining_seconds=max(0, math.ceil(expires_at - now)),
            state=TimerState.RUNNING,
            on_expire=on_expire,
        )
        self._timers[queue_entry_id] = timer
        self._tasks[queue_entry_id] = loop.create_task(
            self._run(timer), name=f"countdown-{queue_entry_id}"
        )
        logger.debug(
            "Countdown started",
            queue_entry_id=queue_entry_id,
            remaining_seconds=timer.remaining_seconds,
        )
        self._notify_observers(timer)
        return timer

    def cancel(self, queue_entry_id: str) -> bool:
        """
        Cancel a running countdown.

        Unknown, expired and already-cancelled entries are a no-op.

        Returns:
            bool: True if a running timer was cancelled
        """
        timer = self._timers.get(queue_entry_id)
        if timer is None or not timer.running:
            return False
        self._stop(queue_entry_id, TimerState.CANCELLED, notify=True)
        logger.debug("Countdown cancelled", queue_entry_id=queue_entry_id)
        return True

    def consume(self, queue_entry_id: str) -> bool:
        """Drop an expired timer once its expiry has been handled."""
        timer = self._timers.get(queue_entry_id)
        if timer is None or not timer.expired:
            return False
        del self._timers[queue_entry_id]
        return True

    def get(self, queue_entry_id: str) -> CountdownTimer | None:
        return self._timers.get(queue_entry_id)

    def remaining(self, queue_entry_id: str) -> int | None:
        """Remaining whole seconds, computed from the wall clock; None when no timer exists."""
        timer = self._timers.get(queue_entry_id)
        if timer is None:
            return None
        if not timer.running:
            return 0
        return max(0, math.ceil(timer.expires_at - self._clock()))

    def is_running(self, queue_entry_id: str) -> bool:
        timer = self._timers.get(queue_entry_id)
        return timer is not None and timer.running

    def active_ids(self) -> list[str]:
        """Entries with a running countdown."""
        return [entry_id for entry_id, timer in self._timers.items() if timer.running]

    def observe(self, queue_entry_id: str, callback: TimerObserver) -> Callable[[], None]:
        """
        Observe the countdown of an entry (every tick, expiry and cancellation).

        Observers survive restarts of the entry's timer. Removing an
        observer never affects the timer.

        Returns:
            Function that removes the observer
        """
        observers = self._observers.setdefault(queue_entry_id, [])
        if callback not in observers:
            observers.append(callback)

        def unsubscribe() -> None:
            current = self._observers.get(queue_entry_id)
            if current and callback in current:
                current.remove(callback)
                if not current:
                    del self._observers[queue_entry_id]

        return unsubscribe

    def observer_count(self, queue_entry_id: str) -> int:
        return len(self._observers.get(queue_entry_id, []))

    def add_expire_listener(self, listener: ExpireListener) -> Callable[[], None]:
        """Listen for every expiry; returns a function that removes the listener."""
        if listener not in self._expire_listeners:
            self._expire_listeners.append(listener)

        def remove() -> None:
            if listener in self._expire_listeners:
                self._expire_listeners.remove(listener)

        return remove

    async def shutdown(self) -> None:
        """Cancel every countdown and pending callback; no expiry fires afterwards."""
        tasks = list(self._tasks.values()) + list(self._callback_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for timer in self._timers.values():
            if timer.running:
                timer.state = TimerState.CANCELLED
        self._tasks.clear()
        self._callback_tasks.clear()
        self._timers.clear()
        self._observers.clear()
        self._expire_listeners.clear()
        logger.info("Countdown timer engine stopped")

    async def _run(self, timer: CountdownTimer) -> None:
        while True:
            remaining = timer.expires_at - self._clock()
            # Wake at the next tick or exactly at expiry, whichever comes first
            await asyncio.sleep(min(self._tick_interval, max(0.0, remaining)))
            if self._timers.get(timer.queue_entry_id) is not timer or not timer.running:
                return

            remaining = timer.expires_at - self._clock()
            timer.remaining_seconds = max(0, math.ceil(remaining))
            if remaining <= 0:
                self._expire(timer)
                return
            self._notify_observers(timer)

    def _expire(self, timer: CountdownTimer) -> None:
        timer.state = TimerState.EXPIRED
        timer.remaining_seconds = 0
        self._tasks.pop(timer.queue_entry_id, None)
        logger.info("Countdown expired", queue_entry_id=timer.queue_entry_id)

        self._notify_observers(timer)
        listeners: list[ExpireListener] = list(self._expire_listeners)
        if timer.on_expire is not None:
            listeners.insert(0, timer.on_expire)
        for listener in listeners:
            self._call(listener, timer.queue_entry_id)

    def _stop(self, queue_entry_id: str, state: TimerState, notify: bool) -> None:
        task = self._tasks.pop(queue_entry_id, None)
        if task is not None and not task.done():
            task.cancel()
        timer = self._timers.pop(queue_entry_id, None)
        if timer is None:
            return
        if timer.running:
            timer.state = state
            if notify:
                self._notify_observers(timer)

    def _notify_observers(self, timer: CountdownTimer) -> None:
        for observer in list(self._observers.get(timer.queue_entry_id, [])):
            self._call(observer, timer)

    def _call(self, callback: Callable[..., Any], *args: Any) -> None:
        try:
            result = callback(*args)
        except Exception as e:
            logger.error(
                "Error in countdown callback",
                callback=getattr(callback, "__name__", repr(callback)),
                error=str(e),
                exc_info=True,
            )
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._callback_tasks.add(task)
            task.add_done_callback(self._callback_tasks.discard)


def format_time_remaining(seconds: float) -> str:
    """Format seconds as m:ss (e.g. 125 -> "2:05"); negative values show as 0:00."""
    total = max(0, int(math.ceil(seconds)))
    minutes, remainder = divmod(total, 60)
    return f"{minutes}:{remainder:02d}"


class PatientStatus(str, Enum):
    NEEDS_DROPS = "needs_drops"
    WAITING_FOR_DILATION = "waiting_for_dilation"
    READY_TO_RESUME = "ready_to_resume"


STATUS_TEXT: dict[PatientStatus, str] = {
    PatientStatus.NEEDS_DROPS: "Needs Drops",
    PatientStatus.WAITING_FOR_DILATION: "Waiting for Dilation",
    PatientStatus.READY_TO_RESUME: "Ready to Resume",
}


def calculate_patient_status(timing: Mapping[str, Any]) -> PatientStatus:
    """Status of an eye-drop queue entry from its timing block (needsDrops wins over readyToResume)."""
    if timing.get("needsDrops"):
        return PatientStatus.NEEDS_DROPS
    if timing.get("readyToResume"):
        return PatientStatus.READY_TO_RESUME
    return PatientStatus.WAITING_FOR_DILATION


def status_text(status: PatientStatus | str) -> str:
    try:
        return STATUS_TEXT[PatientStatus(status)]
    except ValueError:
        return "Unknown Status"
