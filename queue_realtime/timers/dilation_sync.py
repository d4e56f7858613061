"""
Eye-drop queue to countdown synchronisation.

Timers are driven by queue-entry state, not by events: after an event
invalidates the eye-drop queue listing and it is refetched, the fresh entries
are applied here and turned into timer transitions.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from ..structured_logging.enhanced_logging_config import get_logger
from .countdown import DEFAULT_TIMER_DURATION_MINUTES, CountdownTimerEngine, PatientStatus, calculate_patient_status

logger = get_logger(__name__)


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_optional_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class QueueEntrySnapshot:
    """One eye-drop queue entry as returned by the queue listing."""

    queue_entry_id: str
    status: PatientStatus
    dilation_round: int = 1
    waiting_since_minutes: int = 0
    time_remaining_minutes: float | None = None
    custom_wait_minutes: float | None = None
    patient_name: str | None = None

    @classmethod
    def from_api(cls, entry: Mapping[str, Any]) -> "QueueEntrySnapshot":
        """
        Parse a listing entry: {queueEntryId, patient{fullName}, timing{...}, customWaitMinutes?}.

        Raises:
            ValueError: If the entry has no queueEntryId
        """
        entry_id = entry.get("queueEntryId")
        if not entry_id:
            raise ValueError("queue entry has no queueEntryId")

        timing = entry.get("timing") or {}
        patient = entry.get("patient") or {}
        return cls(
            queue_entry_id=str(entry_id),
            status=calculate_patient_status(timing),
            dilation_round=_as_int(timing.get("dilationRound"), 1),
            waiting_since_minutes=_as_int(timing.get("waitingSinceMinutes")),
            time_remaining_minutes=_as_optional_float(timing.get("timeRemaining")),
            custom_wait_minutes=_as_optional_float(entry.get("customWaitMinutes")),
            patient_name=patient.get("fullName") if isinstance(patient, Mapping) else None,
        )

    def expires_at(self, now: float, default_duration_minutes: float) -> float:
        """
        Absolute expiry of the dilation wait.

        Prefers the server's timeRemaining; otherwise the wait length
        (customWaitMinutes or the default) minus the time already waited.
        """
        if self.time_remaining_minutes is not None:
            return now + max(0.0, self.time_remaining_minutes) * 60
        wait_minutes = self.custom_wait_minutes if self.custom_wait_minutes is not None else default_duration_minutes
        return now + max(0.0, wait_minutes - self.waiting_since_minutes) * 60


@dataclass
class SyncResult:
    started: list[str] = field(default_factory=list)
    kept: list[str] = field(default_factory=list)
    cancelled: list[str] = field(default_factory=list)


class DilationTimerSync:
    """
    Applies eye-drop queue snapshots to the countdown engine.

    - waiting entries start a countdown, or keep the running one when the
      dilation round is unchanged and the expiry moved by less than
      anchor_tolerance_seconds
    - entries that need drops again, are ready, or disappeared lose their countdown
    """

    def __init__(
        self,
        engine: CountdownTimerEngine,
        default_duration_minutes: float = DEFAULT_TIMER_DURATION_MINUTES,
        anchor_tolerance_seconds: float = 60.0,
    ) -> None:
        self._engine = engine
        self._default_duration_minutes = default_duration_minutes
        self._anchor_tolerance = anchor_tolerance_seconds
        # queue entry id -> dilation round of the countdown we started
        self._rounds: dict[str, int] = {}

    @property
    def tracked_ids(self) -> frozenset[str]:
        return frozenset(self._rounds)

    def apply_snapshot(self, entries: Iterable[QueueEntrySnapshot | Mapping[str, Any]]) -> SyncResult:
        """Reconcile countdowns with a fresh eye-drop queue listing."""
        result = SyncResult()
        seen: set[str] = set()
        now = self._engine.now()

        for raw in entries:
            try:
                entry = raw if isinstance(raw, QueueEntrySnapshot) else QueueEntrySnapshot.from_api(raw)
            except ValueError as e:
                logger.warning("Skipping malformed queue entry", error=str(e))
                continue

            seen.add(entry.queue_entry_id)
            if entry.status is PatientStatus.WAITING_FOR_DILATION:
                self._sync_waiting(entry, now, result)
            elif self._release(entry.queue_entry_id):
                result.cancelled.append(entry.queue_entry_id)

        for entry_id in list(self._rounds):
            if entry_id not in seen and self._release(entry_id):
                result.cancelled.append(entry_id)

        if result.started or result.cancelled:
            logger.info(
                "Applied eye-drop queue snapshot",
                started=result.started,
                cancelled=result.cancelled,
                kept=len(result.kept),
            )
        return result

    def _sync_waiting(self, entry: QueueEntrySnapshot, now: float, result: SyncResult) -> None:
        expires_at = entry.expires_at(now, self._default_duration_minutes)
        timer = self._engine.get(entry.queue_entry_id)
        same_round = self._rounds.get(entry.queue_entry_id) == entry.dilation_round

        if timer is not None and same_round:
            # An expired countdown stays expired until the server moves the entry on
            if timer.expired or abs(timer.expires_at - expires_at) < self._anchor_tolerance:
                result.kept.append(entry.queue_entry_id)
                return

        self._engine.start(entry.queue_entry_id, expires_at - now, expires_at=expires_at)
        self._rounds[entry.queue_entry_id] = entry.dilation_round
        result.started.append(entry.queue_entry_id)

    def _release(self, entry_id: str) -> bool:
        """Forget an entry; returns True if a running countdown was cancelled."""
        self._rounds.pop(entry_id, None)
        if self._engine.cancel(entry_id):
            return True
        self._engine.consume(entry_id)
        return False
