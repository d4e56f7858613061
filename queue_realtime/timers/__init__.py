"""Per-entry countdown timers for dilation waits."""

from .countdown import (
    CountdownTimer,
    CountdownTimerEngine,
    PatientStatus,
    TimerState,
    calculate_patient_status,
    format_time_remaining,
    status_text,
)
from .dilation_sync import DilationTimerSync, QueueEntrySnapshot
from .queue_refresh import EyeDropQueueRefresher

__all__ = [
    "CountdownTimer",
    "CountdownTimerEngine",
    "DilationTimerSync",
    "EyeDropQueueRefresher",
    "PatientStatus",
    "QueueEntrySnapshot",
    "TimerState",
    "calculate_patient_status",
    "format_time_remaining",
    "status_text",
]
