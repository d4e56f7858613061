"""
Event types for the queue realtime core.

RawEvent is what the transport delivered; CanonicalEvent is the normalized,
enriched record every consumer (notification dispatcher, query invalidation)
works with.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def _default_timestamp() -> datetime:
    """Factory function for default timestamp."""
    return datetime.now(UTC)


class EventKind(str, Enum):
    """The closed set of queue event kinds the client understands."""

    PATIENT_ON_HOLD = "patient_on_hold"
    PATIENT_AVAILABLE = "patient_available"
    PATIENT_ASSIGNED = "patient_assigned"
    PATIENT_RESUMED = "patient_resumed"
    PATIENT_READY = "patient_ready"
    QUEUE_UPDATED = "queue_updated"
    QUEUE_REORDERED = "queue_reordered"
    PATIENT_CALLED = "patient_called"
    PATIENT_CHECKED_IN = "patient_checked_in"


# Server event name -> kind. Several wire events collapse onto one kind:
# removal from the hold queue means drops were applied and the patient is
# available again; a completed consultation is a generic queue change.
WIRE_EVENT_KINDS: dict[str, EventKind] = {
    "queue:patient-on-hold": EventKind.PATIENT_ON_HOLD,
    "queue:patient-available": EventKind.PATIENT_AVAILABLE,
    "queue:patient-removed": EventKind.PATIENT_AVAILABLE,
    "queue:patient-assigned": EventKind.PATIENT_ASSIGNED,
    "queue:patient-resumed": EventKind.PATIENT_RESUMED,
    "queue:patient-ready": EventKind.PATIENT_READY,
    "queue:updated": EventKind.QUEUE_UPDATED,
    "queue:patient-processed": EventKind.QUEUE_UPDATED,
    "queue:reordered": EventKind.QUEUE_REORDERED,
    "queue:patient-called": EventKind.PATIENT_CALLED,
    "queue:patient-checked-in": EventKind.PATIENT_CHECKED_IN,
}


@dataclass(frozen=True)
class RawEvent:
    """An event exactly as received from the transport."""

    type: str
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_wire(cls, event_name: str, data: Any) -> "RawEvent":
        """Build a RawEvent from a frame; non-object payloads become an empty map."""
        return cls(type=event_name, payload=dict(data) if isinstance(data, dict) else {})


@dataclass(frozen=True)
class CanonicalEvent:
    """
    Normalized queue event.

    patient_display_name and reason_text are never empty; the normalizer
    substitutes fallback values when the source data is missing.
    """

    kind: EventKind
    queue_entry_id: str
    patient_display_name: str
    reason_text: str
    timestamp: datetime = field(default_factory=_default_timestamp)

    def __post_init__(self) -> None:
        if not self.patient_display_name or not self.patient_display_name.strip():
            raise ValueError("patient_display_name cannot be empty")
        if not self.reason_text or not self.reason_text.strip():
            raise ValueError("reason_text cannot be empty")

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary (used as alert data)."""
        return {
            "kind": self.kind.value,
            "queueEntryId": self.queue_entry_id,
            "patientName": self.patient_display_name,
            "reasons": self.reason_text,
            "timestamp": self.timestamp.isoformat(),
        }
