"""
Notification templates.

Exactly one template per EventKind. Templates interpolate the patient display
name and, where it matters, the reason text.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType

from ..events.event_types import CanonicalEvent, EventKind


class AlertUrgency(str, Enum):
    """How an alert is presented; SILENT alerts only refresh listings and are never shown."""

    SILENT = "silent"
    NORMAL = "normal"
    HIGH = "high"


@dataclass(frozen=True)
class NotificationTemplate:
    title: str
    body: str
    urgency: AlertUrgency
    haptic: bool = False

    def render(self, event: CanonicalEvent) -> tuple[str, str, AlertUrgency]:
        body = self.body.format(name=event.patient_display_name, reasons=event.reason_text)
        return self.title, body, self.urgency


TEMPLATES: Mapping[EventKind, NotificationTemplate] = MappingProxyType(
    {
        EventKind.PATIENT_ON_HOLD: NotificationTemplate(
            "New Patient in Queue", "{name} needs: {reasons}", AlertUrgency.HIGH, haptic=True
        ),
        EventKind.PATIENT_AVAILABLE: NotificationTemplate(
            "Eye Drops Applied", "{name} is ready - eye drops have been applied", AlertUrgency.NORMAL
        ),
        EventKind.PATIENT_ASSIGNED: NotificationTemplate(
            "New Patient Assigned", "{name} has been assigned to your queue", AlertUrgency.HIGH, haptic=True
        ),
        EventKind.PATIENT_RESUMED: NotificationTemplate(
            "Patient Resumed", "{name} resumed from observation", AlertUrgency.NORMAL, haptic=True
        ),
        EventKind.PATIENT_READY: NotificationTemplate(
            "Patient Ready for Examination", "{name} is ready for examination", AlertUrgency.HIGH, haptic=True
        ),
        EventKind.QUEUE_UPDATED: NotificationTemplate("Queue Update", "{name} - queue status changed", AlertUrgency.SILENT),
        EventKind.QUEUE_REORDERED: NotificationTemplate("Queue Reordered", "{name} - queue order changed", AlertUrgency.SILENT),
        EventKind.PATIENT_CALLED: NotificationTemplate("Patient Called", "{name} has been called", AlertUrgency.SILENT),
        EventKind.PATIENT_CHECKED_IN: NotificationTemplate(
            "Patient Checked In", "{name} has checked in", AlertUrgency.SILENT
        ),
    }
)


def template_for(kind: EventKind) -> NotificationTemplate:
    return TEMPLATES[kind]


def render(event: CanonicalEvent) -> tuple[str, str, AlertUrgency]:
    """Render (title, body, urgency) for a canonical event."""
    return TEMPLATES[event.kind].render(event)


def is_success_kind(kind: EventKind) -> bool:
    """Whether delivering this kind triggers haptic feedback."""
    return TEMPLATES[kind].haptic
