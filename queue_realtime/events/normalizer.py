"""
Event normalizer and enricher.

Turns RawEvents from the transport into CanonicalEvents. Classification is a
closed table lookup; the display name comes from the payload when possible and
from the patient lookup collaborator otherwise. Lookups run as independent
tasks so one slow lookup never holds back unrelated events.
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from ..clients.patient_lookup import PatientLookup
from ..structured_logging.enhanced_logging_config import get_logger
from .event_types import WIRE_EVENT_KINDS, CanonicalEvent, EventKind, RawEvent
from .patient_name import FromFallbackId, display_name, name_from_lookup_record, parse_name_source

logger = get_logger(__name__)

DEFAULT_PLACEHOLDER_NAME = "A patient"
PATIENT_ENTRY_PREFIX = "patient:"

# Used when the payload carries no reasons, holdReason or reason
DEFAULT_REASONS: dict[EventKind, str] = {
    EventKind.PATIENT_ON_HOLD: "Eye drops",
    EventKind.PATIENT_AVAILABLE: "Eye drops applied",
    EventKind.PATIENT_ASSIGNED: "Consultation",
    EventKind.PATIENT_RESUMED: "Eye examination preparation",
    EventKind.PATIENT_READY: "Eye examination preparation",
    EventKind.QUEUE_UPDATED: "Queue status changed",
    EventKind.QUEUE_REORDERED: "Queue order changed",
    EventKind.PATIENT_CALLED: "Called for consultation",
    EventKind.PATIENT_CHECKED_IN: "Checked in",
}

CanonicalPublisher = Callable[[CanonicalEvent], Any]


def classify(raw: RawEvent) -> EventKind | None:
    """Map a raw event type to its kind; None for anything outside the wire table."""
    return WIRE_EVENT_KINDS.get(raw.type)


def reason_text(kind: EventKind, payload: dict[str, Any]) -> str:
    """
    Build the reason text for an event.

    Order: the "reasons" list joined with ", ", then holdReason, then reason,
    then the per-kind default. Never empty.
    """
    reasons = payload.get("reasons")
    if isinstance(reasons, list):
        parts = [str(r).strip() for r in reasons if r is not None and str(r).strip()]
        if parts:
            return ", ".join(parts)
    elif isinstance(reasons, str) and reasons.strip():
        return reasons.strip()

    for key in ("holdReason", "reason"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()

    return DEFAULT_REASONS[kind]


def queue_entry_id(payload: dict[str, Any]) -> str:
    """
    Queue entry the event is about.

    Without a queueEntryId the entry is keyed as "patient:<patientId>", so
    events about different patients never share a dedupe key. "" only when
    the payload identifies neither.
    """
    value = payload.get("queueEntryId")
    if value is not None and str(value).strip():
        return str(value)

    patient_id = payload.get("patientId")
    patient = payload.get("patient")
    if patient_id is None and isinstance(patient, dict):
        patient_id = patient.get("id")
    if patient_id is not None and str(patient_id).strip():
        logger.warning("Event has no queueEntryId, keying by patient id", patient_id=str(patient_id))
        return f"{PATIENT_ENTRY_PREFIX}{patient_id}"
    return ""


def event_timestamp(payload: dict[str, Any]) -> datetime:
    """Parse the payload's ISO timestamp; current UTC time when absent or invalid."""
    value = payload.get("timestamp")
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.debug("Ignoring unparseable event timestamp", timestamp=value)
        else:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return datetime.now(UTC)


class EventNormalizer:
    """
    Normalizes raw events and publishes the canonical result.

    submit() is the pipeline entry point. normalize() and enrich() are the
    pure-ish building blocks and can be used directly.
    """

    def __init__(
        self,
        publish: CanonicalPublisher,
        lookup: PatientLookup | None = None,
        placeholder_name: str = DEFAULT_PLACEHOLDER_NAME,
    ) -> None:
        """
        Initialize the normalizer.

        Args:
            publish: Receives every canonical event (usually EventBus.publish)
            lookup: Patient lookup collaborator; without one, id-only payloads use the placeholder
            placeholder_name: Display name used when no name can be determined
        """
        self._publish = publish
        self._lookup = lookup
        self._placeholder = placeholder_name
        self._in_flight: set[asyncio.Task] = set()

    @property
    def pending_lookups(self) -> int:
        return len(self._in_flight)

    def classify(self, raw: RawEvent) -> EventKind | None:
        return classify(raw)

    def normalize(self, raw: RawEvent) -> CanonicalEvent | None:
        """
        Build a canonical event without performing a lookup.

        Payloads that only carry a patient id get the placeholder name.

        Returns:
            CanonicalEvent, or None for an unrecognized type
        """
        kind = classify(raw)
        if kind is None:
            return None
        name = display_name(parse_name_source(raw.payload)) or self._placeholder
        return self._build(kind, raw.payload, name)

    async def enrich(self, raw: RawEvent) -> CanonicalEvent | None:
        """
        Build a canonical event, resolving the patient name through the lookup when needed.

        Lookup failures fall back to the placeholder and are logged; they never raise.
        """
        kind = classify(raw)
        if kind is None:
            return None

        source = parse_name_source(raw.payload)
        name = display_name(source)
        if name is None and isinstance(source, FromFallbackId):
            name = await self._lookup_name(source.patient_id, kind)
        return self._build(kind, raw.payload, name or self._placeholder)

    def submit(self, raw: RawEvent) -> bool:
        """
        Feed one raw event into the pipeline.

        Unrecognized events are dropped with a log entry. Events needing a
        lookup are published when the lookup settles; everything else is
        published immediately.

        Returns:
            bool: False if the event was dropped as unrecognized
        """
        kind = classify(raw)
        if kind is None:
            logger.warning("Dropped unrecognized queue event", event_type=raw.type)
            return False

        source = parse_name_source(raw.payload)
        if isinstance(source, FromFallbackId) and self._lookup is not None:
            task = asyncio.create_task(self._enrich_and_publish(raw), name=f"enrich-{raw.type}")
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
            return True

        event = self.normalize(raw)
        if event is not None:
            self._deliver(event)
        return True

    async def drain(self) -> None:
        """Wait for every in-flight lookup to settle."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-flight lookups; their events are not published."""
        tasks = list(self._in_flight)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()

    async def _enrich_and_publish(self, raw: RawEvent) -> None:
        event = await self.enrich(raw)
        if event is not None:
            self._deliver(event)

    async def _lookup_name(self, patient_id: str, kind: EventKind) -> str | None:
        if self._lookup is None:
            return None
        try:
            record = await self._lookup.get_patient(patient_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "Patient lookup failed; using placeholder name",
                patient_id=patient_id,
                kind=kind.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        name = name_from_lookup_record(record)
        if name is None:
            logger.info("Patient lookup returned no usable name", patient_id=patient_id, kind=kind.value)
        return name

    def _build(self, kind: EventKind, payload: dict[str, Any], name: str) -> CanonicalEvent:
        return CanonicalEvent(
            kind=kind,
            queue_entry_id=queue_entry_id(payload),
            patient_display_name=name,
            reason_text=reason_text(kind, payload),
            timestamp=event_timestamp(payload),
        )

    def _deliver(self, event: CanonicalEvent) -> None:
        try:
            self._publish(event)
        except Exception as e:
            logger.error(
                "Failed to publish canonical event",
                kind=event.kind.value,
                queue_entry_id=event.queue_entry_id,
                error=str(e),
                exc_info=True,
            )
