"""
Queue events: wire classification, normalization and canonical fan-out.
"""

from .event_bus import EventBus
from .event_types import WIRE_EVENT_KINDS, CanonicalEvent, EventKind, RawEvent
from .normalizer import EventNormalizer

__all__ = [
    "WIRE_EVENT_KINDS",
    "CanonicalEvent",
    "EventBus",
    "EventKind",
    "EventNormalizer",
    "RawEvent",
]
