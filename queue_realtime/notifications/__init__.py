"""Local alerts and remote push registration for canonical queue events."""

from .dispatcher import NotificationDispatcher, NotificationRecord
from .push_registration import PushRegistrationService
from .templates import TEMPLATES, AlertUrgency, render

__all__ = [
    "TEMPLATES",
    "AlertUrgency",
    "NotificationDispatcher",
    "NotificationRecord",
    "PushRegistrationService",
    "render",
]
