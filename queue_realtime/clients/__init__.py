"""REST API collaborators used by the realtime core."""

from .eye_drop_queue import EyeDropQueueClient, HttpEyeDropQueueClient
from .patient_lookup import HttpPatientLookup, PatientLookup

__all__ = ["EyeDropQueueClient", "HttpEyeDropQueueClient", "HttpPatientLookup", "PatientLookup"]
