"""
Patient display name parsing.

Server payloads carry the patient's name in several shapes depending on which
backend handler emitted them. parse_name_source() classifies a payload into
exactly one PatientNameSource variant:

- FromPatientObject: a nested "patient" object with a usable name
- FromFlatFields: top-level fullName / patientName / firstName + lastName
- FromFallbackId: no name, but a patient id the lookup collaborator can resolve
- Unknown: nothing usable; the placeholder name applies
"""

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class FromPatientObject:
    name: str


@dataclass(frozen=True)
class FromFlatFields:
    name: str


@dataclass(frozen=True)
class FromFallbackId:
    patient_id: str


@dataclass(frozen=True)
class Unknown:
    pass


PatientNameSource = FromPatientObject | FromFlatFields | FromFallbackId | Unknown


def _text(value: Any) -> str | None:
    """Return a stripped string, or None for anything empty or non-textual."""
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    if isinstance(value, int | float) and not isinstance(value, bool):
        return str(value)
    return None


def _joined_name(fields: dict[str, Any]) -> str | None:
    first = _text(fields.get("firstName"))
    last = _text(fields.get("lastName"))
    if first and last:
        return f"{first} {last}"
    return None


def _name_from_patient_object(patient: dict[str, Any]) -> str | None:
    return _text(patient.get("fullName")) or _joined_name(patient) or _text(patient.get("name"))


def parse_name_source(payload: dict[str, Any] | None) -> PatientNameSource:
    """
    Classify where a payload's patient display name comes from.

    Total: every payload, including None or an empty map, yields a variant.

    Args:
        payload: Raw event payload

    Returns:
        PatientNameSource: The single variant that applies
    """
    if not payload:
        return Unknown()

    patient = payload.get("patient")
    if isinstance(patient, dict):
        name = _name_from_patient_object(patient)
        if name:
            return FromPatientObject(name)

    flat_name = _text(payload.get("fullName")) or _text(payload.get("patientName")) or _joined_name(payload)
    if flat_name:
        return FromFlatFields(flat_name)

    patient_id = _text(payload.get("patientId"))
    if patient_id is None and isinstance(patient, dict):
        patient_id = _text(patient.get("id"))
    if patient_id:
        return FromFallbackId(patient_id)

    return Unknown()


def display_name(source: PatientNameSource) -> str | None:
    """Name carried directly by the source, or None when a lookup or placeholder is needed."""
    match source:
        case FromPatientObject(name=name) | FromFlatFields(name=name):
            return name
        case _:
            return None


def name_from_lookup_record(record: dict[str, Any] | None) -> str | None:
    """Display name from a patient lookup response ({firstName, lastName, fullName?})."""
    if not record:
        return None
    return _name_from_patient_object(record)
