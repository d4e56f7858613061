"""
Patient lookup collaborator.

Used by the event normalizer to resolve a display name when an event only
carries a patient id.
"""

from typing import Any, Protocol

import httpx

from ..exceptions import EnrichmentError, ErrorContext
from ..structured_logging.enhanced_logging_config import get_logger

logger = get_logger(__name__)


class PatientLookup(Protocol):
    """Resolves a patient id to a record with firstName, lastName and optionally fullName."""

    async def get_patient(self, patient_id: str) -> dict[str, Any] | None:
        """
        Fetch a patient record.

        Returns:
            The record, or None when the patient does not exist

        Raises:
            EnrichmentError: On any transport or server failure
        """
        ...


class HttpPatientLookup:
    """PatientLookup backed by the REST API (GET {base_url}/patients/{id})."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def get_patient(self, patient_id: str) -> dict[str, Any] | None:
        url = f"{self._base_url}/patients/{patient_id}"
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as e:
            raise EnrichmentError(
                f"Patient lookup request failed: {e}",
                context=ErrorContext(metadata={"patient_id": patient_id}),
                details={"url": url, "error_type": type(e).__name__},
            ) from e

        if response.status_code == 404:
            logger.debug("Patient not found", patient_id=patient_id)
            return None
        if response.is_error:
            raise EnrichmentError(
                "Patient lookup returned an error status",
                context=ErrorContext(metadata={"patient_id": patient_id}),
                details={"url": url, "status_code": response.status_code},
            )

        try:
            body = response.json()
        except ValueError as e:
            raise EnrichmentError(
                "Patient lookup returned invalid JSON",
                context=ErrorContext(metadata={"patient_id": patient_id}),
                details={"url": url},
            ) from e

        # The API wraps some responses as {"data": {...}}
        if isinstance(body, dict) and isinstance(body.get("data"), dict):
            body = body["data"]
        if not isinstance(body, dict):
            return None
        return body

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this lookup created it."""
        if self._owns_client:
            await self._client.aclose()
