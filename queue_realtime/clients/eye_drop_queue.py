"""
Eye-drop queue listing collaborator.

Feeds the dilation countdowns: the listing is refetched whenever a queue event
marks it stale, and on a fixed interval as a fallback.
"""

from typing import Any, Protocol

import httpx

from ..exceptions import ErrorContext, QueueFetchError
from ..structured_logging.enhanced_logging_config import get_logger

logger = get_logger(__name__)

EYE_DROP_QUEUE_PATH = "/receptionist2/patients/on-hold-queue"


class EyeDropQueueClient(Protocol):
    """Fetches the on-hold (eye-drop) queue entries."""

    async def fetch_queue(self) -> list[dict[str, Any]]:
        """
        Fetch the current eye-drop queue.

        Raises:
            QueueFetchError: On any transport or server failure
        """
        ...


class HttpEyeDropQueueClient:
    """EyeDropQueueClient backed by GET {base_url}/receptionist2/patients/on-hold-queue."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def fetch_queue(self, date: str | None = None) -> list[dict[str, Any]]:
        """
        Fetch the queue, optionally for one day (YYYY-MM-DD).

        The response is {patients: [...], statistics: {...}}, possibly wrapped
        as {"data": {...}}; only the patient entries are returned.
        """
        url = f"{self._base_url}{EYE_DROP_QUEUE_PATH}"
        params = {"date": date} if date else None
        try:
            response = await self._client.get(url, params=params)
        except httpx.HTTPError as e:
            raise QueueFetchError(
                f"Eye-drop queue request failed: {e}",
                context=ErrorContext(metadata={"query": "eye_drop_queue"}),
                details={"url": url, "error_type": type(e).__name__},
            ) from e

        if response.is_error:
            raise QueueFetchError(
                "Eye-drop queue returned an error status",
                context=ErrorContext(metadata={"query": "eye_drop_queue"}),
                details={"url": url, "status_code": response.status_code},
            )

        try:
            body = response.json()
        except ValueError as e:
            raise QueueFetchError(
                "Eye-drop queue returned invalid JSON",
                context=ErrorContext(metadata={"query": "eye_drop_queue"}),
                details={"url": url},
            ) from e

        if isinstance(body, dict) and isinstance(body.get("data"), dict):
            body = body["data"]
        patients = body.get("patients") if isinstance(body, dict) else None
        if not isinstance(patients, list):
            raise QueueFetchError(
                "Eye-drop queue response has no patients list",
                context=ErrorContext(metadata={"query": "eye_drop_queue"}),
                details={"url": url},
            )
        entries = [entry for entry in patients if isinstance(entry, dict)]
        logger.debug("Fetched eye-drop queue", entries=len(entries))
        return entries

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this client created it."""
        if self._owns_client:
            await self._client.aclose()
