"""
Remote push registration.

The device push token is registered with the backend once per authenticated
session and unregistered on logout. Remote push is a side channel: its
failures are logged and never affect local alert delivery.
"""

import platform as platform_module
from typing import Protocol

import httpx

from ..exceptions import ErrorContext, PushRegistrationError
from ..structured_logging.enhanced_logging_config import get_logger

logger = get_logger(__name__)


class PushRegistry(Protocol):
    """Backend push token registry."""

    async def register(self, token: str, staff_id: str, staff_type: str) -> None: ...

    async def unregister(self, token: str) -> None: ...


class HttpPushRegistry:
    """
    PushRegistry backed by the REST API.

    POST {base_url}/notifications/register-token   {token, platform, staffId, staffType}
    POST {base_url}/notifications/unregister-token {token}
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        platform: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._platform = platform or platform_module.system().lower()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def register(self, token: str, staff_id: str, staff_type: str) -> None:
        await self._post(
            "/notifications/register-token",
            {"token": token, "platform": self._platform, "staffId": staff_id, "staffType": staff_type},
            ErrorContext(staff_id=staff_id, role=staff_type),
        )

    async def unregister(self, token: str) -> None:
        await self._post("/notifications/unregister-token", {"token": token}, ErrorContext())

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(self, path: str, body: dict[str, str], context: ErrorContext) -> None:
        url = f"{self._base_url}{path}"
        try:
            response = await self._client.post(url, json=body)
        except httpx.HTTPError as e:
            raise PushRegistrationError(
                f"Push registry request failed: {e}",
                context=context,
                details={"url": url, "error_type": type(e).__name__},
            ) from e
        if response.is_error:
            raise PushRegistrationError(
                "Push registry returned an error status",
                context=context,
                details={"url": url, "status_code": response.status_code, "body": response.text[:200]},
            )


class PushRegistrationService:
    """Registers the push token at most once per session."""

    def __init__(self, registry: PushRegistry) -> None:
        self._registry = registry
        self._token: str | None = None
        self._staff_id: str | None = None

    @property
    def registered_token(self) -> str | None:
        return self._token

    @property
    def is_registered(self) -> bool:
        return self._token is not None

    async def register(self, token: str | None, staff_id: str, staff_type: str) -> bool:
        """
        Register the push token for the current session.

        Returns:
            bool: True if the registry accepted the token on this call
        """
        if not token:
            logger.info("No push token available; skipping registration", staff_id=staff_id)
            return False
        if self._token is not None:
            logger.debug("Push token already registered for this session", staff_id=self._staff_id)
            return False

        try:
            await self._registry.register(token, staff_id, staff_type)
        except Exception as e:
            logger.error(
                "Push token registration failed",
                staff_id=staff_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        self._token = token
        self._staff_id = staff_id
        logger.info("Push token registered", staff_id=staff_id, staff_type=staff_type)
        return True

    async def unregister(self) -> None:
        """Unregister the session's token; local state is cleared even if the registry call fails."""
        token, self._token = self._token, None
        staff_id, self._staff_id = self._staff_id, None
        if token is None:
            return

        try:
            await self._registry.unregister(token)
        except Exception as e:
            logger.error(
                "Push token unregistration failed",
                staff_id=staff_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return
        logger.info("Push token unregistered", staff_id=staff_id)
