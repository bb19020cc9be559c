"""
HTTP client for the Stride notification API.

Used by device-side code to register and revalidate its push token.
Caller identity is sent in the X-Stride-User header.
"""

import logging
from typing import Any, Optional

import httpx

from stride import __version__

logger = logging.getLogger(__name__)


API_BASE_PATH = "/api"
DEFAULT_TIMEOUT = 10.0  # seconds
USER_AGENT = f"StrideCampus-Client/{__version__}"
USER_HEADER = "X-Stride-User"


class ApiError(Exception):
    """Base exception for API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ApiConnectionError(ApiError):
    """Raised when the server cannot be reached."""

    pass


class StrideApiClient:
    """
    Async client for the push token endpoints.

    Args:
        server_url: Base URL of the Stride server
        user_id: Caller identity
        timeout: Request timeout in seconds
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        server_url: str,
        user_id: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not server_url:
            raise ValueError("server_url is required")
        if not user_id:
            raise ValueError("user_id is required")

        self._server_url = server_url.rstrip("/")
        self.user_id = user_id
        self._client = httpx.AsyncClient(
            base_url=self._server_url,
            headers={
                "User-Agent": USER_AGENT,
                "Accept": "application/json",
                USER_HEADER: user_id,
            },
            timeout=timeout,
            transport=transport,
        )

    @property
    def server_url(self) -> str:
        return self._server_url

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, f"{API_BASE_PATH}{path}", **kwargs)
        except httpx.ConnectError as e:
            raise ApiConnectionError(f"Failed to connect to server: {e}")
        except httpx.TimeoutException as e:
            raise ApiConnectionError(f"Connection timed out: {e}")

    async def register_push_token(
        self, token: str, channel: str = "mobile-push"
    ) -> dict[str, Any]:
        """
        Register this device's push token.

        Raises:
            ApiError: If the server rejects the token
            ApiConnectionError: If the server cannot be reached
        """
        response = await self._request(
            "POST", "/push-tokens", json={"token": token, "channel": channel}
        )
        if response.status_code in (200, 201):
            return response.json()
        raise ApiError(
            f"Token registration failed with status {response.status_code}",
            status_code=response.status_code,
        )

    async def validate_push_token(self, token: str) -> dict[str, Any]:
        """
        Ask the server whether the stored token is still usable.

        Returns:
            {"valid": bool, "should_reregister": bool}
        """
        response = await self._request(
            "POST", "/push-tokens/validate", json={"token": token}
        )
        if response.status_code == 200:
            return response.json()
        raise ApiError(
            f"Token validation failed with status {response.status_code}",
            status_code=response.status_code,
        )

    async def clear_push_token(self) -> None:
        response = await self._request("DELETE", "/push-tokens")
        if response.status_code not in (200, 204):
            raise ApiError(
                f"Clearing token failed with status {response.status_code}",
                status_code=response.status_code,
            )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "StrideApiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
