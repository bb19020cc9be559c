"""
Push transports: the mobile push gateway (Expo) and browser Web Push.

ExpoPushClient talks to the gateway's HTTP API:
    POST {push_url} with a JSON object (single message) or array (batch,
    at most 100 entries). The response carries a ``data`` member holding
    either one ticket or an array of tickets, each
    {"status": "ok", "id": ...} or
    {"status": "error", "message": ..., "details": {"error": <code>}}.

WebPushSender delivers to a serialized browser subscription through
pywebpush, signed with the configured VAPID keys.
"""

import json
from typing import Any, Dict, List, Optional, Sequence

import httpx
from pywebpush import WebPushException, webpush

from stride.config.settings import get_settings
from stride.schemas.notifications import PushMessage, PushResult
from stride.services.exceptions import (
    PushDeliveryError,
    PushGatewayError,
    PushGoneError,
    PushTokenInvalidError,
)
from stride.services.token_registry import TokenRegistryService, truncate_token
from stride.utils.logging_config import get_logger


logger = get_logger("services")


class ExpoPushClient:
    """
    Async client for the mobile push gateway.

    Example:
        >>> async with ExpoPushClient() as client:
        ...     result = await client.send_to_token(token, PushMessage(title="Hi", body="There"))
    """

    def __init__(
        self,
        push_url: Optional[str] = None,
        access_token: Optional[str] = None,
        timeout: Optional[float] = None,
        batch_size: Optional[int] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        settings = get_settings()
        self._push_url = push_url or settings.expo_push_url
        self._batch_size = batch_size or settings.push_batch_size
        access_token = access_token if access_token is not None else settings.expo_access_token

        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            headers=headers,
            timeout=timeout or settings.push_timeout_seconds,
        )
        self._headers = headers

    @property
    def push_url(self) -> str:
        return self._push_url

    # -------------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------------

    async def send_to_token(self, token: str, message: PushMessage) -> PushResult:
        """
        Send one message to one token.

        Args:
            token: Gateway push token
            message: Notification content

        Returns:
            PushResult for the accepted ticket

        Raises:
            PushTokenInvalidError: If the token is malformed (no request is made)
            PushGatewayError: If the gateway is unreachable, answers non-2xx,
                or reports an error ticket for the token
        """
        if not TokenRegistryService.is_valid_token_format(token):
            raise PushTokenInvalidError(token)

        tickets = await self._post(message.to_gateway_message(token))
        if not tickets:
            raise PushGatewayError("Push gateway returned no ticket")

        result = self._ticket_to_result(tickets[0])
        if not result.success:
            raise PushGatewayError(
                result.message or "Push gateway reported an error",
                error_code=result.error_code,
            )

        logger.debug(
            "Push accepted by gateway",
            extra={"token_prefix": truncate_token(token), "ticket_id": result.id},
        )
        return result

    async def send_to_tokens(self, tokens: Sequence[str], message: PushMessage) -> List[PushResult]:
        """
        Send the same message to many tokens in gateway-sized batches.

        Malformed tokens and failed batches produce failed results in place,
        so the returned list is aligned with ``tokens``.
        """
        results: List[Optional[PushResult]] = [None] * len(tokens)
        valid: List[int] = []

        for index, token in enumerate(tokens):
            if TokenRegistryService.is_valid_token_format(token):
                valid.append(index)
            else:
                results[index] = PushResult(
                    success=False,
                    message="Invalid push token format",
                    error_code="InvalidTokenFormat",
                )

        for start in range(0, len(valid), self._batch_size):
            chunk = valid[start:start + self._batch_size]
            body = [message.to_gateway_message(tokens[i]) for i in chunk]
            try:
                tickets = await self._post(body)
            except PushGatewayError as e:
                logger.warning(
                    f"Push batch failed: {e}",
                    extra={"batch_size": len(chunk), "status_code": e.status_code},
                )
                for i in chunk:
                    results[i] = PushResult(
                        success=False,
                        message=str(e),
                        error_code=e.error_code,
                    )
                continue

            for offset, i in enumerate(chunk):
                if offset < len(tickets):
                    results[i] = self._ticket_to_result(tickets[offset])
                else:
                    results[i] = PushResult(success=False, message="Missing ticket")

        sent = sum(1 for r in results if r is not None and r.success)
        logger.info(
            "Push batch summary",
            extra={"total": len(tokens), "success": sent, "failed": len(tokens) - sent},
        )
        return [r for r in results if r is not None]

    async def _post(self, body: Any) -> List[Dict[str, Any]]:
        try:
            response = await self._client.post(
                self._push_url, json=body, headers=self._headers
            )
        except httpx.TimeoutException as e:
            raise PushGatewayError(f"Push gateway timed out: {e}") from e
        except httpx.HTTPError as e:
            raise PushGatewayError(f"Failed to reach push gateway: {e}") from e

        if response.status_code < 200 or response.status_code >= 300:
            raise PushGatewayError(
                f"Push gateway returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise PushGatewayError(
                "Push gateway returned invalid JSON",
                status_code=response.status_code,
            ) from e

        data = payload.get("data", payload) if isinstance(payload, dict) else payload
        if isinstance(data, dict):
            return [data]
        if isinstance(data, list):
            return data
        return []

    @staticmethod
    def _ticket_to_result(ticket: Dict[str, Any]) -> PushResult:
        if ticket.get("status") == "ok":
            return PushResult(success=True, id=ticket.get("id"))

        details = ticket.get("details") or {}
        return PushResult(
            success=False,
            message=ticket.get("message"),
            error_code=details.get("error"),
            details=details,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "ExpoPushClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


class WebPushSender:
    """Browser push delivery via pywebpush (synchronous, run off the event loop)."""

    def __init__(
        self,
        vapid_private_key: Optional[str] = None,
        vapid_claims: Optional[Dict[str, str]] = None,
    ):
        settings = get_settings()
        self.vapid_private_key = vapid_private_key or settings.vapid_private_key
        self.vapid_claims = vapid_claims or settings.vapid_claims

    @property
    def configured(self) -> bool:
        return bool(self.vapid_private_key and self.vapid_claims)

    def send(self, subscription_json: str, message: PushMessage) -> None:
        """
        Send a notification to a serialized browser subscription.

        Raises:
            PushGoneError: If the push service returned 404/410
            PushDeliveryError: If delivery failed for other reasons
        """
        if not self.configured:
            raise PushDeliveryError("VAPID keys are not configured")

        try:
            subscription_info = json.loads(subscription_json)
        except (json.JSONDecodeError, TypeError) as e:
            raise PushDeliveryError("Invalid browser subscription") from e

        payload = json.dumps({
            "title": message.title,
            "body": message.body,
            "data": message.data or {},
        })

        try:
            webpush(
                subscription_info=subscription_info,
                data=payload,
                vapid_private_key=self.vapid_private_key,
                vapid_claims=dict(self.vapid_claims),
                ttl=86400,
                headers={"Urgency": "high"},
            )
        except WebPushException as e:
            if getattr(e, "response", None) is not None:
                if e.response.status_code in (404, 410):
                    raise PushGoneError(subscription_info.get("endpoint", "")) from e
            raise PushDeliveryError(str(e)) from e
