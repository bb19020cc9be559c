"""
Custom exceptions for the service layer.

Provides specific exception types for business logic errors that the API
layer translates to HTTP responses, plus the transport errors raised by the
push senders.
"""

from typing import TYPE_CHECKING, Any, List, Optional

if TYPE_CHECKING:
    from stride.schemas.notifications import DeliveryResult


class ServiceError(Exception):
    """Base exception for service layer errors."""
    pass


class NotFoundError(ServiceError):
    """Raised when a requested resource is not found."""

    def __init__(self, resource: str, identifier: Any):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} {identifier} not found")


class ValidationError(ServiceError):
    """
    Raised when input validation fails.

    ``errors`` lists every violated rule, not only the first one.
    """

    def __init__(self, message: str, errors: Optional[List[str]] = None, field: Optional[str] = None):
        self.message = message
        self.errors = list(errors) if errors else [message]
        self.field = field
        super().__init__(message)


class DeliveryFailedError(ServiceError):
    """Raised when every delivery channel failed for a single recipient."""

    def __init__(self, user_id: str, result: "DeliveryResult"):
        self.user_id = user_id
        self.result = result
        super().__init__(
            f"All notification channels failed for user {user_id}: "
            + "; ".join(result.errors)
        )


# ============================================================================
# Push transport exceptions
# ============================================================================


class PushGatewayError(ServiceError):
    """
    Raised when the push gateway rejects a message or cannot be reached.

    Attributes:
        error_code: Gateway error code (e.g. ``DeviceNotRegistered``), if reported
        status_code: HTTP status code, if a response was received
    """

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        super().__init__(message)


class PushTokenInvalidError(PushGatewayError):
    """Raised before any I/O when a token does not match the gateway's format."""

    def __init__(self, token: str):
        super().__init__(
            f"Invalid push token format: {token[:20]}...",
            error_code="InvalidTokenFormat",
        )


class PushGoneError(PushGatewayError):
    """Raised when a browser push service returns 404/410 (subscription invalid)."""

    def __init__(self, endpoint: str):
        self.endpoint = endpoint
        super().__init__(
            f"Push subscription gone: {endpoint[:60]}",
            error_code="SubscriptionGone",
        )


class PushDeliveryError(PushGatewayError):
    """Raised when browser push delivery fails for any other reason."""
    pass
