"""
Token registry service for per-user push addresses.

Each user has at most one PushTarget row. Registration overwrites it, so a
device re-registering (or a second device registering) never appends.

Token formats:
    mobile-push:  ExponentPushToken[...] or ExpoPushToken[...]
    browser-push: Web Push subscription JSON {"endpoint": ..., "keys": {...}}
"""

import json
import re
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.orm import Session

from stride.config.settings import get_settings
from stride.models import NotificationRecord, PushChannel, PushTarget, User
from stride.services.exceptions import NotFoundError, ValidationError
from stride.utils.logging_config import get_logger


logger = get_logger("services")


MOBILE_TOKEN_PATTERNS = (
    re.compile(r"^ExponentPushToken\[.+\]$"),
    re.compile(r"^ExpoPushToken\[.+\]$"),
)

# Gateway error codes meaning the address will never work again
PERMANENT_TOKEN_ERRORS = frozenset({
    "DeviceNotRegistered",
    "SubscriptionGone",
})


def should_clear_token(error_code: Optional[str]) -> bool:
    """
    Decide whether a gateway error code means the stored token must be cleared.

    Only permanent, address-level failures qualify. Rate limiting, payload
    problems and credential errors leave the token untouched.

    Args:
        error_code: Code reported by the gateway (may be None)

    Returns:
        True if the token should be removed from the registry
    """
    return error_code in PERMANENT_TOKEN_ERRORS


def truncate_token(token: Optional[str]) -> str:
    """Shorten a token for log output."""
    if not token:
        return "<none>"
    return token[:20] + "..." if len(token) > 20 else token


class TokenRegistryService:
    """
    Service for managing the push address and delivery preference per user.

    Handles the target lifecycle:
    - Register (upsert, last write wins)
    - Validate (format + freshness)
    - Clear (permanent gateway failure or user opt-out)
    - Maintenance (stats, cleanup of malformed tokens)
    """

    def __init__(self, db: Session, max_age_hours: Optional[int] = None):
        self.db = db
        if max_age_hours is None:
            max_age_hours = get_settings().token_max_age_hours
        self.max_age = timedelta(hours=max_age_hours)

    # ========================================================================
    # Format
    # ========================================================================

    @staticmethod
    def is_valid_token_format(token: Optional[str], channel: str = PushChannel.MOBILE.value) -> bool:
        """
        Check a token against the issuing gateway's lexical format.

        Args:
            token: Opaque token string
            channel: mobile-push or browser-push

        Returns:
            True if the token is well-formed for the channel
        """
        if not token or not isinstance(token, str):
            return False

        if channel == PushChannel.MOBILE.value:
            return any(pattern.match(token) for pattern in MOBILE_TOKEN_PATTERNS)

        if channel == PushChannel.BROWSER.value:
            try:
                subscription = json.loads(token)
            except (json.JSONDecodeError, TypeError):
                return False
            if not isinstance(subscription, dict):
                return False
            keys = subscription.get("keys") or {}
            return bool(
                isinstance(subscription.get("endpoint"), str)
                and subscription["endpoint"].startswith("https://")
                and isinstance(keys, dict)
                and keys.get("p256dh")
                and keys.get("auth")
            )

        return False

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def get_target(self, user_id: str) -> Optional[PushTarget]:
        return (
            self.db.query(PushTarget)
            .filter(PushTarget.user_id == user_id)
            .first()
        )

    def register(
        self,
        user_id: str,
        token: str,
        channel: str = PushChannel.MOBILE.value,
    ) -> PushTarget:
        """
        Store a push token for a user, replacing any previous one.

        Args:
            user_id: Owning user
            token: Gateway token or serialized browser subscription
            channel: mobile-push or browser-push

        Returns:
            The user's (single) PushTarget

        Raises:
            NotFoundError: If the user does not exist
            ValidationError: If the token does not match the channel's format
        """
        if not self.is_valid_token_format(token, channel):
            raise ValidationError(
                f"Invalid {channel} token format",
                field="token",
            )

        user = self.db.query(User).filter(User.id == user_id).first()
        if not user:
            raise NotFoundError("User", user_id)

        now = datetime.utcnow()
        target = self.get_target(user_id)

        if target:
            target.token = token
            target.channel = channel
            target.enabled = True
            target.last_validated_at = now
            action = "Updated"
        else:
            target = PushTarget(
                user_id=user_id,
                token=token,
                channel=channel,
                enabled=True,
                last_validated_at=now,
            )
            self.db.add(target)
            action = "Registered"

        self.db.commit()
        self.db.refresh(target)
        logger.info(
            f"{action} push token",
            extra={
                "user_id": user_id,
                "channel": channel,
                "token_prefix": truncate_token(token),
            },
        )
        return target

    def validate(self, user_id: str, token: str) -> bool:
        """
        Check whether a client's token is still trustworthy.

        A token is valid only when it is well-formed, matches the stored
        token for the user, and was registered or revalidated within the
        freshness window. A False result tells the client to re-register.

        Args:
            user_id: Owning user
            token: Token the client currently holds

        Returns:
            True if the client can keep using the token
        """
        target = self.get_target(user_id)
        if not target or not target.token or target.token != token:
            return False

        if not self.is_valid_token_format(token, target.channel):
            return False

        if target.last_validated_at is None:
            return False

        age = datetime.utcnow() - target.last_validated_at
        if age >= self.max_age:
            logger.debug(
                "Push token is stale",
                extra={"user_id": user_id, "age_hours": age.total_seconds() / 3600},
            )
            return False

        return True

    def clear(self, user_id: str, reason: str = "disabled") -> bool:
        """
        Remove the stored token and disable push for a user.

        Args:
            user_id: Owning user
            reason: Why the token was cleared (logged)

        Returns:
            True if a target existed and was cleared
        """
        target = self.get_target(user_id)
        if not target:
            return False

        previous = target.token
        target.token = None
        target.enabled = False
        target.channel = PushChannel.NONE.value
        self.db.commit()
        logger.info(
            "Cleared push token",
            extra={
                "user_id": user_id,
                "reason": reason,
                "token_prefix": truncate_token(previous),
            },
        )
        return True

    def set_enabled(self, user_id: str, enabled: bool) -> PushTarget:
        """
        Toggle the delivery preference without touching the token.

        Raises:
            NotFoundError: If the user has no push target
        """
        target = self.get_target(user_id)
        if not target:
            raise NotFoundError("PushTarget", user_id)

        target.enabled = enabled
        self.db.commit()
        self.db.refresh(target)
        logger.info(
            "Updated push preference",
            extra={"user_id": user_id, "enabled": enabled},
        )
        return target

    def get_usable_target(self, user_id: str) -> Optional[PushTarget]:
        """
        Get the user's push target if it can be delivered to right now.

        Usable means enabled, with a token in the channel's format. Freshness
        is not required here: a stale token is still worth a delivery attempt.
        """
        target = self.get_target(user_id)
        if not target or not target.enabled or not target.token:
            return None
        if not self.is_valid_token_format(target.token, target.channel):
            return None
        return target

    def handle_gateway_error(self, user_id: str, error_code: Optional[str]) -> bool:
        """
        Apply the clearing policy to a gateway error for a user.

        Returns:
            True if the token was cleared
        """
        if not get_settings().clear_invalid_tokens:
            return False
        if not should_clear_token(error_code):
            return False
        return self.clear(user_id, reason=error_code or "unknown")

    # ========================================================================
    # Maintenance
    # ========================================================================

    def cleanup_invalid_tokens(self, user_ids: Optional[Iterable[str]] = None) -> int:
        """
        Clear stored tokens that do not match their channel's format.

        Args:
            user_ids: Limit the sweep to these users (default: all targets)

        Returns:
            Number of targets cleared
        """
        query = self.db.query(PushTarget).filter(PushTarget.token.isnot(None))
        if user_ids is not None:
            query = query.filter(PushTarget.user_id.in_(list(user_ids)))

        cleared = 0
        for target in query.all():
            if self.is_valid_token_format(target.token, target.channel):
                continue
            logger.info(
                "Clearing malformed push token",
                extra={
                    "user_id": target.user_id,
                    "token_prefix": truncate_token(target.token),
                },
            )
            target.token = None
            target.enabled = False
            target.channel = PushChannel.NONE.value
            cleared += 1

        if cleared > 0:
            self.db.commit()
            logger.info(f"Cleaned up {cleared} malformed push tokens")

        return cleared

    def get_stats(self, recent_hours: int = 24) -> Dict[str, Any]:
        """
        Get registry and inbox counters.

        Returns:
            Dict with total_users, users_with_expo_tokens,
            users_with_push_enabled and recent_notifications
        """
        since = datetime.utcnow() - timedelta(hours=recent_hours)

        total_users = self.db.query(User).count()
        with_tokens = (
            self.db.query(PushTarget)
            .filter(
                PushTarget.token.isnot(None),
                PushTarget.channel == PushChannel.MOBILE.value,
            )
            .count()
        )
        enabled = (
            self.db.query(PushTarget)
            .filter(PushTarget.enabled.is_(True))
            .count()
        )
        recent = (
            self.db.query(NotificationRecord)
            .filter(NotificationRecord.created_at >= since)
            .count()
        )

        return {
            "total_users": total_users,
            "users_with_expo_tokens": with_tokens,
            "users_with_push_enabled": enabled,
            "recent_notifications": recent,
        }
