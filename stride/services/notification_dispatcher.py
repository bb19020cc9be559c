"""
Multi-channel notification dispatcher.

Delivers one notification to a recipient over three independent channels:

    A. Push: mobile gateway or browser Web Push, with bounded retry
    B. In-app: a NotificationRecord row, always written
    C. Realtime: a broadcast on the shared notifications topic

A failure on one channel never blocks the others. The aggregate
DeliveryResult reports which channels succeeded; the dispatch counts as
successful when any of them did.

Error propagation:
    - ValidationError: bad payload, raised before any I/O, never retried
    - NotFoundError: unknown recipient (single dispatch only)
    - DeliveryFailedError: every channel failed (single dispatch only)
Batch and campus dispatch never raise for an individual recipient; each
recipient's failure is captured in its own result.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

from sqlalchemy.orm import Session

from stride.config.settings import get_settings
from stride.models import NotificationKind, NotificationRecord, PushChannel, User
from stride.realtime.hub import RealtimeHub
from stride.schemas.notifications import DeliveryResult, PushMessage
from stride.services.exceptions import (
    DeliveryFailedError,
    NotFoundError,
    PushGatewayError,
    ValidationError,
)
from stride.services.push_gateway import ExpoPushClient, WebPushSender
from stride.services.token_registry import (
    PERMANENT_TOKEN_ERRORS,
    TokenRegistryService,
    truncate_token,
)
from stride.utils.cache import TTLCache
from stride.utils.logging_config import get_logger


logger = get_logger("services")

T = TypeVar("T")

TITLE_MAX_LENGTH = 100
BODY_MAX_LENGTH = 500

NEW_NOTIFICATION_EVENT = "new_notification"

# Gateway error codes that no amount of retrying will fix
NON_RETRYABLE_ERRORS = PERMANENT_TOKEN_ERRORS | {
    "InvalidTokenFormat",
    "InvalidCredentials",
    "MessageTooBig",
}


def is_retryable(error: PushGatewayError) -> bool:
    """Transport failures and transient gateway errors are retried."""
    return error.error_code not in NON_RETRYABLE_ERRORS


class NotificationDispatcher:
    """
    Orchestrates push, in-app and realtime delivery.

    All collaborators are injected; the dispatcher holds no module-level
    state. The database session is only touched between awaits, so
    concurrent per-recipient deliveries on one event loop never interleave
    inside a transaction.
    """

    def __init__(
        self,
        db: Session,
        push_client: Optional[ExpoPushClient] = None,
        web_push: Optional[WebPushSender] = None,
        hub: Optional[RealtimeHub] = None,
        recipient_cache: Optional[TTLCache] = None,
        registry: Optional[TokenRegistryService] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        notifications_channel: Optional[str] = None,
    ):
        settings = get_settings()
        self.db = db
        self.push_client = push_client
        self.web_push = web_push
        self.hub = hub
        self.recipient_cache = recipient_cache
        self.registry = registry or TokenRegistryService(db)
        self.max_retries = max_retries or settings.push_max_retries
        self.retry_delay = (
            retry_delay if retry_delay is not None else settings.push_retry_delay_seconds
        )
        self.notifications_channel = notifications_channel or settings.notifications_channel

    # ========================================================================
    # Validation
    # ========================================================================

    @staticmethod
    def validate_message(message: PushMessage) -> None:
        """
        Check notification content before any delivery is attempted.

        Raises:
            ValidationError: Listing every violated rule
        """
        errors = []

        if not message.title or not message.title.strip():
            errors.append("Title is required")
        if not message.body or not message.body.strip():
            errors.append("Body is required")
        if message.title and len(message.title) > TITLE_MAX_LENGTH:
            errors.append(f"Title is too long (max {TITLE_MAX_LENGTH} characters)")
        if message.body and len(message.body) > BODY_MAX_LENGTH:
            errors.append(f"Body is too long (max {BODY_MAX_LENGTH} characters)")

        if errors:
            raise ValidationError("Invalid notification: " + "; ".join(errors), errors=errors)

    # ========================================================================
    # Single recipient
    # ========================================================================

    async def dispatch(
        self,
        user_id: str,
        message: PushMessage,
        sender_id: Optional[str] = None,
    ) -> DeliveryResult:
        """
        Deliver a notification to one user over every channel.

        Args:
            user_id: Recipient
            message: Notification content
            sender_id: Sending user (defaults to the recipient for system notices)

        Returns:
            DeliveryResult with success=True when any channel succeeded

        Raises:
            ValidationError: If the message is invalid
            NotFoundError: If the recipient does not exist
            DeliveryFailedError: If every channel failed
        """
        self.validate_message(message)
        return await self._deliver(user_id, message, sender_id)

    async def _deliver(
        self,
        user_id: str,
        message: PushMessage,
        sender_id: Optional[str],
    ) -> DeliveryResult:
        if self.db.get(User, user_id) is None:
            raise NotFoundError("User", user_id)

        result = DeliveryResult(user_id=user_id)

        await self._deliver_push(user_id, message, result)
        self._create_in_app(user_id, message, sender_id, result)
        await self._trigger_realtime(user_id, message, result)

        result.compute_success()

        log_extra = {
            "user_id": user_id,
            "kind": message.kind,
            "push_sent": result.push_sent,
            "in_app": result.in_app_notification_created,
            "realtime": result.realtime_event_triggered,
        }
        if not result.success:
            logger.error("All notification channels failed", extra=log_extra)
            raise DeliveryFailedError(user_id, result)

        if result.errors:
            logger.warning(
                f"Notification partially delivered: {'; '.join(result.errors)}",
                extra=log_extra,
            )
        else:
            logger.info("Notification delivered", extra=log_extra)
        return result

    # ------------------------------------------------------------------------
    # Channel A: push
    # ------------------------------------------------------------------------

    async def _deliver_push(
        self,
        user_id: str,
        message: PushMessage,
        result: DeliveryResult,
    ) -> None:
        target = self.registry.get_usable_target(user_id)
        if target is None:
            result.details["push_skipped"] = "no usable push target"
            return

        token = target.token
        channel = target.channel

        if channel == PushChannel.MOBILE.value:
            label = "Expo push"
            if self.push_client is None:
                result.errors.append(f"{label} failed: push gateway not configured")
                return
            send = lambda: self.push_client.send_to_token(token, message)  # noqa: E731
        elif channel == PushChannel.BROWSER.value:
            label = "Web push"
            if self.web_push is None or not self.web_push.configured:
                result.errors.append(f"{label} failed: web push not configured")
                return
            send = lambda: asyncio.to_thread(self.web_push.send, token, message)  # noqa: E731
        else:
            return

        try:
            push_result = await self._send_with_retry(send)
        except PushGatewayError as e:
            result.errors.append(f"{label} failed: {e}")
            result.details["push_error_code"] = e.error_code
            logger.warning(
                f"{label} failed: {e}",
                extra={
                    "user_id": user_id,
                    "error_code": e.error_code,
                    "token_prefix": truncate_token(token),
                },
            )
            if self.registry.handle_gateway_error(user_id, e.error_code):
                result.details["token_cleared"] = True
            return
        except Exception as e:
            result.errors.append(f"{label} failed: {e}")
            logger.warning(f"{label} failed unexpectedly: {e}", extra={"user_id": user_id})
            return

        if channel == PushChannel.MOBILE.value:
            result.expo_push_sent = True
            if push_result is not None:
                result.details["expo_ticket_id"] = push_result.id
        else:
            result.web_push_sent = True

    async def _send_with_retry(self, send: Callable[[], Awaitable[T]]) -> T:
        """
        Run a push send with bounded retries.

        Delay before the retry following attempt ``n`` is ``retry_delay * n``.
        Non-retryable gateway errors are raised immediately.

        Raises:
            PushGatewayError: The last error once attempts are exhausted
        """
        last_error: Optional[PushGatewayError] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                return await send()
            except PushGatewayError as e:
                if not is_retryable(e):
                    raise
                last_error = e

            if attempt < self.max_retries:
                delay = self.retry_delay * attempt
                logger.debug(
                    f"Push attempt {attempt}/{self.max_retries} failed, retrying in {delay}s: {last_error}"
                )
                await asyncio.sleep(delay)

        raise last_error

    # ------------------------------------------------------------------------
    # Channel B: in-app record
    # ------------------------------------------------------------------------

    def _create_in_app(
        self,
        user_id: str,
        message: PushMessage,
        sender_id: Optional[str],
        result: DeliveryResult,
    ) -> None:
        try:
            record = NotificationRecord(
                recipient_id=user_id,
                sender_id=sender_id or user_id,
                kind=NotificationKind.coerce(message.kind).value,
                title=message.title,
                body=message.body,
                data=message.data or {},
                is_read=False,
            )
            self.db.add(record)
            self.db.commit()
            self.db.refresh(record)
        except Exception as e:
            self.db.rollback()
            result.errors.append(f"In-app notification failed: {e}")
            logger.error(
                f"Failed to create in-app notification: {e}",
                extra={"user_id": user_id},
            )
            return

        result.in_app_notification_created = True
        result.details["notification_guid"] = record.guid

    # ------------------------------------------------------------------------
    # Channel C: realtime broadcast
    # ------------------------------------------------------------------------

    async def _trigger_realtime(
        self,
        user_id: str,
        message: PushMessage,
        result: DeliveryResult,
    ) -> None:
        if self.hub is None:
            result.errors.append("Realtime event failed: realtime hub not configured")
            return

        payload = {
            "user_id": user_id,
            "notification": {
                "title": message.title,
                "body": message.body,
                "data": message.data or {},
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        }
        try:
            delivered = await self.hub.broadcast(
                self.notifications_channel, NEW_NOTIFICATION_EVENT, payload
            )
        except Exception as e:
            result.errors.append(f"Realtime event failed: {e}")
            logger.warning(f"Realtime broadcast failed: {e}", extra={"user_id": user_id})
            return

        result.realtime_event_triggered = True
        result.details["realtime_delivered"] = delivered

    # ========================================================================
    # Many recipients
    # ========================================================================

    async def dispatch_many(
        self,
        user_ids: Iterable[str],
        message: PushMessage,
        sender_id: Optional[str] = None,
    ) -> List[DeliveryResult]:
        """
        Deliver the same notification to many users concurrently.

        Each recipient is isolated: a recipient whose delivery fails
        entirely gets a failed result, the others are unaffected.
        Duplicate ids are delivered once.

        Raises:
            ValidationError: If the message is invalid (before any delivery)
        """
        self.validate_message(message)
        recipients = list(dict.fromkeys(user_ids))
        if not recipients:
            return []

        results = await asyncio.gather(
            *(self._deliver_isolated(uid, message, sender_id) for uid in recipients)
        )

        succeeded = sum(1 for r in results if r.success)
        logger.info(
            "Batch notification summary",
            extra={
                "kind": message.kind,
                "total": len(results),
                "success": succeeded,
                "failed": len(results) - succeeded,
                "push_sent": sum(1 for r in results if r.push_sent),
            },
        )
        return list(results)

    async def _deliver_isolated(
        self,
        user_id: str,
        message: PushMessage,
        sender_id: Optional[str],
    ) -> DeliveryResult:
        try:
            return await self._deliver(user_id, message, sender_id)
        except DeliveryFailedError as e:
            return e.result
        except NotFoundError:
            return DeliveryResult.failure(user_id, "User not found")
        except Exception as e:
            logger.error(
                f"Notification dispatch crashed: {e}",
                extra={"user_id": user_id},
            )
            return DeliveryResult.failure(user_id, f"General error: {e}")

    def resolve_campus_recipients(self, school_domain: str) -> List[str]:
        """
        Get active user ids for an institution domain.

        Lookups go through the injected recipient cache when present.
        """
        def query() -> List[str]:
            rows = (
                self.db.query(User.id)
                .filter(User.school_domain == school_domain, User.is_active.is_(True))
                .order_by(User.id)
                .all()
            )
            return [row[0] for row in rows]

        if self.recipient_cache is None:
            return query()
        return self.recipient_cache.get_or_set(("campus", school_domain), query)

    async def dispatch_campus(
        self,
        school_domain: str,
        message: PushMessage,
        sender_id: Optional[str] = None,
    ) -> List[DeliveryResult]:
        """Deliver a notification to every active user on a campus."""
        if not school_domain:
            raise ValidationError("School domain is required", field="school_domain")
        self.validate_message(message)

        recipients = self.resolve_campus_recipients(school_domain)
        logger.info(
            f"Dispatching campus notification to {len(recipients)} users",
            extra={"school_domain": school_domain, "kind": message.kind},
        )
        return await self.dispatch_many(recipients, message, sender_id=sender_id)


class NotificationTemplates:
    """Ready-made messages for the common notification types."""

    @staticmethod
    def test() -> PushMessage:
        return PushMessage(
            title="Test Notification 🎉",
            body="Push notifications are working perfectly!",
            data={"type": "test"},
        )

    @staticmethod
    def new_message(sender_id: str, sender_name: str, message_preview: str) -> PushMessage:
        if len(message_preview) > BODY_MAX_LENGTH:
            message_preview = message_preview[:BODY_MAX_LENGTH - 3] + "..."
        return PushMessage(
            title=f"New message from {sender_name}"[:TITLE_MAX_LENGTH],
            body=message_preview,
            data={"type": "message", "senderId": sender_id},
            channel_id="messages",
        )

    @staticmethod
    def post_interaction(user_name: str, interaction_type: str) -> PushMessage:
        verb = {"like": "liked", "comment": "commented on", "share": "shared"}.get(
            interaction_type, f"{interaction_type}d"
        )
        return PushMessage(
            title=f"{user_name} {verb} your post"[:TITLE_MAX_LENGTH],
            body="Check out the interaction on your post",
            data={"type": "interaction", "interactionType": interaction_type},
            channel_id="social",
        )

    @staticmethod
    def new_follower(follower_name: str) -> PushMessage:
        return PushMessage(
            title="New follower!",
            body=f"{follower_name} started following you",
            data={"type": "follow"},
            channel_id="social",
        )

    @staticmethod
    def campus_event(event_title: str, event_time: str) -> PushMessage:
        return PushMessage(
            title=f"Campus Event: {event_title}"[:TITLE_MAX_LENGTH],
            body=f"Starting {event_time}",
            data={"type": "event"},
            channel_id="events",
        )

    @staticmethod
    def study_reminder(subject: str, due_date: str) -> PushMessage:
        return PushMessage(
            title=f"Study Reminder: {subject}"[:TITLE_MAX_LENGTH],
            body=f"Due {due_date}",
            data={"type": "study_reminder", "subject": subject},
            channel_id="academic",
        )

    @staticmethod
    def system_announcement(title: str, body: str, data: Optional[Dict[str, Any]] = None) -> PushMessage:
        return PushMessage(
            title=title,
            body=body,
            data={"type": "announcement", **(data or {})},
            priority="high",
        )
