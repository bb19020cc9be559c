"""
Pydantic schemas for notification delivery and the notification API.

Provides data validation and serialization for:
- Push messages handed to the dispatcher and the push gateway
- Per-channel delivery results
- Push token registration
- Notification inbox (list, unread count, mark as read)
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer
from pydantic.alias_generators import to_camel


# ============================================================================
# Delivery Schemas
# ============================================================================


class PushMessage(BaseModel):
    """
    Notification content as handed to the dispatcher.

    Length rules (title <= 100, body <= 500, both non-empty) are enforced by
    ``NotificationDispatcher.validate_message`` so that every violation is
    reported together.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    title: str = ""
    body: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)
    sound: Optional[str] = "default"
    badge: Optional[int] = None
    priority: Literal["default", "normal", "high"] = "default"
    channel_id: Optional[str] = None

    @property
    def kind(self) -> str:
        return str(self.data.get("type") or "test")

    def to_gateway_message(self, token: str) -> Dict[str, Any]:
        """Build the gateway JSON body for one token."""
        message: Dict[str, Any] = {
            "to": token,
            "sound": self.sound or "default",
            "title": self.title,
            "body": self.body,
            "data": self.data or {},
            "priority": self.priority or "default",
        }
        if self.badge is not None:
            message["badge"] = self.badge
        if self.channel_id:
            message["channelId"] = self.channel_id
        return message


class PushResult(BaseModel):
    """Outcome of one gateway message (one entry of the gateway response)."""

    success: bool
    id: Optional[str] = None
    message: Optional[str] = None
    error_code: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class DeliveryResult(BaseModel):
    """
    Aggregate outcome of a multi-channel dispatch to one recipient.

    ``success`` is true when at least one of push, in-app record or realtime
    broadcast succeeded. ``errors`` enumerates the failed channels.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_id: Optional[str] = None
    success: bool = False
    expo_push_sent: bool = False
    web_push_sent: bool = False
    in_app_notification_created: bool = False
    realtime_event_triggered: bool = False
    errors: List[str] = Field(default_factory=list)
    details: Dict[str, Any] = Field(default_factory=dict)

    @property
    def push_sent(self) -> bool:
        return self.expo_push_sent or self.web_push_sent

    def compute_success(self) -> bool:
        self.success = (
            self.push_sent
            or self.in_app_notification_created
            or self.realtime_event_triggered
        )
        return self.success

    @classmethod
    def failure(cls, user_id: Optional[str], error: str, **details: Any) -> "DeliveryResult":
        return cls(user_id=user_id, success=False, errors=[error], details=details)


class DeliveryStats(BaseModel):
    """Token registry and inbox counters."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    total_users: int = 0
    users_with_expo_tokens: int = 0
    users_with_push_enabled: int = 0
    recent_notifications: int = 0


# ============================================================================
# Push Token Schemas
# ============================================================================


class PushTokenRegister(BaseModel):
    """Request body for registering this device's push address."""

    token: str = Field(..., min_length=1, max_length=2048)
    channel: Literal["mobile-push", "browser-push"] = "mobile-push"


class PushTokenValidate(BaseModel):
    token: str = Field(..., min_length=1)


class PushTokenValidateResponse(BaseModel):
    valid: bool
    should_reregister: bool


class PushTargetResponse(BaseModel):
    """Response schema for the caller's push target."""

    user_id: str
    channel: str
    enabled: bool
    last_validated_at: Optional[datetime] = None

    @field_serializer("last_validated_at")
    @classmethod
    def serialize_datetime_utc(cls, v: Optional[datetime]) -> Optional[str]:
        """Serialize datetime as ISO 8601 with explicit UTC timezone."""
        return v.isoformat() + "Z" if v else None

    model_config = {"from_attributes": True}


# ============================================================================
# Send Request Schemas
# ============================================================================


class PushNotificationRequest(BaseModel):
    """
    Request body for POST /api/push-notifications.

    ``type`` selects a template; the remaining fields are the template's
    parameters. For ``custom``, ``target_type`` is user | users | campus and
    ``target_id`` is a user id, a list of user ids or a school domain.
    """

    type: Literal[
        "test",
        "message",
        "interaction",
        "follower",
        "campus_event",
        "study_reminder",
        "custom",
    ]
    recipient_id: Optional[str] = None
    sender_name: Optional[str] = None
    message_preview: Optional[str] = None
    interaction_type: Optional[Literal["like", "comment", "share"]] = None
    user_name: Optional[str] = None
    follower_name: Optional[str] = None
    school_domain: Optional[str] = None
    event_title: Optional[str] = None
    event_time: Optional[str] = None
    subject: Optional[str] = None
    due_date: Optional[str] = None
    target_type: Optional[Literal["user", "users", "campus"]] = None
    target_id: Optional[Any] = None
    message: Optional[PushMessage] = None


class PushNotificationResponse(BaseModel):
    success: bool
    results: List[DeliveryResult]


# ============================================================================
# Inbox Schemas
# ============================================================================


class NotificationResponse(BaseModel):
    """Response schema for one inbox notification."""

    guid: str = Field(..., description="Notification GUID (ntf_xxx)")
    recipient_id: str
    sender_id: str
    kind: str
    title: str
    body: str
    data: Optional[Dict[str, Any]] = None
    is_read: bool
    read_at: Optional[datetime] = None
    created_at: datetime

    @field_serializer("created_at", "read_at")
    @classmethod
    def serialize_datetime_utc(cls, v: Optional[datetime]) -> Optional[str]:
        return v.isoformat() + "Z" if v else None

    model_config = {"from_attributes": True}


class NotificationListResponse(BaseModel):
    items: List[NotificationResponse]
    total: int
    limit: int
    offset: int


class UnreadCountResponse(BaseModel):
    unread_count: int


class MarkAllReadResponse(BaseModel):
    updated_count: int
