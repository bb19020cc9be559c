"""
NotificationRecord model for the in-app notification inbox.

Records are written for every dispatch regardless of push delivery outcome,
so the inbox is the source of truth for what a user was told. The recipient's
client flips the read flag; there is no deletion path in the normal flow.
"""

import enum
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from stride.models import Base
from stride.models.mixins import GuidMixin


class NotificationKind(str, enum.Enum):
    """Notification kinds shown in the inbox."""

    MESSAGE = "message"
    FOLLOW = "follow"
    EVENT = "event"
    STUDY_REMINDER = "study_reminder"
    ANNOUNCEMENT = "announcement"
    TEST = "test"
    CUSTOM = "custom"

    @classmethod
    def coerce(cls, value) -> "NotificationKind":
        """Map a free-form ``data.type`` to a kind, unknown values become CUSTOM."""
        try:
            return cls(value)
        except ValueError:
            return cls.CUSTOM


class NotificationRecord(Base, GuidMixin):
    """
    Durable, user-visible notification.

    Attributes:
        recipient_id: Recipient user
        sender_id: Sender user (equals recipient for system notices)
        kind: One of NotificationKind
        title: Short title (max 100 chars)
        body: Body text (max 500 chars)
        data: Free-form JSON payload (navigation hints, entity ids)
        is_read: Read flag, flipped by the recipient's client
    """

    __tablename__ = "notifications"
    GUID_PREFIX = "ntf"

    id = Column(Integer, primary_key=True, autoincrement=True)

    recipient_id = Column(
        String(64),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sender_id = Column(String(64), nullable=False)

    kind = Column(String(30), nullable=False, default=NotificationKind.CUSTOM.value)
    title = Column(String(100), nullable=False)
    body = Column(String(500), nullable=False)
    data = Column(JSONB().with_variant(JSON(), "sqlite"), nullable=True)

    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    recipient = relationship(
        "User", back_populates="notifications", foreign_keys=[recipient_id]
    )

    __table_args__ = (
        Index("ix_notifications_recipient_unread", "recipient_id", "is_read"),
    )

    def __repr__(self) -> str:
        return (
            f"<NotificationRecord(recipient_id={self.recipient_id!r}, "
            f"kind={self.kind!r}, is_read={self.is_read})>"
        )
