"""
PushTarget model: one device/browser's ability to receive push.

Each user owns at most one target row. Registering again from any device
overwrites the row (last write wins), so there is never more than one
active mobile token per user.

Lifecycle:
    Created on first successful registration.
    Updated on token refresh (periodic revalidation).
    Cleared (token nulled, disabled) when the gateway reports a permanent
    failure or the user turns notifications off.
"""

import enum
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from stride.models import Base


class PushChannel(str, enum.Enum):
    """Delivery channel kind for a push target."""

    MOBILE = "mobile-push"
    BROWSER = "browser-push"
    NONE = "none"


class PushTarget(Base):
    """
    Push-capable address for a user.

    Attributes:
        user_id: Owning user (unique)
        channel: mobile-push | browser-push | none
        token: Opaque token. Gateway token for mobile-push, serialized
               Web Push subscription JSON for browser-push
        enabled: Delivery preference flag
        last_validated_at: When the token was last registered/revalidated
    """

    __tablename__ = "push_targets"

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(
        String(64),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )

    channel = Column(String(20), nullable=False, default=PushChannel.NONE.value)
    token = Column(String(2048), nullable=True)
    enabled = Column(Boolean, nullable=False, default=False)
    last_validated_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    user = relationship("User", back_populates="push_target")

    @property
    def is_mobile(self) -> bool:
        return self.channel == PushChannel.MOBILE.value

    @property
    def is_browser(self) -> bool:
        return self.channel == PushChannel.BROWSER.value

    def __repr__(self) -> str:
        return (
            f"<PushTarget(user_id={self.user_id!r}, channel={self.channel!r}, "
            f"enabled={self.enabled})>"
        )
