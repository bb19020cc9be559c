"""
User model.

Users are provisioned by the identity sync (Auth0 -> row store); this service
only reads them to resolve recipients and their campus.
"""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, String
from sqlalchemy.orm import relationship

from stride.models import Base


class User(Base):
    """
    Verified student account.

    Attributes:
        id: Stable user identifier (string, issued by the identity provider)
        email: Verified campus email
        username: Public handle
        school_domain: Institution domain used for campus-wide fan-out
        is_active: Inactive users are skipped by campus resolution
    """

    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    email = Column(String(255), nullable=False, unique=True)
    username = Column(String(50), nullable=True, unique=True)
    full_name = Column(String(255), nullable=True)
    school_domain = Column(String(255), nullable=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    push_target = relationship(
        "PushTarget",
        back_populates="user",
        uselist=False,
        cascade="all, delete-orphan",
    )
    notifications = relationship(
        "NotificationRecord",
        back_populates="recipient",
        foreign_keys="NotificationRecord.recipient_id",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id!r}, school_domain={self.school_domain!r})>"
