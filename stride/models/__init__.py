"""
SQLAlchemy models for the Stride notification service.

Provides the declarative base class and imports all models so they are
registered with ``Base.metadata``.
"""

from sqlalchemy.orm import declarative_base

Base = declarative_base()


from stride.models.user import User  # noqa: E402
from stride.models.push_target import PushTarget, PushChannel  # noqa: E402
from stride.models.notification import NotificationRecord, NotificationKind  # noqa: E402

__all__ = [
    "Base",
    "User",
    "PushTarget",
    "PushChannel",
    "NotificationRecord",
    "NotificationKind",
]
