"""
Inbox service for in-app notification records.

Read-side of the notification system: the dispatcher writes records,
recipients list them and flip the read flag. Records are never deleted.
"""

from datetime import datetime
from typing import Optional, Tuple, List

from sqlalchemy import func
from sqlalchemy.orm import Session

from stride.models import NotificationRecord
from stride.services.exceptions import NotFoundError
from stride.utils.logging_config import get_logger


logger = get_logger("services")


class InboxService:
    """Service for listing and acknowledging a user's notifications."""

    def __init__(self, db: Session):
        self.db = db

    def get_notification_by_guid(self, guid: str, user_id: str) -> NotificationRecord:
        """
        Get a notification owned by ``user_id`` by GUID.

        Raises:
            NotFoundError: If the GUID is malformed, unknown, or owned by someone else
        """
        try:
            notification_uuid = NotificationRecord.parse_guid(guid)
        except ValueError:
            raise NotFoundError("Notification", guid)

        notification = (
            self.db.query(NotificationRecord)
            .filter(
                NotificationRecord.uuid == notification_uuid,
                NotificationRecord.recipient_id == user_id,
            )
            .first()
        )
        if not notification:
            raise NotFoundError("Notification", guid)
        return notification

    def list_notifications(
        self,
        user_id: str,
        limit: int = 20,
        offset: int = 0,
        unread_only: bool = False,
        kind: Optional[str] = None,
    ) -> Tuple[List[NotificationRecord], int]:
        """
        List a user's notifications, newest first.

        Args:
            user_id: Recipient
            limit: Maximum results
            offset: Number to skip
            unread_only: Only unread notifications
            kind: Optional kind filter

        Returns:
            Tuple of (notifications, total count before pagination)
        """
        query = self.db.query(NotificationRecord).filter(
            NotificationRecord.recipient_id == user_id
        )
        if unread_only:
            query = query.filter(NotificationRecord.is_read.is_(False))
        if kind:
            query = query.filter(NotificationRecord.kind == kind)

        total = query.count()
        notifications = (
            query.order_by(NotificationRecord.created_at.desc(), NotificationRecord.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return notifications, total

    def get_unread_count(self, user_id: str) -> int:
        return (
            self.db.query(func.count(NotificationRecord.id))
            .filter(
                NotificationRecord.recipient_id == user_id,
                NotificationRecord.is_read.is_(False),
            )
            .scalar()
        )

    def mark_as_read(self, guid: str, user_id: str) -> NotificationRecord:
        """Mark one notification as read (idempotent)."""
        notification = self.get_notification_by_guid(guid, user_id)

        if not notification.is_read:
            notification.is_read = True
            notification.read_at = datetime.utcnow()
            self.db.commit()
            self.db.refresh(notification)

        return notification

    def mark_all_as_read(self, user_id: str) -> int:
        """
        Mark every unread notification of a user as read.

        Returns:
            Number of notifications updated
        """
        updated = (
            self.db.query(NotificationRecord)
            .filter(
                NotificationRecord.recipient_id == user_id,
                NotificationRecord.is_read.is_(False),
            )
            .update(
                {"is_read": True, "read_at": datetime.utcnow()},
                synchronize_session="fetch",
            )
        )
        self.db.commit()

        if updated:
            logger.info(
                f"Marked {updated} notifications as read",
                extra={"user_id": user_id},
            )
        return updated
