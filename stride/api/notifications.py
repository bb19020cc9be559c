"""
Notification inbox endpoints.

Provides endpoints for:
- Listing the caller's notifications
- Unread count (badge)
- Marking one or all notifications as read
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from stride.api.deps import get_current_user_id, get_inbox_service
from stride.schemas.notifications import (
    MarkAllReadResponse,
    NotificationListResponse,
    NotificationResponse,
    UnreadCountResponse,
)
from stride.services.exceptions import NotFoundError
from stride.services.inbox_service import InboxService


router = APIRouter(
    prefix="/notifications",
    tags=["Notifications"],
)


def _to_response(notification) -> NotificationResponse:
    return NotificationResponse(
        guid=notification.guid,
        recipient_id=notification.recipient_id,
        sender_id=notification.sender_id,
        kind=notification.kind,
        title=notification.title,
        body=notification.body,
        data=notification.data,
        is_read=notification.is_read,
        read_at=notification.read_at,
        created_at=notification.created_at,
    )


@router.get(
    "",
    response_model=NotificationListResponse,
    summary="List notifications",
)
async def list_notifications(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    unread_only: bool = Query(False),
    kind: Optional[str] = Query(None),
    user_id: str = Depends(get_current_user_id),
    service: InboxService = Depends(get_inbox_service),
):
    notifications, total = service.list_notifications(
        user_id=user_id,
        limit=limit,
        offset=offset,
        unread_only=unread_only,
        kind=kind,
    )
    return NotificationListResponse(
        items=[_to_response(n) for n in notifications],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/unread-count",
    response_model=UnreadCountResponse,
    summary="Get unread notification count",
)
async def get_unread_count(
    user_id: str = Depends(get_current_user_id),
    service: InboxService = Depends(get_inbox_service),
):
    return UnreadCountResponse(unread_count=service.get_unread_count(user_id))


@router.post(
    "/read-all",
    response_model=MarkAllReadResponse,
    summary="Mark all notifications as read",
)
async def mark_all_as_read(
    user_id: str = Depends(get_current_user_id),
    service: InboxService = Depends(get_inbox_service),
):
    return MarkAllReadResponse(updated_count=service.mark_all_as_read(user_id))


@router.post(
    "/{guid}/read",
    response_model=NotificationResponse,
    summary="Mark a notification as read",
)
async def mark_as_read(
    guid: str,
    user_id: str = Depends(get_current_user_id),
    service: InboxService = Depends(get_inbox_service),
):
    try:
        notification = service.mark_as_read(guid, user_id)
    except NotFoundError as err:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(err),
        ) from err
    return _to_response(notification)
