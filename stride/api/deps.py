"""
Shared FastAPI dependencies.

Caller identity arrives in the ``X-Stride-User`` header, set by the
authenticating gateway in front of this service. Long-lived collaborators
(realtime hub, push clients, recipient cache) live on ``app.state`` and are
created by the application lifespan.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from stride.db.database import get_db
from stride.realtime.hub import RealtimeHub
from stride.services.inbox_service import InboxService
from stride.services.notification_dispatcher import NotificationDispatcher
from stride.services.push_gateway import ExpoPushClient, WebPushSender
from stride.services.token_registry import TokenRegistryService
from stride.utils.cache import TTLCache


USER_HEADER = "X-Stride-User"


def get_current_user_id(
    x_stride_user: Optional[str] = Header(default=None, alias=USER_HEADER),
) -> str:
    """Resolve the authenticated caller. Raises 401 when the header is absent."""
    if not x_stride_user or not x_stride_user.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
    return x_stride_user.strip()


def get_realtime_hub(request: Request) -> RealtimeHub:
    return request.app.state.realtime_hub


def get_push_client(request: Request) -> ExpoPushClient:
    return request.app.state.push_client


def get_web_push(request: Request) -> WebPushSender:
    return request.app.state.web_push


def get_recipient_cache(request: Request) -> TTLCache:
    return request.app.state.recipient_cache


def get_token_registry(db: Session = Depends(get_db)) -> TokenRegistryService:
    """Create TokenRegistryService instance with database session."""
    return TokenRegistryService(db=db)


def get_inbox_service(db: Session = Depends(get_db)) -> InboxService:
    """Create InboxService instance with database session."""
    return InboxService(db=db)


def get_dispatcher(
    db: Session = Depends(get_db),
    hub: RealtimeHub = Depends(get_realtime_hub),
    push_client: ExpoPushClient = Depends(get_push_client),
    web_push: WebPushSender = Depends(get_web_push),
    recipient_cache: TTLCache = Depends(get_recipient_cache),
) -> NotificationDispatcher:
    """Create a NotificationDispatcher wired to the app's shared collaborators."""
    return NotificationDispatcher(
        db=db,
        push_client=push_client,
        web_push=web_push,
        hub=hub,
        recipient_cache=recipient_cache,
    )
