"""
Push notification send endpoint.

POST /api/push-notifications selects a notification template by ``type``
and dispatches it over push, in-app and realtime channels.
"""

from typing import List

from fastapi import APIRouter, Depends, HTTPException, status

from stride.api.deps import get_current_user_id, get_dispatcher
from stride.schemas.notifications import (
    DeliveryResult,
    PushNotificationRequest,
    PushNotificationResponse,
)
from stride.services.exceptions import (
    DeliveryFailedError,
    NotFoundError,
    ValidationError,
)
from stride.services.notification_dispatcher import (
    NotificationDispatcher,
    NotificationTemplates,
)
from stride.utils.logging_config import get_logger


logger = get_logger("api")

router = APIRouter(
    prefix="/push-notifications",
    tags=["Push Notifications"],
)


def _require(body: PushNotificationRequest, *fields: str) -> None:
    missing = [f for f in fields if not getattr(body, f)]
    if missing:
        raise ValidationError(
            f"Missing required fields for '{body.type}': {', '.join(missing)}",
            errors=[f"{f} is required" for f in missing],
        )


async def _send(
    body: PushNotificationRequest,
    user_id: str,
    dispatcher: NotificationDispatcher,
) -> List[DeliveryResult]:
    if body.type == "test":
        return [await dispatcher.dispatch(user_id, NotificationTemplates.test())]

    if body.type == "message":
        _require(body, "recipient_id", "sender_name", "message_preview")
        message = NotificationTemplates.new_message(
            user_id, body.sender_name, body.message_preview
        )
        return [await dispatcher.dispatch(body.recipient_id, message, sender_id=user_id)]

    if body.type == "interaction":
        _require(body, "recipient_id", "interaction_type", "user_name")
        message = NotificationTemplates.post_interaction(body.user_name, body.interaction_type)
        return [await dispatcher.dispatch(body.recipient_id, message, sender_id=user_id)]

    if body.type == "follower":
        _require(body, "recipient_id", "follower_name")
        message = NotificationTemplates.new_follower(body.follower_name)
        return [await dispatcher.dispatch(body.recipient_id, message, sender_id=user_id)]

    if body.type == "campus_event":
        _require(body, "school_domain", "event_title", "event_time")
        message = NotificationTemplates.campus_event(body.event_title, body.event_time)
        return await dispatcher.dispatch_campus(body.school_domain, message, sender_id=user_id)

    if body.type == "study_reminder":
        _require(body, "recipient_id", "subject", "due_date")
        message = NotificationTemplates.study_reminder(body.subject, body.due_date)
        return [await dispatcher.dispatch(body.recipient_id, message, sender_id=user_id)]

    # custom
    _require(body, "target_type", "target_id", "message")
    if body.target_type == "user":
        return [await dispatcher.dispatch(str(body.target_id), body.message, sender_id=user_id)]
    if body.target_type == "users":
        if not isinstance(body.target_id, list):
            raise ValidationError("target_id must be a list of user ids for 'users'")
        return await dispatcher.dispatch_many(
            [str(t) for t in body.target_id], body.message, sender_id=user_id
        )
    return await dispatcher.dispatch_campus(str(body.target_id), body.message, sender_id=user_id)


@router.post(
    "",
    response_model=PushNotificationResponse,
    summary="Send a notification",
)
async def send_push_notification(
    body: PushNotificationRequest,
    user_id: str = Depends(get_current_user_id),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """
    Dispatch a templated or custom notification.

    Partial delivery is a success. A single-recipient send where every
    channel failed answers 502 with the per-channel errors.
    """
    try:
        results = await _send(body, user_id, dispatcher)
    except ValidationError as err:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": err.message, "errors": err.errors},
        ) from err
    except NotFoundError as err:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(err),
        ) from err
    except DeliveryFailedError as err:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"message": str(err), "errors": err.result.errors},
        ) from err

    logger.info(
        "Notification request handled",
        extra={"type": body.type, "sender": user_id, "recipients": len(results)},
    )
    return PushNotificationResponse(
        success=any(r.success for r in results),
        results=results,
    )
