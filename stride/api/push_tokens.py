"""
Push token endpoints.

Clients register their push address here, periodically revalidate it,
and clear it when the user turns notifications off.
"""

from fastapi import APIRouter, Depends, HTTPException, Response, status

from stride.api.deps import get_current_user_id, get_token_registry
from stride.schemas.notifications import (
    DeliveryStats,
    PushTargetResponse,
    PushTokenRegister,
    PushTokenValidate,
    PushTokenValidateResponse,
)
from stride.services.exceptions import NotFoundError, ValidationError
from stride.services.token_registry import TokenRegistryService


router = APIRouter(
    prefix="/push-tokens",
    tags=["Push Tokens"],
)


@router.post(
    "",
    response_model=PushTargetResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register this device's push token",
)
async def register_push_token(
    body: PushTokenRegister,
    user_id: str = Depends(get_current_user_id),
    registry: TokenRegistryService = Depends(get_token_registry),
):
    """Store the caller's push token, replacing any previously registered one."""
    try:
        target = registry.register(user_id, body.token, body.channel)
    except ValidationError as err:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=err.message,
        ) from err
    except NotFoundError as err:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(err),
        ) from err
    return PushTargetResponse.model_validate(target)


@router.get(
    "",
    response_model=PushTargetResponse,
    summary="Get the caller's push target",
)
async def get_push_target(
    user_id: str = Depends(get_current_user_id),
    registry: TokenRegistryService = Depends(get_token_registry),
):
    target = registry.get_target(user_id)
    if not target:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No push target registered",
        )
    return PushTargetResponse.model_validate(target)


@router.delete(
    "",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Clear the caller's push token",
)
async def clear_push_token(
    user_id: str = Depends(get_current_user_id),
    registry: TokenRegistryService = Depends(get_token_registry),
):
    """Disable push for the caller. Idempotent."""
    registry.clear(user_id, reason="user_disabled")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/validate",
    response_model=PushTokenValidateResponse,
    summary="Check whether the client's token is still trusted",
)
async def validate_push_token(
    body: PushTokenValidate,
    user_id: str = Depends(get_current_user_id),
    registry: TokenRegistryService = Depends(get_token_registry),
):
    valid = registry.validate(user_id, body.token)
    return PushTokenValidateResponse(valid=valid, should_reregister=not valid)


@router.get(
    "/stats",
    response_model=DeliveryStats,
    summary="Registry and inbox counters",
)
async def get_registry_stats(
    user_id: str = Depends(get_current_user_id),
    registry: TokenRegistryService = Depends(get_token_registry),
):
    return DeliveryStats(**registry.get_stats())
