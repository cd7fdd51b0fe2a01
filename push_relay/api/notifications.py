"""
Notifications API — HTTP triggers for push delivery.

Endpoints:
- POST /send               push to a raw FCM token
- POST /send-notification  "user A sent user B a message" (chat client path)
- POST /send-to-user       push caller-supplied content to a user id

Status mapping for dispatch results:
- Sent                     200 {success: true, messageId}
- Failed(send_failed)      200 {success: false, error}
- Skipped(user-not-found)  404
- Skipped(no-address)      404
- Failed(lookup_failed)    500
- InvalidRequestError      400
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from push_relay.core.context import AppContext, get_context
from push_relay.core.errors import InvalidRequestError
from push_relay.models.dispatch import DispatchOutcome, DispatchResult, FailureKind, SkipReason
from push_relay.models.notifications import (
    SendNotificationRequest,
    SendRequest,
    SendResponse,
    SendToUserRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["notifications"])

_SKIP_DETAILS = {
    SkipReason.USER_NOT_FOUND.value: "User not found",
    SkipReason.NO_ADDRESS.value: "User has no FCM token",
}

_DIRECT_DISABLED_DETAILS = {
    "watcher": "Direct dispatch is disabled; messages are notified by the change watcher.",
    "none": "Direct dispatch is disabled; no message trigger is enabled in this deployment.",
}


def _to_response(result: DispatchResult) -> SendResponse:
    """Translate a DispatchResult to a response body, raising for 404/500."""
    if result.outcome is DispatchOutcome.SENT:
        return SendResponse(success=True, message_id=result.gateway_message_id)

    if result.outcome is DispatchOutcome.SKIPPED:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=_SKIP_DETAILS.get(result.reason or "", result.reason or "Not found"),
        )

    if result.failure is FailureKind.LOOKUP_FAILED:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to look up user: {result.reason}",
        )

    return SendResponse(success=False, error=result.reason)


# ===================================================================
# POST /send
# ===================================================================

@router.post(
    "/send",
    response_model=SendResponse,
    response_model_exclude_none=True,
)
async def send(
    payload: SendRequest,
    context: AppContext = Depends(get_context),
) -> SendResponse:
    """
    Push a notification directly to an FCM token.

    Returns:
        200: {success, messageId} or {success: false, error} on gateway failure.
        400: token missing.
        500: unexpected error.
    """
    try:
        result = await context.coordinator.dispatch_to_address(
            payload.token,
            title=payload.title,
            body=payload.body,
            data=payload.data,
        )
    except InvalidRequestError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except Exception as exc:
        logger.error("Unexpected error sending to token: %s", exc, exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        )

    return _to_response(result)


# ===================================================================
# POST /send-notification
# ===================================================================

@router.post(
    "/send-notification",
    response_model=SendResponse,
    response_model_exclude_none=True,
)
async def send_notification(
    payload: SendNotificationRequest,
    context: AppContext = Depends(get_context),
) -> SendResponse:
    """
    Notify receiverId that senderId sent them a message.

    Disabled (409) when the deployment runs the conversation change
    watcher, since the watcher already notifies every message.

    Returns:
        200: Sent, or {success: false, error} on gateway rejection.
        400: senderId, receiverId or message missing.
        404: Receiver unknown or has no FCM token.
        409: Direct dispatch disabled in this deployment.
        500: User lookup failed or unexpected error.
    """
    if not context.settings.enable_direct_dispatch:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=_DIRECT_DISABLED_DETAILS.get(
                context.settings.dispatch_mode, "Direct dispatch is disabled."
            ),
        )

    try:
        result = await context.coordinator.dispatch(payload.to_event())
    except InvalidRequestError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except Exception as exc:
        logger.error("Unexpected error dispatching message notification: %s", exc, exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        )

    return _to_response(result)


# ===================================================================
# POST /send-to-user
# ===================================================================

@router.post(
    "/send-to-user",
    response_model=SendResponse,
    response_model_exclude_none=True,
)
async def send_to_user(
    payload: SendToUserRequest,
    context: AppContext = Depends(get_context),
) -> SendResponse:
    """
    Push caller-supplied title/body to a user's registered device.

    Returns:
        200: Sent, or {success: false, error} on gateway rejection.
        400: userId missing.
        404: User unknown or has no FCM token.
        500: User lookup failed or unexpected error.
    """
    try:
        result = await context.coordinator.dispatch_to_user(
            payload.user_id,
            title=payload.title,
            body=payload.body,
            data=payload.data,
        )
    except InvalidRequestError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except Exception as exc:
        logger.error("Unexpected error sending to user: %s", exc, exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        )

    return _to_response(result)
