"""
Dispatch Coordinator — End-to-end notification dispatch.

Entry point for both triggers (the /send-notification endpoint and the
conversation change watcher). For a message event it:
1. Validates senderId, receiverId and message (InvalidRequestError otherwise)
2. Resolves the receiver's FCM token (Skipped when unknown or unregistered)
3. Resolves the sender's display name (best effort, "Someone" fallback)
4. Composes the notification payload
5. Sends it through the push gateway
6. On success, appends a delivery record without waiting for it
7. Returns the DispatchResult

No step after a Skipped or Failed outcome runs. The coordinator holds no
mutable state; dispatches run concurrently.
"""

import logging
from typing import Any, Optional

from push_relay.core.errors import InvalidRequestError, LookupFailedError, UserNotFoundError
from push_relay.models.dispatch import (
    DeliveryRecord,
    DispatchResult,
    FailureKind,
    MessageEvent,
    SkipReason,
    UserRecord,
)
from push_relay.services.composer import (
    SEND_DEFAULT_BODY,
    SEND_DEFAULT_TITLE,
    SEND_TO_USER_DEFAULT_BODY,
    SEND_TO_USER_DEFAULT_TITLE,
    compose,
    compose_direct,
)
from push_relay.services.contracts import PushGateway, UserDirectory
from push_relay.services.delivery_logger import DeliveryLogger

logger = logging.getLogger(__name__)


def validate_event(event: MessageEvent) -> None:
    """Raise InvalidRequestError unless the event can be dispatched."""
    missing = [
        name
        for name, value in (
            ("senderId", event.sender_id),
            ("receiverId", event.receiver_id),
            ("message", event.message_text),
        )
        if not value
    ]
    if missing:
        raise InvalidRequestError(f"{', '.join(missing)} required")
    if event.sender_id == event.receiver_id:
        raise InvalidRequestError("senderId and receiverId must differ")


class DispatchCoordinator:
    """Orchestrates resolver, composer, gateway and delivery logger."""

    def __init__(
        self,
        *,
        resolver: UserDirectory,
        gateway: PushGateway,
        delivery_logger: Optional[DeliveryLogger] = None,
    ):
        self._resolver = resolver
        self._gateway = gateway
        self._delivery_logger = delivery_logger

    async def dispatch(self, event: MessageEvent) -> DispatchResult:
        """
        Dispatch one chat-message notification.

        Raises:
            InvalidRequestError: Before any external call, if the event is
                missing senderId, receiverId or message.

        Returns:
            DispatchResult: Sent, Skipped(user-not-found | no-address) or
            Failed(lookup_failed | send_failed).
        """
        validate_event(event)

        receiver = await self._resolve_receiver(event.receiver_id)
        if isinstance(receiver, DispatchResult):
            return receiver

        sender_name = await self._resolve_sender_name(event)
        payload = compose(event, sender_name, receiver.push_address)

        result = await self._gateway.send(payload)

        if result.is_sent:
            logger.info(
                "Message notification sent: %s... -> %s..., chat=%s, message_id=%s",
                event.sender_id[:8], event.receiver_id[:8], event.chat_id, result.gateway_message_id,
            )
            if self._delivery_logger is not None:
                self._delivery_logger.log_best_effort(
                    DeliveryRecord.from_dispatch(event, payload, result)
                )
        else:
            logger.error(
                "Message notification failed: %s... -> %s...: %s",
                event.sender_id[:8], event.receiver_id[:8], result.reason,
            )

        return result

    async def dispatch_to_user(
        self,
        user_id: Optional[str],
        *,
        title: Optional[str] = None,
        body: Optional[str] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> DispatchResult:
        """Push caller-supplied content to a user's device. No history record."""
        if not user_id:
            raise InvalidRequestError("userId is required")

        receiver = await self._resolve_receiver(user_id)
        if isinstance(receiver, DispatchResult):
            return receiver

        payload = compose_direct(
            target_address=receiver.push_address,
            title=title,
            body=body,
            data=data,
            default_title=SEND_TO_USER_DEFAULT_TITLE,
            default_body=SEND_TO_USER_DEFAULT_BODY,
        )
        return await self._gateway.send(payload)

    async def dispatch_to_address(
        self,
        address: Optional[str],
        *,
        title: Optional[str] = None,
        body: Optional[str] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> DispatchResult:
        """Push caller-supplied content straight to an FCM token."""
        if not address:
            raise InvalidRequestError("Token is required")

        payload = compose_direct(
            target_address=address,
            title=title,
            body=body,
            data=data,
            default_title=SEND_DEFAULT_TITLE,
            default_body=SEND_DEFAULT_BODY,
        )
        return await self._gateway.send(payload)

    async def _resolve_receiver(self, user_id: str) -> UserRecord | DispatchResult:
        """Return the receiver's record, or the terminal result that ends the dispatch."""
        try:
            receiver = await self._resolver.resolve(user_id)
        except UserNotFoundError:
            logger.info("User %s not found — skipping push delivery", user_id[:8])
            return DispatchResult.skipped(SkipReason.USER_NOT_FOUND)
        except LookupFailedError as exc:
            logger.error("Failed to look up FCM token for user %s: %s", user_id[:8], exc)
            return DispatchResult.failed(FailureKind.LOOKUP_FAILED, str(exc))

        if not receiver.push_address:
            logger.info("No FCM token registered for user %s — skipping push delivery", user_id[:8])
            return DispatchResult.skipped(SkipReason.NO_ADDRESS)

        return receiver

    async def _resolve_sender_name(self, event: MessageEvent) -> Optional[str]:
        if event.sender_name and event.sender_name.strip():
            return event.sender_name
        try:
            return await self._resolver.display_name(event.sender_id)
        except Exception as exc:
            logger.debug("Sender name lookup failed for %s: %s", event.sender_id[:8], exc)
            return None
