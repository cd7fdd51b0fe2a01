"""
Notification Composer — Builds push payloads from message events.

Pure functions, no I/O. The only non-deterministic input is the compose
timestamp, which callers may pin with `now=` (tests do).

Title format: "New message from [Sender Name]"
Body format:  the message text, cut to 100 characters plus "..." when longer.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from push_relay.models.dispatch import MessageEvent, NotificationPayload

BODY_MAX_LENGTH = 100
# ASCII dots, not U+2026
TRUNCATION_SUFFIX = "..."
DEFAULT_SENDER_NAME = "Someone"
MESSAGE_NOTIFICATION_TYPE = "message"

# Defaults carried over from the raw /send and /send-to-user endpoints
SEND_DEFAULT_TITLE = "Notification"
SEND_DEFAULT_BODY = "You have a new message"
SEND_TO_USER_DEFAULT_TITLE = "Hello!"
SEND_TO_USER_DEFAULT_BODY = "You have a notification"


def truncate_body(text: str) -> str:
    """Return text unchanged up to 100 characters, else the first 100 + '...'."""
    if len(text) <= BODY_MAX_LENGTH:
        return text
    return text[:BODY_MAX_LENGTH] + TRUNCATION_SUFFIX


def resolve_sender_name(name: Optional[str]) -> str:
    if name and name.strip():
        return name
    return DEFAULT_SENDER_NAME


def compose(
    event: MessageEvent,
    sender_name: Optional[str],
    target_address: str,
    *,
    now: Optional[datetime] = None,
) -> NotificationPayload:
    """
    Build the chat-message notification for one receiver device.

    Metadata always carries type, senderId, senderName, chatId, timestamp
    and notificationId. Absent chatId / notificationId are sent as empty
    strings so downstream consumers can rely on the keys.

    Args:
        event: The validated message event.
        sender_name: Display name of the sender (None/empty -> "Someone").
        target_address: The receiver's FCM registration token.
        now: Compose time; defaults to the current UTC time.

    Returns:
        NotificationPayload addressed to target_address.
    """
    name = resolve_sender_name(sender_name)
    timestamp = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)

    return NotificationPayload(
        title=f"New message from {name}",
        body=truncate_body(event.message_text or ""),
        metadata={
            "type": MESSAGE_NOTIFICATION_TYPE,
            "senderId": event.sender_id or "",
            "senderName": name,
            "chatId": event.chat_id or "",
            "timestamp": timestamp.isoformat(),
            "notificationId": event.notification_id or "",
        },
        target_address=target_address,
    )


def compose_direct(
    *,
    target_address: str,
    title: Optional[str],
    body: Optional[str],
    data: Optional[dict[str, Any]],
    default_title: str,
    default_body: str,
) -> NotificationPayload:
    """Build a payload whose title/body are supplied by the caller."""
    # FCM data values must be strings
    metadata = {str(k): "" if v is None else str(v) for k, v in (data or {}).items()}
    return NotificationPayload(
        title=title or default_title,
        body=body or default_body,
        metadata=metadata,
        target_address=target_address,
    )
