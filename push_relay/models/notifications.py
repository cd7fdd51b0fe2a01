"""
Notification API Models — Pydantic schemas for the relay's HTTP endpoints.

Request bodies use the camelCase keys sent by the messaging client
(senderId, receiverId, ...). Every field is optional at the schema level so
that missing fields produce the documented 400 response instead of a 422.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from push_relay.models.dispatch import MessageEvent


class SendRequest(BaseModel):
    """Body for POST /send — push straight to a device token."""

    token: Optional[str] = Field(default=None, description="FCM registration token.")
    title: Optional[str] = None
    body: Optional[str] = None
    data: Optional[dict[str, Any]] = None


class SendNotificationRequest(BaseModel):
    """Body for POST /send-notification — the chat client's primary path."""

    model_config = ConfigDict(populate_by_name=True)

    sender_id: Optional[str] = Field(default=None, alias="senderId")
    receiver_id: Optional[str] = Field(default=None, alias="receiverId")
    message: Optional[str] = Field(default=None, description="Message text.")
    sender_name: Optional[str] = Field(default=None, alias="senderName")
    chat_id: Optional[str] = Field(default=None, alias="chatId")
    notification_id: Optional[str] = Field(
        default=None,
        alias="notificationId",
        description="Client-generated dedup key, echoed into metadata and history.",
    )

    def to_event(self) -> MessageEvent:
        return MessageEvent(
            sender_id=self.sender_id,
            receiver_id=self.receiver_id,
            message_text=self.message,
            chat_id=self.chat_id,
            sender_name=self.sender_name,
            notification_id=self.notification_id,
        )


class SendToUserRequest(BaseModel):
    """Body for POST /send-to-user — push to a user id with explicit content."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[str] = Field(default=None, alias="userId")
    title: Optional[str] = None
    body: Optional[str] = None
    data: Optional[dict[str, Any]] = None


class SendResponse(BaseModel):
    """Result of a send: {success, messageId} or {success: false, error}."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    message_id: Optional[str] = Field(default=None, alias="messageId")
    error: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    uptime: float = Field(..., description="Seconds since the process started.")
