"""
Dispatch Models — Pydantic schemas for the notification dispatch pipeline.

Defines the values that flow through a dispatch:
1. MessageEvent — "a message was sent from A to B" (HTTP or store change)
2. UserRecord — receiver/sender row from the user directory
3. ConversationRecord — conversation row observed by the change watcher
4. NotificationPayload — composed push content addressed to one device
5. DispatchResult — Sent / Skipped / Failed outcome of one dispatch
6. DeliveryRecord — history row appended after a successful send
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


# ======================================================================
# Outcome enums
# ======================================================================

class DispatchOutcome(str, Enum):
    SENT = "sent"
    SKIPPED = "skipped"
    FAILED = "failed"


class SkipReason(str, Enum):
    """Non-error terminal states of a dispatch."""

    USER_NOT_FOUND = "user-not-found"
    NO_ADDRESS = "no-address"
    NO_RECEIVER = "no-receiver"


class FailureKind(str, Enum):
    """Pipeline stage at which a dispatch failed."""

    LOOKUP_FAILED = "lookup_failed"
    SEND_FAILED = "send_failed"


# ======================================================================
# Inbound trigger
# ======================================================================

class MessageEvent(BaseModel):
    """
    A "new message" trigger.

    Fields are optional at the model level so that incomplete triggers can
    be represented and rejected by the coordinator with InvalidRequestError.
    """

    sender_id: Optional[str] = None
    receiver_id: Optional[str] = None
    message_text: Optional[str] = None
    chat_id: Optional[str] = None
    sender_name: Optional[str] = None
    notification_id: Optional[str] = None  # dedup key for downstream consumers


# ======================================================================
# External records (read-only)
# ======================================================================

class UserRecord(BaseModel):
    """A row from the users table. push_address is None when unregistered."""

    user_id: str
    push_address: Optional[str] = None
    display_name: Optional[str] = None


class ConversationRecord(BaseModel):
    """A row from the conversations table, as seen by the change watcher."""

    conversation_id: str
    participants: list[str] = Field(default_factory=list)
    last_message: Optional[str] = None
    last_message_sender_id: Optional[str] = None
    last_message_at: Optional[str] = None
    participant_names: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ConversationRecord":
        """Build a record from a raw Supabase row, tolerating null columns."""
        names = row.get("participant_names")
        if not isinstance(names, dict):
            names = {}
        return cls(
            conversation_id=str(row.get("id", "")),
            participants=[str(p) for p in (row.get("participants") or [])],
            last_message=row.get("last_message"),
            last_message_sender_id=row.get("last_message_sender_id"),
            last_message_at=row.get("last_message_at"),
            participant_names={
                str(k): str(v) for k, v in names.items() if v is not None
            },
        )

    def has_last_message(self) -> bool:
        return bool(self.last_message) and bool(self.last_message_sender_id)

    def last_message_signature(self) -> Optional[tuple[str, str, str]]:
        """Identity of the latest message, or None when there is none."""
        if not self.has_last_message():
            return None
        return (
            self.last_message_sender_id or "",
            self.last_message or "",
            self.last_message_at or "",
        )

    def other_participant(self, sender_id: str) -> Optional[str]:
        """
        Return the single participant that is not the sender.

        Requires exactly two distinct participants with the sender among
        them; anything else yields None.
        """
        distinct = list(dict.fromkeys(p for p in self.participants if p))
        if len(distinct) != 2 or sender_id not in distinct:
            return None
        others = [p for p in distinct if p != sender_id]
        return others[0] if len(others) == 1 else None


class ChangeKind(str, Enum):
    """Kind of a conversation change notification (Postgres change type)."""

    ADDED = "INSERT"
    MODIFIED = "UPDATE"
    REMOVED = "DELETE"


class ConversationChange(BaseModel):
    """One change notification on the conversations table."""

    kind: ChangeKind
    record: ConversationRecord
    previous: Optional[ConversationRecord] = None  # old row, when the store sends it


# ======================================================================
# Composed notification
# ======================================================================

class NotificationPayload(BaseModel):
    """Push content for one device. Built fresh per dispatch, never persisted."""

    title: str
    body: str
    metadata: dict[str, str] = Field(default_factory=dict)
    target_address: str


# ======================================================================
# Results
# ======================================================================

class DispatchResult(BaseModel):
    """Outcome of one dispatch attempt."""

    outcome: DispatchOutcome
    reason: Optional[str] = None
    gateway_message_id: Optional[str] = None
    failure: Optional[FailureKind] = None

    @classmethod
    def sent(cls, gateway_message_id: Optional[str]) -> "DispatchResult":
        return cls(outcome=DispatchOutcome.SENT, gateway_message_id=gateway_message_id)

    @classmethod
    def skipped(cls, reason: SkipReason) -> "DispatchResult":
        return cls(outcome=DispatchOutcome.SKIPPED, reason=reason.value)

    @classmethod
    def failed(cls, failure: FailureKind, reason: str) -> "DispatchResult":
        return cls(outcome=DispatchOutcome.FAILED, reason=reason, failure=failure)

    @property
    def is_sent(self) -> bool:
        return self.outcome is DispatchOutcome.SENT


class DeliveryRecord(BaseModel):
    """History row for a Sent dispatch (read receipts / notification list)."""

    sender_id: str
    receiver_id: str
    chat_id: str = ""
    title: str
    body: str
    notification_id: Optional[str] = None
    gateway_message_id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_dispatch(
        cls,
        event: MessageEvent,
        payload: NotificationPayload,
        result: DispatchResult,
    ) -> "DeliveryRecord":
        return cls(
            sender_id=event.sender_id or "",
            receiver_id=event.receiver_id or "",
            chat_id=event.chat_id or "",
            title=payload.title,
            body=payload.body,
            notification_id=event.notification_id or None,
            gateway_message_id=result.gateway_message_id,
        )

    def to_row(self) -> dict[str, Any]:
        """Serialize for insertion into the notifications table."""
        return {
            "type": "message",
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "chat_id": self.chat_id,
            "title": self.title,
            "body": self.body,
            "notification_id": self.notification_id,
            "gateway_message_id": self.gateway_message_id,
            "read": False,
            "created_at": self.created_at.isoformat(),
        }
