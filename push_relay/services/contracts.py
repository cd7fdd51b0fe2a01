"""Contracts for the external collaborators of the dispatch pipeline."""

from __future__ import annotations

from typing import AsyncIterator, Optional, Protocol

from push_relay.models.dispatch import (
    ConversationChange,
    DeliveryRecord,
    DispatchResult,
    NotificationPayload,
    UserRecord,
)


class UserDirectory(Protocol):
    """Read-only lookup of users by id."""

    async def resolve(self, user_id: str) -> UserRecord:
        """Return the user record, or raise UserNotFoundError / LookupFailedError."""

    async def display_name(self, user_id: str) -> Optional[str]:
        """Return the user's display name, or None on any failure."""


class PushGateway(Protocol):
    """Delivery contract for the push service."""

    async def send(self, payload: NotificationPayload) -> DispatchResult:
        """Send one notification. Never raises for gateway rejections."""


class HistoryStore(Protocol):
    """Append-only store of delivery records."""

    async def append(self, record: DeliveryRecord) -> None:
        """Persist one record, or raise HistoryWriteFailedError."""


class ChangeStream(Protocol):
    """A subscription to conversation change notifications."""

    async def connect(self) -> None:
        ...

    def changes(self) -> AsyncIterator[ConversationChange]:
        """Yield changes until the stream fails (raises) or ends."""

    async def close(self) -> None:
        ...

