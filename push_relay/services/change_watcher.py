"""
Change Watcher — Dispatches notifications from conversation changes.

Alternative trigger to the /send-notification endpoint: instead of the
sending client calling the relay, the relay subscribes to changes on the
conversations table and notices new messages itself. A deployment runs one
trigger or the other, never both (see validate_trigger_modes).

State machine:

    DISCONNECTED -> CONNECTING -> STREAMING -> (stream error/end) -> DISCONNECTED

After a disconnect the watcher sleeps a fixed reconnect delay (5 s by
default) and connects again, forever. The last observed message of each
conversation is remembered across reconnects, so a replayed row is not
notified a second time.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from supabase import AsyncClient, acreate_client

from push_relay.core.config import Settings, validate_supabase_config
from push_relay.core.errors import ChangeStreamError, InvalidRequestError
from push_relay.models.dispatch import (
    ChangeKind,
    ConversationChange,
    ConversationRecord,
    DispatchResult,
    MessageEvent,
    SkipReason,
)
from push_relay.services.contracts import ChangeStream
from push_relay.services.coordinator import DispatchCoordinator

logger = logging.getLogger(__name__)

CONVERSATIONS_TABLE = "conversations"
DEFAULT_RECONNECT_DELAY = 5.0


class WatcherState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    STREAMING = "streaming"


# ===================================================================
# Watcher
# ===================================================================

class ChangeWatcher:
    """Turns conversation changes into dispatches."""

    def __init__(
        self,
        *,
        stream: ChangeStream,
        coordinator: DispatchCoordinator,
        reconnect_delay_seconds: float = DEFAULT_RECONNECT_DELAY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._stream = stream
        self._coordinator = coordinator
        self._reconnect_delay = reconnect_delay_seconds
        self._sleep = sleep
        self._last_seen: dict[str, tuple[str, str, str]] = {}
        self._pending: set[asyncio.Task] = set()
        self._stopping = False
        self.state = WatcherState.DISCONNECTED
        self.connect_attempts = 0

    def stop(self) -> None:
        """Ask run() to exit after the current connection ends."""
        self._stopping = True

    async def run(self) -> None:
        """Connect, stream and reconnect until stop() is called or the task is cancelled."""
        while not self._stopping:
            self._set_state(WatcherState.CONNECTING)
            self.connect_attempts += 1
            try:
                await self._stream.connect()
                self._set_state(WatcherState.STREAMING)
                async for change in self._stream.changes():
                    self._spawn(change)
                    if self._stopping:
                        break
                else:
                    logger.warning("Conversation change stream ended")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Conversation change stream failed: %s", exc)
            finally:
                await self._close_stream()
                self._set_state(WatcherState.DISCONNECTED)

            if self._stopping:
                break

            logger.info("Reconnecting to conversation changes in %.1fs", self._reconnect_delay)
            await self._sleep(self._reconnect_delay)

    async def drain(self) -> None:
        """Wait for dispatches started by the stream to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def handle_change(self, change: ConversationChange) -> Optional[DispatchResult]:
        """
        Process one change notification.

        Returns:
            None when the change is not a new message, Skipped(no-receiver)
            when no receiver can be derived, otherwise the dispatch result.
        """
        if not self.is_new_message(change):
            return None

        event = self.derive_event(change.record)
        if event is None:
            logger.info(
                "Conversation %s has no single receiver for sender %s — skipping",
                change.record.conversation_id, (change.record.last_message_sender_id or "")[:8],
            )
            return DispatchResult.skipped(SkipReason.NO_RECEIVER)

        try:
            return await self._coordinator.dispatch(event)
        except InvalidRequestError as exc:
            logger.warning(
                "Conversation %s produced an invalid event: %s",
                change.record.conversation_id, exc,
            )
            return None

    def is_new_message(self, change: ConversationChange) -> bool:
        """
        Decide whether a change carries a message not yet notified.

        Only Added/Modified changes whose row has both last_message and
        last_message_sender_id count, and only when that message differs
        from the previous row (if the store sent it) and from the last
        message this watcher observed for the conversation.
        """
        conversation_id = change.record.conversation_id

        if change.kind is ChangeKind.REMOVED:
            self._last_seen.pop(conversation_id, None)
            return False

        signature = change.record.last_message_signature()
        if signature is None:
            return False

        if change.previous is not None and change.previous.last_message_signature() == signature:
            self._last_seen[conversation_id] = signature
            return False

        if self._last_seen.get(conversation_id) == signature:
            return False

        self._last_seen[conversation_id] = signature
        return True

    @staticmethod
    def derive_event(record: ConversationRecord) -> Optional[MessageEvent]:
        """Synthesize the MessageEvent for a conversation's last message."""
        sender_id = record.last_message_sender_id or ""
        receiver_id = record.other_participant(sender_id)
        if receiver_id is None:
            return None

        return MessageEvent(
            sender_id=sender_id,
            receiver_id=receiver_id,
            message_text=record.last_message,
            chat_id=record.conversation_id,
            sender_name=record.participant_names.get(sender_id),
        )

    def _spawn(self, change: ConversationChange) -> None:
        # New-message detection runs synchronously at the start of the task,
        # so tasks started in stream order observe changes in stream order.
        task = asyncio.create_task(self._handle_logged(change))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _handle_logged(self, change: ConversationChange) -> None:
        try:
            await self.handle_change(change)
        except Exception as exc:
            logger.error(
                "Dispatch for conversation %s failed: %s",
                change.record.conversation_id, exc, exc_info=True,
            )

    async def _close_stream(self) -> None:
        try:
            await self._stream.close()
        except Exception as exc:
            logger.warning("Error closing conversation change stream: %s", exc)

    def _set_state(self, state: WatcherState) -> None:
        if state is not self.state:
            logger.debug("Change watcher %s -> %s", self.state.value, state.value)
        self.state = state


# ===================================================================
# Supabase Realtime stream
# ===================================================================

_FAILED_SUBSCRIBE_STATES = {"CHANNEL_ERROR", "TIMED_OUT", "CLOSED"}


def parse_postgres_change(payload: dict[str, Any]) -> Optional[ConversationChange]:
    """
    Convert a Supabase Realtime postgres_changes payload to a ConversationChange.

    Accepts both the wrapped form ({"data": {...}}) and the bare form, and
    both key spellings for the rows (record/old_record, new/old).
    Returns None for payloads without a recognised change type.
    """
    data = payload.get("data", payload) if isinstance(payload, dict) else {}
    change_type = str(data.get("type") or data.get("eventType") or "").upper()
    try:
        kind = ChangeKind(change_type)
    except ValueError:
        return None

    new_row = data.get("record") or data.get("new") or {}
    old_row = data.get("old_record") or data.get("old") or {}

    if kind is ChangeKind.REMOVED:
        record = ConversationRecord.from_row(old_row or new_row)
        return ConversationChange(kind=kind, record=record)

    # Without REPLICA IDENTITY FULL the old row only carries the primary key.
    previous = None
    if "last_message" in old_row or "last_message_sender_id" in old_row:
        previous = ConversationRecord.from_row(old_row)

    return ConversationChange(
        kind=kind,
        record=ConversationRecord.from_row(new_row),
        previous=previous,
    )


class _StreamFailure:
    def __init__(self, reason: str):
        self.reason = reason


class SupabaseConversationStream:
    """ChangeStream over Supabase Realtime postgres_changes on conversations."""

    def __init__(
        self,
        settings: Settings,
        *,
        table: str = CONVERSATIONS_TABLE,
        schema: str = "public",
        client_factory: Callable[[str, str], Awaitable[AsyncClient]] = acreate_client,
    ):
        self._settings = settings
        self._table = table
        self._schema = schema
        self._client_factory = client_factory
        self._client: Optional[AsyncClient] = None
        self._channel = None
        self._queue: asyncio.Queue = asyncio.Queue()

    async def connect(self) -> None:
        validate_supabase_config(self._settings)
        self._queue = asyncio.Queue()

        if self._client is None:
            self._client = await self._client_factory(
                self._settings.supabase_url,
                self._settings.supabase_service_role_key,
            )

        channel = self._client.channel(f"push-relay-{self._table}")
        channel.on_postgres_changes(
            "*",
            schema=self._schema,
            table=self._table,
            callback=self._on_change,
        )
        await channel.subscribe(self._on_subscribe_state)
        self._channel = channel
        logger.info("Subscribed to %s.%s changes", self._schema, self._table)

    async def changes(self):
        while True:
            item = await self._queue.get()
            if isinstance(item, _StreamFailure):
                raise ChangeStreamError(item.reason)
            try:
                change = parse_postgres_change(item)
            except (ValueError, TypeError, AttributeError) as exc:
                # One bad row must not tear down the subscription
                logger.warning("Skipping malformed %s change: %s", self._table, exc)
                continue
            if change is not None:
                yield change

    async def close(self) -> None:
        channel, self._channel = self._channel, None
        if channel is not None and self._client is not None:
            await self._client.remove_channel(channel)

    def _on_change(self, payload: dict[str, Any]) -> None:
        self._queue.put_nowait(payload)

    def _on_subscribe_state(self, state: Any, error: Optional[Exception] = None) -> None:
        name = str(getattr(state, "value", state)).upper()
        if name in _FAILED_SUBSCRIBE_STATES:
            self._queue.put_nowait(_StreamFailure(f"subscription {name.lower()}: {error or 'no detail'}"))
