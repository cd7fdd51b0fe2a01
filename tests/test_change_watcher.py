"""
Verification: Conversation Change Watcher

Tests that:
1. A change with last_message + last_message_sender_id dispatches to the other participant
2. Conversations without exactly one other participant are Skipped(no-receiver)
3. Changes without a last message, deletes, and unchanged messages do not dispatch
4. Messages replayed after a reconnect are not dispatched twice
5. The run loop walks DISCONNECTED -> CONNECTING -> STREAMING and reconnects
   after the fixed delay when the stream fails or ends
6. Supabase Realtime payloads are parsed into ConversationChanges
7. SupabaseConversationStream surfaces subscription failures as stream errors

Run with: pytest tests/test_change_watcher.py -v
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from push_relay.core.config import Settings
from push_relay.core.errors import ChangeStreamError
from push_relay.models.dispatch import (
    ChangeKind,
    ConversationChange,
    ConversationRecord,
    DispatchOutcome,
    DispatchResult,
    SkipReason,
)
from push_relay.services.change_watcher import (
    ChangeWatcher,
    SupabaseConversationStream,
    WatcherState,
    parse_postgres_change,
)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

def _conversation(**overrides) -> ConversationRecord:
    values = {
        "conversation_id": "conv-1",
        "participants": ["u1", "u2"],
        "last_message": "hi",
        "last_message_sender_id": "u1",
        "last_message_at": "2024-05-01T12:00:00+00:00",
        "participant_names": {"u1": "Alice", "u2": "Bob"},
    }
    values.update(overrides)
    return ConversationRecord(**values)


def _change(kind: ChangeKind = ChangeKind.MODIFIED, previous=None, **overrides) -> ConversationChange:
    return ConversationChange(kind=kind, record=_conversation(**overrides), previous=previous)


def _coordinator() -> MagicMock:
    coordinator = MagicMock()
    coordinator.dispatch = AsyncMock(return_value=DispatchResult.sent("projects/p/messages/1"))
    return coordinator


class FakeStream:
    """ChangeStream fake: each session is a list of changes or an exception."""

    def __init__(self, sessions):
        self._sessions = list(sessions)
        self._current = []
        self.connects = 0
        self.closes = 0
        self.states_seen = []

    async def connect(self):
        self.connects += 1
        session = self._sessions.pop(0)
        if isinstance(session, Exception):
            raise session
        self._current = session

    async def changes(self):
        for change in self._current:
            yield change

    async def close(self):
        self.closes += 1


# ===================================================================
# Test Class: new-message detection and receiver derivation
# ===================================================================

class TestHandleChange:

    @pytest.mark.asyncio
    async def test_dispatches_to_other_participant(self):
        coordinator = _coordinator()
        watcher = ChangeWatcher(stream=FakeStream([]), coordinator=coordinator)

        result = await watcher.handle_change(_change())

        assert result.outcome is DispatchOutcome.SENT
        event = coordinator.dispatch.call_args[0][0]
        assert event.sender_id == "u1"
        assert event.receiver_id == "u2"
        assert event.message_text == "hi"
        assert event.chat_id == "conv-1"
        assert event.sender_name == "Alice"

    @pytest.mark.asyncio
    async def test_added_change_dispatches(self):
        coordinator = _coordinator()
        watcher = ChangeWatcher(stream=FakeStream([]), coordinator=coordinator)

        await watcher.handle_change(_change(kind=ChangeKind.ADDED))

        coordinator.dispatch.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_single_participant_is_skipped(self):
        coordinator = _coordinator()
        watcher = ChangeWatcher(stream=FakeStream([]), coordinator=coordinator)

        result = await watcher.handle_change(_change(participants=["u1"]))

        assert result.outcome is DispatchOutcome.SKIPPED
        assert result.reason == SkipReason.NO_RECEIVER.value
        coordinator.dispatch.assert_not_called()

    @pytest.mark.asyncio
    async def test_sender_outside_participants_is_skipped(self):
        coordinator = _coordinator()
        watcher = ChangeWatcher(stream=FakeStream([]), coordinator=coordinator)

        result = await watcher.handle_change(_change(last_message_sender_id="u9"))

        assert result.reason == "no-receiver"
        coordinator.dispatch.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_last_message_is_ignored(self):
        coordinator = _coordinator()
        watcher = ChangeWatcher(stream=FakeStream([]), coordinator=coordinator)

        assert await watcher.handle_change(_change(last_message=None)) is None
        assert await watcher.handle_change(_change(last_message_sender_id=None)) is None
        coordinator.dispatch.assert_not_called()

    @pytest.mark.asyncio
    async def test_removed_change_is_ignored(self):
        coordinator = _coordinator()
        watcher = ChangeWatcher(stream=FakeStream([]), coordinator=coordinator)

        assert await watcher.handle_change(_change(kind=ChangeKind.REMOVED)) is None
        coordinator.dispatch.assert_not_called()

    @pytest.mark.asyncio
    async def test_same_message_observed_twice_dispatches_once(self):
        coordinator = _coordinator()
        watcher = ChangeWatcher(stream=FakeStream([]), coordinator=coordinator)

        await watcher.handle_change(_change())
        await watcher.handle_change(_change(participant_names={"u1": "Alice A."}))

        assert coordinator.dispatch.await_count == 1

    @pytest.mark.asyncio
    async def test_unchanged_previous_row_is_ignored(self):
        coordinator = _coordinator()
        watcher = ChangeWatcher(stream=FakeStream([]), coordinator=coordinator)

        result = await watcher.handle_change(_change(previous=_conversation()))

        assert result is None
        coordinator.dispatch.assert_not_called()

    @pytest.mark.asyncio
    async def test_new_message_after_previous_dispatches(self):
        coordinator = _coordinator()
        watcher = ChangeWatcher(stream=FakeStream([]), coordinator=coordinator)

        await watcher.handle_change(_change())
        await watcher.handle_change(
            _change(
                last_message="see you",
                last_message_sender_id="u2",
                last_message_at="2024-05-01T12:01:00+00:00",
            )
        )

        assert coordinator.dispatch.await_count == 2
        reply = coordinator.dispatch.call_args[0][0]
        assert (reply.sender_id, reply.receiver_id) == ("u2", "u1")

    @pytest.mark.asyncio
    async def test_repeated_text_with_new_timestamp_dispatches(self):
        coordinator = _coordinator()
        watcher = ChangeWatcher(stream=FakeStream([]), coordinator=coordinator)

        await watcher.handle_change(_change(last_message="ok"))
        await watcher.handle_change(
            _change(last_message="ok", last_message_at="2024-05-01T12:05:00+00:00")
        )

        assert coordinator.dispatch.await_count == 2


# ===================================================================
# Test Class: run loop / state machine
# ===================================================================

class TestRunLoop:

    @pytest.mark.asyncio
    async def test_reconnects_after_failure_with_fixed_delay(self):
        coordinator = _coordinator()
        stream = FakeStream([ConnectionError("socket closed"), [_change()]])
        sleeps = []

        async def _sleep(delay):
            sleeps.append(delay)
            if len(sleeps) >= 2:
                watcher.stop()

        watcher = ChangeWatcher(stream=stream, coordinator=coordinator, sleep=_sleep)
        await watcher.run()
        await watcher.drain()

        assert sleeps == [5.0, 5.0]
        assert stream.connects == 2
        assert stream.closes == 2
        assert watcher.connect_attempts == 2
        assert watcher.state is WatcherState.DISCONNECTED
        coordinator.dispatch.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_replayed_rows_after_reconnect_not_dispatched_again(self):
        coordinator = _coordinator()
        stream = FakeStream([[_change()], [_change(kind=ChangeKind.ADDED)]])
        sleeps = []

        async def _sleep(delay):
            sleeps.append(delay)
            if len(sleeps) >= 2:
                watcher.stop()

        watcher = ChangeWatcher(
            stream=stream, coordinator=coordinator, reconnect_delay_seconds=0.5, sleep=_sleep,
        )
        await watcher.run()
        await watcher.drain()

        assert sleeps == [0.5, 0.5]
        assert coordinator.dispatch.await_count == 1

    @pytest.mark.asyncio
    async def test_dispatch_error_does_not_stop_stream(self):
        coordinator = _coordinator()
        coordinator.dispatch.side_effect = [
            RuntimeError("unexpected"),
            DispatchResult.sent("m2"),
        ]
        second = _change(conversation_id="conv-2")
        stream = FakeStream([[_change(), second]])

        async def _sleep(delay):
            watcher.stop()

        watcher = ChangeWatcher(stream=stream, coordinator=coordinator, sleep=_sleep)
        await watcher.run()
        await watcher.drain()

        assert coordinator.dispatch.await_count == 2

    @pytest.mark.asyncio
    async def test_state_is_streaming_while_connected(self):
        states = []

        class ObservingStream(FakeStream):
            async def changes(self):
                states.append(watcher.state)
                for change in self._current:
                    yield change

        stream = ObservingStream([[]])

        async def _sleep(delay):
            watcher.stop()

        watcher = ChangeWatcher(stream=stream, coordinator=_coordinator(), sleep=_sleep)
        assert watcher.state is WatcherState.DISCONNECTED

        await watcher.run()

        assert states == [WatcherState.STREAMING]
        assert watcher.state is WatcherState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_close_error_is_tolerated(self):
        stream = FakeStream([[]])
        stream.close = AsyncMock(side_effect=RuntimeError("already closed"))

        async def _sleep(delay):
            watcher.stop()

        watcher = ChangeWatcher(stream=stream, coordinator=_coordinator(), sleep=_sleep)
        await watcher.run()

        assert watcher.state is WatcherState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        class HangingStream(FakeStream):
            async def changes(self):
                await asyncio.sleep(10)
                yield  # pragma: no cover

        watcher = ChangeWatcher(stream=HangingStream([[]]), coordinator=_coordinator())
        task = asyncio.create_task(watcher.run())
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert watcher.state is WatcherState.DISCONNECTED


# ===================================================================
# Test Class: Supabase Realtime payloads
# ===================================================================

class TestParsePostgresChange:

    def test_update_payload(self):
        payload = {
            "data": {
                "type": "UPDATE",
                "table": "conversations",
                "record": {
                    "id": "conv-1",
                    "participants": ["u1", "u2"],
                    "last_message": "hi",
                    "last_message_sender_id": "u1",
                    "participant_names": {"u1": "Alice", "u2": None},
                },
                "old_record": {"id": "conv-1"},
            },
            "ids": [1],
        }
        change = parse_postgres_change(payload)

        assert change.kind is ChangeKind.MODIFIED
        assert change.record.conversation_id == "conv-1"
        assert change.record.participant_names == {"u1": "Alice"}
        assert change.previous is None

    def test_update_with_full_old_row(self):
        payload = {
            "data": {
                "type": "UPDATE",
                "record": {"id": "c", "last_message": "new", "last_message_sender_id": "u1"},
                "old_record": {"id": "c", "last_message": "old", "last_message_sender_id": "u2"},
            }
        }
        change = parse_postgres_change(payload)
        assert change.previous.last_message == "old"

    def test_insert_payload_bare_form(self):
        change = parse_postgres_change(
            {"eventType": "INSERT", "new": {"id": "c", "participants": None}, "old": {}}
        )
        assert change.kind is ChangeKind.ADDED
        assert change.record.participants == []

    def test_delete_uses_old_row(self):
        change = parse_postgres_change(
            {"data": {"type": "DELETE", "record": None, "old_record": {"id": "gone"}}}
        )
        assert change.kind is ChangeKind.REMOVED
        assert change.record.conversation_id == "gone"

    def test_unknown_type_is_none(self):
        assert parse_postgres_change({"data": {"type": "TRUNCATE"}}) is None

    def test_non_dict_participant_names_ignored(self):
        change = parse_postgres_change(
            {"data": {"type": "UPDATE", "record": {"id": "c", "participant_names": ["oops"]}}}
        )
        assert change.record.participant_names == {}


class TestSupabaseConversationStream:

    def _stream(self):
        channel = MagicMock()
        channel.on_postgres_changes.return_value = channel
        channel.subscribe = AsyncMock(return_value=channel)

        client = MagicMock()
        client.channel.return_value = channel
        client.remove_channel = AsyncMock()

        factory = AsyncMock(return_value=client)
        settings = Settings(supabase_url="https://x.supabase.co", supabase_service_role_key="key")
        return SupabaseConversationStream(settings, client_factory=factory), client, channel, factory

    @pytest.mark.asyncio
    async def test_connect_subscribes_to_conversations(self):
        stream, client, channel, factory = self._stream()

        await stream.connect()

        factory.assert_awaited_once_with("https://x.supabase.co", "key")
        kwargs = channel.on_postgres_changes.call_args[1]
        assert kwargs["table"] == "conversations"
        assert kwargs["schema"] == "public"
        channel.subscribe.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_changes_yield_parsed_payloads(self):
        stream, _, _, _ = self._stream()
        await stream.connect()

        stream._on_change({"data": {"type": "INSERT", "record": {"id": "c1"}}})
        changes = stream.changes()
        change = await changes.__anext__()

        assert change.record.conversation_id == "c1"

    @pytest.mark.asyncio
    async def test_channel_error_raises_stream_error(self):
        stream, _, _, _ = self._stream()
        await stream.connect()

        stream._on_subscribe_state("CHANNEL_ERROR", RuntimeError("jwt expired"))

        with pytest.raises(ChangeStreamError, match="jwt expired"):
            await stream.changes().__anext__()

    @pytest.mark.asyncio
    async def test_subscribed_state_is_not_an_error(self):
        stream, _, _, _ = self._stream()
        await stream.connect()

        stream._on_subscribe_state("SUBSCRIBED", None)
        stream._on_change({"data": {"type": "INSERT", "record": {"id": "c2"}}})

        change = await stream.changes().__anext__()
        assert change.record.conversation_id == "c2"

    @pytest.mark.asyncio
    async def test_close_removes_channel(self):
        stream, client, channel, _ = self._stream()
        await stream.connect()

        await stream.close()
        await stream.close()

        client.remove_channel.assert_awaited_once_with(channel)

    @pytest.mark.asyncio
    async def test_malformed_row_is_skipped_not_fatal(self):
        stream, _, _, _ = self._stream()
        await stream.connect()

        stream._on_change(
            {"data": {"type": "UPDATE", "record": {"id": "bad", "last_message": {"nested": 1}}}}
        )
        stream._on_change(
            {"data": {"type": "UPDATE", "record": {"id": "bad-2", "participants": 7}}}
        )
        stream._on_change({"data": {"type": "INSERT", "record": {"id": "good"}}})

        change = await stream.changes().__anext__()

        assert change.record.conversation_id == "good"
