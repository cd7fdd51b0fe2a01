"""
Delivery Logger — Best-effort notification history.

After a successful send, a DeliveryRecord is appended to the notifications
table so clients can show history and read receipts. The append runs as a
detached task: the dispatch result is returned without waiting for it, and
a failed append is logged at warning level and kept in a bounded
side-channel list (recent_failures). It never changes a dispatch result
and is never retried.
"""

import asyncio
import logging
from collections import deque

from supabase import Client

from push_relay.core.errors import HistoryWriteFailedError
from push_relay.models.dispatch import DeliveryRecord
from push_relay.services.contracts import HistoryStore

logger = logging.getLogger(__name__)

HISTORY_TABLE = "notifications"
MAX_RECORDED_FAILURES = 100


class SupabaseHistoryStore:
    """Appends delivery records to the Supabase notifications table."""

    def __init__(self, client: Client, *, timeout_seconds: float = 5.0):
        self._client = client
        self._timeout_seconds = timeout_seconds

    async def append(self, record: DeliveryRecord) -> None:
        insert = self._client.table(HISTORY_TABLE).insert(record.to_row())
        try:
            await asyncio.wait_for(
                asyncio.to_thread(insert.execute),
                timeout=self._timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise HistoryWriteFailedError(
                f"history write timed out after {self._timeout_seconds}s"
            ) from exc
        except Exception as exc:
            raise HistoryWriteFailedError(str(exc)) from exc


class DeliveryLogger:
    """Fire-and-forget writer in front of a HistoryStore."""

    def __init__(self, store: HistoryStore, *, max_recorded_failures: int = MAX_RECORDED_FAILURES):
        self._store = store
        self._pending: set[asyncio.Task] = set()
        self.recent_failures: deque[HistoryWriteFailedError] = deque(maxlen=max_recorded_failures)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def log_best_effort(self, record: DeliveryRecord) -> None:
        """Schedule the append and return immediately."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as exc:
            # No running event loop: nothing can carry the write.
            self._record_failure(HistoryWriteFailedError(str(exc)), record)
            return

        task = loop.create_task(self._write(record))

        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for outstanding writes (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _write(self, record: DeliveryRecord) -> None:
        try:
            await self._store.append(record)
        except HistoryWriteFailedError as exc:
            self._record_failure(exc, record)
        except Exception as exc:
            self._record_failure(HistoryWriteFailedError(str(exc)), record)
        else:
            logger.debug(
                "Delivery record stored: receiver=%s..., notification_id=%s",
                record.receiver_id[:8], record.notification_id,
            )

    def _record_failure(self, exc: HistoryWriteFailedError, record: DeliveryRecord) -> None:
        self.recent_failures.append(exc)
        logger.warning(
            "Failed to store delivery record for receiver %s... (notification_id=%s): %s",
            record.receiver_id[:8], record.notification_id, exc,
        )
