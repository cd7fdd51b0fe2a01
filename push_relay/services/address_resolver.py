"""
Address Resolver — Looks up a user's push-delivery address.

Reads the users table in Supabase. The Supabase client is synchronous, so
each query runs in a worker thread and is bounded by the lookup timeout;
a timed-out or failed query surfaces as LookupFailedError. There are no
internal retries: the caller decides what to do with a failed lookup.
"""

import asyncio
import logging
from typing import Optional

from supabase import Client

from push_relay.core.errors import DispatchError, LookupFailedError, UserNotFoundError
from push_relay.models.dispatch import UserRecord

logger = logging.getLogger(__name__)

USERS_TABLE = "users"
USER_COLUMNS = "id, fcm_token, display_name"


class AddressResolver:
    """Resolves user ids to UserRecords against the Supabase users table."""

    def __init__(self, client: Client, *, timeout_seconds: float = 5.0):
        self._client = client
        self._timeout_seconds = timeout_seconds

    async def resolve(self, user_id: str) -> UserRecord:
        """
        Look up a user and their FCM token.

        Returns:
            UserRecord. push_address is None when the user has no token.

        Raises:
            UserNotFoundError: No row exists for user_id.
            LookupFailedError: The query failed or timed out.
        """
        rows = await self._fetch_user_rows(user_id)

        if not rows:
            raise UserNotFoundError(user_id)

        row = rows[0]
        return UserRecord(
            user_id=str(row.get("id") or user_id),
            push_address=row.get("fcm_token") or None,
            display_name=row.get("display_name") or None,
        )

    async def display_name(self, user_id: str) -> Optional[str]:
        """Best-effort display name lookup. Any failure yields None."""
        try:
            record = await self.resolve(user_id)
        except DispatchError as exc:
            logger.debug("Display name lookup failed for %s: %s", user_id[:8], exc)
            return None
        return record.display_name

    async def _fetch_user_rows(self, user_id: str) -> list[dict]:
        query = (
            self._client.table(USERS_TABLE)
            .select(USER_COLUMNS)
            .eq("id", user_id)
        )

        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(query.execute),
                timeout=self._timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise LookupFailedError(
                f"user lookup timed out after {self._timeout_seconds}s"
            ) from exc
        except Exception as exc:
            raise LookupFailedError(str(exc)) from exc

        return result.data or []
