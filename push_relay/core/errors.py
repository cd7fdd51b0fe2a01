"""
Dispatch Errors — Exception taxonomy for the notification relay.

Maps each failure class of a dispatch to the layer that handles it:

- InvalidRequestError: caller error, surfaced as HTTP 400.
- UserNotFoundError: receiver unresolvable, becomes Skipped(user-not-found).
- LookupFailedError: user directory unavailable, becomes Failed(lookup_failed).
- SendFailedError: push gateway rejection, becomes Failed(send_failed).
- HistoryWriteFailedError: delivery history append failed, never surfaced.
- ConfigurationError: invalid deployment configuration, raised at startup.
"""


class DispatchError(Exception):
    """Base class for all dispatch failures."""


class InvalidRequestError(DispatchError, ValueError):
    """A trigger is missing required fields or is self-addressed."""


class UserNotFoundError(DispatchError):
    """No user record exists for the requested user id."""

    def __init__(self, user_id: str):
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class LookupFailedError(DispatchError):
    """The user directory could not be queried (error or timeout)."""


class SendFailedError(DispatchError):
    """The push gateway rejected or failed to accept a message."""

    def __init__(self, reason: str, status_code: int | None = None):
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


class HistoryWriteFailedError(DispatchError):
    """A delivery record could not be appended to the history store."""


class ChangeStreamError(DispatchError):
    """The conversation change stream reported a subscription failure."""


class ConfigurationError(EnvironmentError):
    """The deployment configuration is invalid or incomplete."""
