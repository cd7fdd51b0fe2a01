"""
FCM Push Gateway — Firebase Cloud Messaging delivery.

Handles OAuth2 service-account authentication with Google and sends
push notifications through the FCM HTTP v1 API.

FCM requires:
1. A Google service-account key (JSON) for the Firebase project
2. An OAuth2 access token for the firebase.messaging scope (google-auth)
3. POST to https://fcm.googleapis.com/v1/projects/{project}/messages:send

Every message carries fixed high-priority delivery hints (sound, default
vibration, high priority on Android, apns-priority 10 on iOS) so that it
wakes a backgrounded chat client.
"""

import asyncio
import base64
import binascii
import json
import logging
from pathlib import Path
from typing import Any, Optional

import google.auth.exceptions
import httpx
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account

from push_relay.core.config import Settings
from push_relay.core.errors import ConfigurationError, SendFailedError
from push_relay.models.dispatch import DispatchResult, FailureKind, NotificationPayload

logger = logging.getLogger(__name__)

# FCM endpoint and OAuth scope
FCM_SEND_URL_TEMPLATE = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"
FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"

CLICK_ACTION = "FLUTTER_NOTIFICATION_CLICK"
TOKEN_LOG_PREFIX = 20


# ===================================================================
# Service Account Loading
# ===================================================================

def load_service_account(settings: Settings) -> dict[str, Any]:
    """
    Load the Firebase service-account key.

    Sources, in order:
    1. FIREBASE_SERVICE_ACCOUNT — raw JSON
    2. FIREBASE_SERVICE_ACCOUNT_BASE64 — base64-encoded JSON
    3. FIREBASE_SERVICE_ACCOUNT_PATH — local file (development only)

    Raises:
        ConfigurationError: If no source is set or the key cannot be parsed.
    """
    if settings.firebase_service_account:
        logger.info("Loading Firebase credentials from environment variable")
        try:
            return json.loads(settings.firebase_service_account)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(
                f"FIREBASE_SERVICE_ACCOUNT is not valid JSON: {exc}"
            ) from exc

    if settings.firebase_service_account_base64:
        logger.info("Loading Firebase credentials from Base64")
        try:
            decoded = base64.b64decode(settings.firebase_service_account_base64)
            return json.loads(decoded)
        except (binascii.Error, ValueError) as exc:
            raise ConfigurationError(
                f"FIREBASE_SERVICE_ACCOUNT_BASE64 could not be decoded: {exc}"
            ) from exc

    key_path = Path(settings.firebase_service_account_path)
    logger.info("Loading Firebase credentials from local file %s", key_path)
    if not key_path.exists():
        raise ConfigurationError(
            f"Firebase service account file not found: {key_path}. "
            "Set FIREBASE_SERVICE_ACCOUNT or FIREBASE_SERVICE_ACCOUNT_BASE64."
        )
    try:
        return json.loads(key_path.read_text())
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"{key_path} is not valid JSON: {exc}") from exc


# ===================================================================
# OAuth2 Access Token
# ===================================================================

class FcmCredentials:
    """
    OAuth2 access tokens for the FCM HTTP v1 API.

    Wraps google-auth service-account credentials. google-auth signs the
    JWT-bearer assertion, exchanges it and tracks expiry; this class only
    moves the blocking refresh off the event loop and lets the gateway
    force a refresh after FCM rejects the token (401).
    """

    def __init__(self, info: dict[str, Any], *, project_id: str = ""):
        for field in ("client_email", "private_key"):
            if not info.get(field):
                raise ConfigurationError(f"Firebase service account is missing '{field}'")

        try:
            self._credentials = service_account.Credentials.from_service_account_info(
                info, scopes=[FCM_SCOPE]
            )
        except ValueError as exc:
            raise ConfigurationError(f"Firebase service account is invalid: {exc}") from exc

        self.project_id = project_id or info.get("project_id", "")
        if not self.project_id:
            raise ConfigurationError(
                "FCM project id unknown: set FCM_PROJECT_ID or use a key with project_id."
            )

        self._stale = False
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "FcmCredentials":
        info = load_service_account(settings)
        credentials = cls(info, project_id=settings.fcm_project_id)
        logger.info("FCM credentials loaded (project=%s)", credentials.project_id)
        return credentials

    async def access_token(self) -> str:
        """
        Return the current access token, refreshing it when expired or invalidated.

        Raises:
            SendFailedError: If Google rejects the service account.
        """
        async with self._lock:
            if self._stale or not self._credentials.valid:
                try:
                    await asyncio.to_thread(self._credentials.refresh, GoogleAuthRequest())
                except google.auth.exceptions.RefreshError as exc:
                    raise SendFailedError(f"oauth_token_request_failed: {exc}") from exc
                self._stale = False
                logger.debug("Refreshed FCM access token (project=%s)", self.project_id)
            return self._credentials.token

    def invalidate(self) -> None:
        """Force a refresh on the next access_token() call."""
        self._stale = True


# ===================================================================
# Message Builder
# ===================================================================

def build_fcm_message(payload: NotificationPayload, *, android_channel_id: str) -> dict:
    """
    Build the FCM v1 message body for a composed payload.

    The Android and APNs blocks are fixed: high priority, default sound and
    default vibration. click_action is merged into data for the Flutter
    client's tap handler.
    """
    return {
        "message": {
            "token": payload.target_address,
            "notification": {
                "title": payload.title,
                "body": payload.body,
            },
            "data": {**payload.metadata, "click_action": CLICK_ACTION},
            "android": {
                "priority": "high",
                "notification": {
                    "sound": "default",
                    "default_vibrate_timings": True,
                    "notification_priority": "PRIORITY_HIGH",
                    "channel_id": android_channel_id,
                },
            },
            "apns": {
                "headers": {
                    "apns-priority": "10",
                    "apns-push-type": "alert",
                },
                "payload": {
                    "aps": {
                        "sound": "default",
                    },
                },
            },
        }
    }


# ===================================================================
# Push Delivery
# ===================================================================

class FcmGateway:
    """Sends NotificationPayloads through FCM, reporting outcomes as values."""

    def __init__(
        self,
        credentials: FcmCredentials,
        *,
        android_channel_id: str = "chat_messages",
        timeout_seconds: float = 10.0,
    ):
        self._credentials = credentials
        self._android_channel_id = android_channel_id
        self._timeout_seconds = timeout_seconds

    async def send(self, payload: NotificationPayload) -> DispatchResult:
        """
        Send one notification.

        Gateway rejections (invalid or expired token, quota, network errors,
        timeouts) are returned as Failed(send_failed) with the gateway's
        reason string verbatim. Nothing is raised to the caller.

        Returns:
            DispatchResult: Sent with the FCM message name, or Failed.
        """
        device = payload.target_address[:TOKEN_LOG_PREFIX]

        try:
            message_id = await asyncio.wait_for(
                self._post_message(payload),
                timeout=self._timeout_seconds,
            )
        except asyncio.TimeoutError:
            reason = f"FCM send timed out after {self._timeout_seconds}s"
            logger.error("FCM delivery failed: %s, device=%s...", reason, device)
            return DispatchResult.failed(FailureKind.SEND_FAILED, reason)
        except SendFailedError as exc:
            logger.warning(
                "FCM delivery failed: status=%s, reason=%s, device=%s...",
                exc.status_code, exc.reason, device,
            )
            return DispatchResult.failed(FailureKind.SEND_FAILED, exc.reason)
        except Exception as exc:
            logger.error("FCM delivery failed: %s, device=%s...", exc, device)
            return DispatchResult.failed(FailureKind.SEND_FAILED, str(exc))

        logger.info("Push notification delivered: message_id=%s, device=%s...", message_id, device)
        return DispatchResult.sent(message_id)

    async def _post_message(self, payload: NotificationPayload) -> Optional[str]:
        url = FCM_SEND_URL_TEMPLATE.format(project_id=self._credentials.project_id)
        body = build_fcm_message(payload, android_channel_id=self._android_channel_id)

        token = await self._credentials.access_token()
        async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
            response = await client.post(
                url,
                json=body,
                headers={"Authorization": f"Bearer {token}"},
            )

        if response.status_code == 200:
            return response.json().get("name")

        if response.status_code == 401:
            # Revoked or rotated key: mint a new token for the next send
            self._credentials.invalidate()

        raise SendFailedError(_extract_error_reason(response), status_code=response.status_code)


def _extract_error_reason(response: httpx.Response) -> str:
    """Pull the error message out of a Google API error body."""
    try:
        error_body = response.json()
    except Exception:
        return response.text or f"HTTP {response.status_code}"

    error = error_body.get("error") if isinstance(error_body, dict) else None
    if isinstance(error, dict):
        return error.get("message") or error.get("status") or f"HTTP {response.status_code}"
    return response.text or f"HTTP {response.status_code}"
