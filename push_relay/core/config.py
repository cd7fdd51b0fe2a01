"""
Application Configuration

Loads environment variables and provides typed settings
for the application. Uses python-dotenv to load from .env file.

Settings are read once at startup into a frozen Settings object that is
passed to every component; nothing reads the environment after that.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from push_relay.core.errors import ConfigurationError

# .env file at the project root
_env_path = Path(__file__).resolve().parent.parent.parent / ".env"

# --- App Settings ---
PROJECT_NAME = "Push Relay"
SERVICE_NAME = "FCM Notification Server"

_TRUTHY = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUTHY


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip()) or default


@dataclass(frozen=True)
class Settings:
    """Typed, immutable deployment settings."""

    # --- Supabase (user directory, conversations, notification history) ---
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    # --- Firebase Cloud Messaging ---
    firebase_service_account: str = ""
    firebase_service_account_base64: str = ""
    firebase_service_account_path: str = "serviceAccountKey.json"
    fcm_project_id: str = ""
    fcm_android_channel_id: str = "chat_messages"

    # --- Trigger modes ---
    enable_direct_dispatch: bool = True
    enable_change_watcher: bool = False
    enable_delivery_history: bool = True

    # --- Timeouts (seconds) ---
    lookup_timeout_seconds: float = 5.0
    send_timeout_seconds: float = 10.0
    history_timeout_seconds: float = 5.0
    watcher_reconnect_delay_seconds: float = 5.0

    log_level: str = "INFO"
    port: int = 3000
    cors_allow_origins: tuple[str, ...] = ("*",)

    @property
    def dispatch_mode(self) -> str:
        """Name of the active message trigger: 'direct', 'watcher', or 'none'."""
        if self.enable_change_watcher:
            return "watcher"
        if self.enable_direct_dispatch:
            return "direct"
        return "none"


def load_settings(env_path: Path | None = None) -> Settings:
    """Read the .env file (if present) and build Settings from the environment."""
    load_dotenv(dotenv_path=env_path or _env_path)

    return Settings(
        supabase_url=os.getenv("SUPABASE_URL", ""),
        supabase_service_role_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY", ""),
        firebase_service_account=os.getenv("FIREBASE_SERVICE_ACCOUNT", ""),
        firebase_service_account_base64=os.getenv("FIREBASE_SERVICE_ACCOUNT_BASE64", ""),
        firebase_service_account_path=os.getenv(
            "FIREBASE_SERVICE_ACCOUNT_PATH", "serviceAccountKey.json"
        ),
        fcm_project_id=os.getenv("FCM_PROJECT_ID", ""),
        fcm_android_channel_id=os.getenv("FCM_ANDROID_CHANNEL_ID", "chat_messages"),
        enable_direct_dispatch=_env_bool("ENABLE_DIRECT_DISPATCH", True),
        enable_change_watcher=_env_bool("ENABLE_CHANGE_WATCHER", False),
        enable_delivery_history=_env_bool("ENABLE_DELIVERY_HISTORY", True),
        lookup_timeout_seconds=_env_float("LOOKUP_TIMEOUT_SECONDS", 5.0),
        send_timeout_seconds=_env_float("SEND_TIMEOUT_SECONDS", 10.0),
        history_timeout_seconds=_env_float("HISTORY_TIMEOUT_SECONDS", 5.0),
        watcher_reconnect_delay_seconds=_env_float("WATCHER_RECONNECT_DELAY_SECONDS", 5.0),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        port=int(_env_float("PORT", 3000)),
        cors_allow_origins=_env_list("CORS_ALLOW_ORIGINS", ("*",)),
    )


def validate_supabase_config(settings: Settings) -> bool:
    """Check that all required Supabase credentials are present and non-empty."""
    missing = []
    if not settings.supabase_url:
        missing.append("SUPABASE_URL")
    if not settings.supabase_service_role_key:
        missing.append("SUPABASE_SERVICE_ROLE_KEY")
    if missing:
        raise ConfigurationError(
            f"Missing required Supabase environment variables: {', '.join(missing)}. "
            f"Please fill in your .env file at: {_env_path}"
        )
    return True


def validate_trigger_modes(settings: Settings) -> bool:
    """
    Reject deployments that enable both message triggers.

    With direct dispatch and the change watcher both active against the same
    conversation store, every message is dispatched twice (once by the
    sending client's request, once by the watcher). Only one may run.
    """
    if settings.enable_direct_dispatch and settings.enable_change_watcher:
        raise ConfigurationError(
            "ENABLE_DIRECT_DISPATCH and ENABLE_CHANGE_WATCHER cannot both be enabled: "
            "each message would be notified twice. Disable one of them."
        )
    return True


def validate_settings(settings: Settings) -> Settings:
    """Run every startup check and return the settings unchanged."""
    validate_trigger_modes(settings)
    validate_supabase_config(settings)
    for name in (
        "lookup_timeout_seconds",
        "send_timeout_seconds",
        "history_timeout_seconds",
    ):
        if getattr(settings, name) <= 0:
            raise ConfigurationError(f"{name.upper()} must be greater than zero")
    if settings.watcher_reconnect_delay_seconds < 0:
        raise ConfigurationError("WATCHER_RECONNECT_DELAY_SECONDS cannot be negative")
    return settings

