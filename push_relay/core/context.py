"""
Application Context — Wires the relay's components once at startup.

The context replaces process-wide singletons: settings, the Supabase
client, the FCM gateway and the coordinator are created here and stored on
app.state. Route handlers reach them through the get_context dependency.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from fastapi import Request
from supabase import Client

from push_relay.core.config import Settings
from push_relay.db.supabase_client import create_service_client
from push_relay.services.address_resolver import AddressResolver
from push_relay.services.change_watcher import ChangeWatcher, SupabaseConversationStream
from push_relay.services.contracts import PushGateway
from push_relay.services.coordinator import DispatchCoordinator
from push_relay.services.delivery_logger import DeliveryLogger, SupabaseHistoryStore
from push_relay.services.fcm import FcmCredentials, FcmGateway

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    coordinator: DispatchCoordinator
    delivery_logger: Optional[DeliveryLogger] = None
    watcher: Optional[ChangeWatcher] = None
    started_at: float = field(default_factory=time.monotonic)

    def uptime(self) -> float:
        return time.monotonic() - self.started_at


def build_context(
    settings: Settings,
    *,
    client: Optional[Client] = None,
    gateway: Optional[PushGateway] = None,
) -> AppContext:
    """
    Build every component from validated settings.

    Args:
        settings: Output of validate_settings(load_settings()).
        client: Supabase client override (defaults to a service-role client).
        gateway: Push gateway override (defaults to FCM from the service account).

    Raises:
        ConfigurationError: If Supabase or FCM credentials are unusable.
    """
    client = client or create_service_client(settings)

    if gateway is None:
        gateway = FcmGateway(
            FcmCredentials.from_settings(settings),
            android_channel_id=settings.fcm_android_channel_id,
            timeout_seconds=settings.send_timeout_seconds,
        )

    delivery_logger = None
    if settings.enable_delivery_history:
        delivery_logger = DeliveryLogger(
            SupabaseHistoryStore(client, timeout_seconds=settings.history_timeout_seconds)
        )

    coordinator = DispatchCoordinator(
        resolver=AddressResolver(client, timeout_seconds=settings.lookup_timeout_seconds),
        gateway=gateway,
        delivery_logger=delivery_logger,
    )

    watcher = None
    if settings.enable_change_watcher:
        watcher = ChangeWatcher(
            stream=SupabaseConversationStream(settings),
            coordinator=coordinator,
            reconnect_delay_seconds=settings.watcher_reconnect_delay_seconds,
        )

    logger.info(
        "Relay context ready (mode=%s, history=%s)",
        settings.dispatch_mode, settings.enable_delivery_history,
    )
    return AppContext(
        settings=settings,
        coordinator=coordinator,
        delivery_logger=delivery_logger,
        watcher=watcher,
    )


def get_context(request: Request) -> AppContext:
    """FastAPI dependency returning the context built at startup."""
    return request.app.state.context
