"""
Supabase Client

Creates the Supabase client used by the relay. The relay only runs
background-style work (lookups across all users, history appends), so it
uses the service role key, which bypasses Row Level Security.

The client is built once at startup and handed to the components that
need it; there is no module-level client.
"""

from supabase import Client, create_client

from push_relay.core.config import Settings, validate_supabase_config


def create_service_client(settings: Settings) -> Client:
    """
    Create a Supabase client using the service_role (admin) key.

    Raises:
        ConfigurationError: If SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY is missing.
    """
    validate_supabase_config(settings)
    return create_client(settings.supabase_url, settings.supabase_service_role_key)
