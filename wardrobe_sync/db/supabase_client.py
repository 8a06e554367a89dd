"""Service-role Supabase client, shared by the storage and record adapters."""

from typing import Optional

from supabase import create_client, Client

from wardrobe_sync.config import Settings, settings as default_settings
from wardrobe_sync.errors import ConfigurationError

_client: Optional[Client] = None


def create_supabase(cfg: Settings) -> Client:
    """Build a new client from ``cfg``. Both the URL and service key are required."""
    missing = [
        name for name, value in (
            ("SUPABASE_URL", cfg.supabase_url),
            ("SUPABASE_SERVICE_ROLE_KEY", cfg.supabase_service_role_key),
        )
        if not value
    ]
    if missing:
        raise ConfigurationError(f"Missing Supabase settings: {', '.join(missing)}")
    return create_client(cfg.supabase_url, cfg.supabase_service_role_key)


def get_supabase(cfg: Optional[Settings] = None) -> Client:
    """Process-wide client, created on first use from ``cfg`` (or the env settings)."""
    global _client
    if _client is None:
        _client = create_supabase(cfg or default_settings)
    return _client


def reset_supabase() -> None:
    """Forget the shared client, e.g. after a sign-out or between tests."""
    global _client
    _client = None
