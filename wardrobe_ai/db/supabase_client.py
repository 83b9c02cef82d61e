"""Supabase client singleton."""

from supabase import create_client, Client
from wardrobe_ai.config import settings

_client: Client | None = None


def get_supabase() -> Client:
    """Get or create the Supabase client.

    Prefers the service role key when configured, otherwise the anon key
    (row-level security then scopes every read to the signed-in user).
    """
    global _client
    if _client is None:
        key = settings.supabase_service_role_key or settings.supabase_anon_key
        if not settings.supabase_url or not key:
            raise RuntimeError(
                "SUPABASE_URL and SUPABASE_ANON_KEY (or SUPABASE_SERVICE_ROLE_KEY) must be set"
            )
        _client = create_client(settings.supabase_url, key)
    return _client
