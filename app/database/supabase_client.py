"""Supabase clients: one for validating user tokens, one for deployment records."""
from typing import Optional

from supabase import create_client, Client
from app.config import settings


class SupabaseClients:
    _auth_client: Optional[Client] = None
    _records_client: Optional[Client] = None

    @classmethod
    def auth_client(cls) -> Client:
        """Anon-key client used only for `auth.get_user` on bearer tokens."""
        if cls._auth_client is None:
            if not settings.supabase_url or not settings.supabase_key:
                raise ValueError("SUPABASE_URL and SUPABASE_KEY must be configured for authentication")
            cls._auth_client = create_client(settings.supabase_url, settings.supabase_key)
        return cls._auth_client

    @classmethod
    def records_client(cls) -> Client:
        """Service-role client for the `deployments` table.

        Build workers write records outside any user session, so row level
        security must be bypassed; an anon key is not accepted here.
        """
        if cls._records_client is None:
            if not settings.supabase_url or not settings.supabase_service_role_key:
                raise ValueError(
                    "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be configured when RECORD_STORE=supabase"
                )
            cls._records_client = create_client(settings.supabase_url, settings.supabase_service_role_key)
        return cls._records_client

    @classmethod
    def reset(cls):
        cls._auth_client = None
        cls._records_client = None


def get_supabase() -> Client:
    return SupabaseClients.auth_client()
