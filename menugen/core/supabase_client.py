# menugen/core/supabase_client.py
from supabase import create_client, Client
from supabase.client import ClientOptions
import logging
from typing import Optional
import httpx

from menugen.core.config import Settings

logger = logging.getLogger(__name__)

# Don't initialize at module level
_supabase_client: Optional[Client] = None
_http_client: Optional[httpx.AsyncClient] = None


def get_http_client() -> httpx.AsyncClient:
    """Get or create HTTP client with connection pooling"""
    global _http_client

    if _http_client is None:
        limits = httpx.Limits(
            max_keepalive_connections=20,
            max_connections=100,
            keepalive_expiry=30.0
        )
        _http_client = httpx.AsyncClient(
            limits=limits,
            timeout=httpx.Timeout(60.0)
        )
        logger.info("Initialized HTTP client with connection pooling")

    return _http_client


def get_supabase_client(settings: Settings) -> Client:
    """Get or create the Supabase client"""
    global _supabase_client

    if _supabase_client is None:
        if not settings.supabase_url or not settings.supabase_key:
            logger.error("Supabase credentials not found in environment variables")
            raise ValueError("Supabase credentials not configured")

        try:
            _supabase_client = create_client(
                settings.supabase_url,
                settings.supabase_key,
                options=ClientOptions(
                    persist_session=False,  # server-side usage, no session storage
                    auto_refresh_token=False,
                )
            )
            logger.info("Successfully initialized Supabase client")
        except Exception as e:
            logger.error(f"Failed to initialize Supabase client: {e}")
            raise

    return _supabase_client


async def close_connections():
    """Close HTTP client connections on application shutdown"""
    global _http_client
    if _http_client:
        await _http_client.aclose()
        _http_client = None
        logger.info("Closed HTTP client connections")


__all__ = ["get_supabase_client", "get_http_client", "close_connections"]
