"""
Remote client factory.

Selects and opens the remote client described by Settings: the Supabase REST
client (default) or a direct Postgres client. Callers own the returned client
and must `await client.close()`.
"""

from __future__ import annotations

from typing import Optional

from delivery_sync.config import Settings, get_settings
from delivery_sync.infrastructure.client import RemoteClient
from delivery_sync.infrastructure.postgres_client import PostgresClient
from delivery_sync.infrastructure.rest_client import SupabaseRestClient
from delivery_sync.utils.logging import get_logger

log = get_logger(__name__)


def build_dsn(settings: Optional[Settings] = None) -> str:
    """Compose a Postgres DSN string from settings."""
    settings = settings or get_settings()
    return (
        f"postgresql://{settings.db_user}:{settings.db_password}"
        f"@{settings.db_host}:{settings.db_port}/{settings.db_name}"
    )


async def create_remote_client(settings: Optional[Settings] = None) -> RemoteClient:
    """
    Build the remote client for `settings.backend`.

    Raises
    ------
    ValueError
        If the REST backend is selected without SUPABASE_URL / SUPABASE_KEY.
    NetworkError
        If the Postgres pool cannot be created after retries.
    """
    settings = settings or get_settings()
    if settings.backend == "postgres":
        log.info(
            "Connecting to Postgres",
            extra={"host": settings.db_host, "db": settings.db_name},
        )
        return await PostgresClient(build_dsn(settings), schema=settings.supabase_schema).open()

    log.info("Using Supabase REST backend", extra={"url": settings.supabase_url})
    return SupabaseRestClient(
        settings.supabase_url,
        settings.supabase_key,
        schema=settings.supabase_schema,
        timeout=settings.request_timeout_seconds,
        poll_interval=settings.realtime_poll_interval_seconds,
    )


__all__ = ["build_dsn", "create_remote_client"]
