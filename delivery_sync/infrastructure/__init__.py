"""
Infrastructure package for delivery-sync.

Remote client implementations (Supabase REST over httpx, direct Postgres over
asyncpg) and the factory selecting one from settings. Keep this layer focused
on I/O and error translation, decoupled from caching and sync logic.
"""

from delivery_sync.infrastructure.client import RemoteClient, TableClient
from delivery_sync.infrastructure.factory import build_dsn, create_remote_client

__all__ = [
    "RemoteClient",
    "TableClient",
    "build_dsn",
    "create_remote_client",
]
