"""
Configuration settings for delivery-sync.

Uses Pydantic Settings to load environment variables for the remote backend
(Supabase REST or direct Postgres), logging, cache, retry and offline-queue
tuning. Values are read once and cached by `get_settings()`.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Remote backend
    backend: Literal["rest", "postgres"] = Field("rest", alias="SYNC_BACKEND")
    supabase_url: str = Field("", alias="SUPABASE_URL")
    supabase_key: str = Field("", alias="SUPABASE_KEY")
    supabase_schema: str = Field("public", alias="SUPABASE_SCHEMA")

    # Direct Postgres connection (SYNC_BACKEND=postgres)
    db_host: str = Field("localhost", alias="DB_HOST")
    db_port: int = Field(5432, alias="DB_PORT")
    db_user: str = Field("postgres", alias="DB_USER")
    db_password: str = Field("postgres", alias="DB_PASSWORD")
    db_name: str = Field("postgres", alias="DB_NAME")

    # Application
    app_env: str = Field("development", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")

    # Cache
    cache_ttl_seconds: float = Field(60.0, alias="CACHE_TTL_SECONDS")

    # RecordStore
    request_timeout_seconds: float = Field(10.0, alias="REQUEST_TIMEOUT_SECONDS")
    query_max_attempts: int = Field(3, alias="QUERY_MAX_ATTEMPTS")
    query_backoff_base_seconds: float = Field(0.3, alias="QUERY_BACKOFF_BASE_SECONDS")
    write_max_attempts: int = Field(2, alias="WRITE_MAX_ATTEMPTS")

    # ChangeBus
    realtime_max_reconnect_attempts: int = Field(5, alias="REALTIME_MAX_RECONNECT_ATTEMPTS")
    realtime_backoff_base_seconds: float = Field(2.0, alias="REALTIME_BACKOFF_BASE_SECONDS")
    realtime_backoff_cap_seconds: float = Field(30.0, alias="REALTIME_BACKOFF_CAP_SECONDS")
    realtime_poll_interval_seconds: float = Field(5.0, alias="REALTIME_POLL_INTERVAL_SECONDS")

    # Offline queue / connectivity
    offline_queue_max_size: int = Field(500, alias="OFFLINE_QUEUE_MAX_SIZE")
    offline_queue_path: Path | None = Field(
        Path(".delivery_sync/offline_queue.json"), alias="OFFLINE_QUEUE_PATH"
    )
    connectivity_check_interval_seconds: float = Field(
        15.0, alias="CONNECTIVITY_CHECK_INTERVAL_SECONDS"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Retrieve a cached instance of Settings to avoid repeated env parsing.
    """
    return Settings()


__all__ = ["Settings", "get_settings"]
