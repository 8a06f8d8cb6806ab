"""Configuration management for Gmail Mirror.

This module handles application configuration using Pydantic settings.
Configuration can be loaded from environment variables or .env files.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with
    the GMAIL_MIRROR_ prefix (e.g., GMAIL_MIRROR_DATABASE_URL).
    """

    model_config = SettingsConfigDict(
        env_prefix="GMAIL_MIRROR_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Metadata store
    database_url: str = Field(
        default="sqlite:///gmail_mirror.sqlite3",
        description="SQLAlchemy URL of the metadata store",
    )

    # Gmail / OAuth client
    google_client_id: str | None = Field(
        default=None,
        description="OAuth client id used when refreshing user access tokens",
    )
    google_client_secret: str | None = Field(
        default=None,
        description="OAuth client secret used when refreshing user access tokens",
    )
    google_token_uri: str = Field(
        default="https://oauth2.googleapis.com/token",
        description="OAuth token endpoint",
    )
    gmail_user_id: str = Field(
        default="me",
        description="Gmail API userId path parameter",
    )
    gmail_http_timeout_seconds: float = Field(
        default=60.0,
        description="Socket timeout for Gmail API requests",
    )

    # Blob store (S3 compatible)
    s3_bucket_name: str = Field(default="gmail-mirror", description="Bucket holding bodies and attachments")
    aws_region: str = Field(default="us-east-1", description="Bucket region")
    s3_endpoint_url: str | None = Field(
        default=None,
        description="Custom endpoint for S3-compatible stores (MinIO, LocalStack)",
    )
    aws_access_key_id: str | None = Field(
        default=None,
        description="Static access key; when unset boto3 uses its default credential chain",
    )
    aws_secret_access_key: str | None = Field(default=None, description="Static secret key")
    blob_timeout_seconds: float = Field(
        default=60.0,
        description="Connect/read timeout for blob store calls",
    )
    signed_url_ttl_seconds: int = Field(
        default=3600,
        description="Lifetime of signed retrieval URLs",
    )

    # Sync cycle
    sync_enabled: bool = Field(default=True, description="Allow scheduled sync runs")
    sync_interval_minutes: int = Field(
        default=30,
        description="Users whose last sync is older than this are due for a scheduled sync",
    )
    sync_cron_schedule: str = Field(
        default="*/30 * * * *",
        description="Schedule expression for the external trigger (informational)",
    )
    cron_secret: str | None = Field(
        default=None,
        description="Shared secret scheduled invocations must present",
    )
    sync_max_conversations: int = Field(
        default=1000,
        description="Maximum number of conversations fetched per cycle",
    )
    sync_user_delay_seconds: float = Field(
        default=1.0,
        description="Pause between users during a scheduled run",
    )
    post_send_sync_delay_seconds: float = Field(
        default=3.0,
        description="Wait before re-syncing a conversation after send/reply/forward",
    )
    sync_lock_timeout_minutes: int = Field(
        default=60,
        description="A per-user sync lock older than this is considered stale",
    )
    sync_status_history_limit: int = Field(
        default=10,
        description="Number of audit records returned by the sync status query",
    )

    # Remote call retries
    max_retries: int = Field(
        default=3,
        description="Maximum number of retries for retryable remote failures",
    )
    retry_base_delay: float = Field(default=1.0, description="Initial retry backoff in seconds")
    retry_max_delay: float = Field(default=30.0, description="Upper bound for a single backoff")

    # Cache
    redis_url: str | None = Field(
        default=None,
        description="Redis URL for the read cache; in-memory cache is used when unset",
    )
    cache_enabled: bool = Field(default=True, description="Enable the read-through cache")
    cache_ttl: int = Field(default=3600, description="Default cache time-to-live in seconds")
    message_body_cache_ttl: int = Field(default=86400, description="Cache TTL for message bodies")
    message_body_fallback_cache_ttl: int = Field(
        default=3600,
        description="Cache TTL for the snippet-only fallback when the body cannot be fetched",
    )

    # Application
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    debug: bool = Field(default=False, description="Enable debug mode")


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings: Application settings instance.
    """
    return Settings()
