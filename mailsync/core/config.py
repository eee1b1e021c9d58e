"""Sync engine configuration settings."""

import os
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings

DEFAULT_PROVIDERS_FILE = str(Path(__file__).resolve().parent.parent / "providers" / "providers.yaml")


class SyncSettings(BaseSettings):
    """Engine configuration, read from the environment and .env."""

    # MongoDB Settings
    mongodb_uri: str = Field(
        default="mongodb://localhost:27017/?directConnection=true",
        description="MongoDB connection string"
    )
    mongodb_database: str = Field(default="mailsync", description="Database name")

    # Quick cycle
    quick_sync_interval_seconds: int = Field(default=300, description="Quick sync cadence")
    quick_sync_limit: int = Field(default=50, description="Messages per folder on first quick sync")
    quick_sync_parallelism: int = Field(default=5, description="Accounts synced concurrently")
    recent_sync_skip_seconds: int = Field(
        default=180,
        description="Quick cycles skip folders synced more recently than this"
    )

    # Deep cycle
    deep_sync_interval_seconds: int = Field(default=3600, description="Deep sync cadence")
    deep_sync_limit: int = Field(default=200, description="Messages per folder on first deep sync")

    # Cleanup
    cleanup_interval_seconds: int = Field(default=86400, description="Cache janitor cadence")

    # IMAP
    fetch_batch_size: int = Field(default=50, ge=1, description="UIDs per FETCH command")
    folder_sync_timeout_seconds: float = Field(default=60.0, description="Deadline for one folder sync")
    imap_timeout_seconds: float = Field(default=30.0, description="Timeout for a single IMAP command")
    user_sync_limit: int = Field(default=100, description="Limit for on-demand user syncs")

    # Body and attachment cache
    body_ttl_days: int = Field(default=7)
    attachment_ttl_days: int = Field(default=7)
    attachment_storage_path: str = Field(
        default="./data/attachments",
        description="Root directory for content-addressed attachment files"
    )
    search_body_chars: int = Field(default=10000, description="Body text kept for search")

    # Prefetch
    prefetch_count: int = Field(default=10, description="Bodies warmed per folder on deep sync")
    prefetch_delay_seconds: float = Field(default=0.5, description="Pause between prefetched bodies")
    prefetch_max_age_days: int = Field(default=7)

    # Background task pool
    task_pool_workers: int = Field(default=2, ge=1)

    # OAuth
    token_refresh_skew_seconds: int = Field(default=300, description="Refresh tokens expiring within this window")
    oauth_redirect_base_url: str = Field(default="http://localhost:8000")
    google_client_id: str = Field(default="")
    google_client_secret: str = Field(default="")
    microsoft_client_id: str = Field(default="")
    microsoft_client_secret: str = Field(default="")
    yahoo_client_id: str = Field(default="")
    yahoo_client_secret: str = Field(default="")
    providers_file: str = Field(
        default=DEFAULT_PROVIDERS_FILE,
        description="Provider capability table (YAML)"
    )

    log_level: str = Field(default="INFO")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"

    def client_credentials(self, provider_id: str) -> tuple[str, str]:
        """Return (client_id, client_secret) for a provider, empty when unset."""
        prefix = provider_id.upper()
        client_id = getattr(self, f"{provider_id}_client_id", None) or os.getenv(f"{prefix}_CLIENT_ID", "")
        client_secret = (
            getattr(self, f"{provider_id}_client_secret", None) or os.getenv(f"{prefix}_CLIENT_SECRET", "")
        )
        return client_id, client_secret

    def redirect_uri(self, provider_id: str) -> str:
        return f"{self.oauth_redirect_base_url.rstrip('/')}/oauth/{provider_id}/callback"


_settings: Optional[SyncSettings] = None


def get_settings() -> SyncSettings:
    """Get the process settings instance."""
    global _settings
    if _settings is None:
        _settings = SyncSettings()
    return _settings


settings = get_settings()
