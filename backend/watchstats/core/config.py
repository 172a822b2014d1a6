"""Watch-stats worker configuration"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# === Path Configuration ===
WATCHSTATS_DIR = Path(__file__).parent.parent
BACKEND_DIR = WATCHSTATS_DIR.parent


def _default_instance_id() -> str:
    return f"instance-{secrets.token_hex(4)}"


class WatchStatsSettings(BaseSettings):
    """Watch-stats worker settings"""

    model_config = SettingsConfigDict(
        env_file=BACKEND_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = Field(..., description="PostgreSQL database URL")

    # Heartbeat ingestion buffer
    heartbeat_flush_interval_seconds: float = Field(default=5.0, gt=0)
    heartbeat_flush_batch_size: int = Field(default=200, gt=0)
    heartbeat_dedup_ttl_seconds: float = Field(default=300.0, gt=0)
    heartbeat_dedup_max_entries: int = Field(default=20000, gt=0)
    heartbeat_dedup_cleanup_interval_seconds: float = Field(default=60.0, gt=0)
    heartbeat_max_backoff_multiplier: int = Field(default=32, gt=0)
    channel_cache_ttl_seconds: float = Field(default=300.0, gt=0)

    # Percentile ranking
    percentile_recompute_window_hours: float = Field(default=24.0, gt=0)

    # Distributed coordination
    instance_id: str = Field(default_factory=_default_instance_id)
    max_channels_per_instance: int = Field(default=80, gt=0)
    lock_heartbeat_interval_seconds: float = Field(default=30.0, gt=0)
    lock_timeout_seconds: float = Field(default=60.0, gt=0)

    # Scheduled jobs
    lifetime_update_interval_seconds: float = Field(default=3600.0, gt=0)
    lifetime_lookback_hours: float = Field(default=26.0, gt=0)
    lifetime_batch_size: int = Field(default=50, gt=0)
    chat_increment_minutes: int = Field(default=10, gt=0)

    # Retention
    heartbeat_dedup_retention_days: int = Field(default=14, gt=0)
    message_retention_days: int = Field(default=90, gt=0)
    retention_batch_size: int = Field(default=2000, gt=0)
    retention_interval_seconds: float = Field(default=86400.0, gt=0)

    # Live notification sink (pg_notify channel)
    notify_channel: str = Field(default="viewer_cache_invalidate")

    # Environment
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Validate database URL starts with postgresql://"""
        if not v.startswith("postgresql://"):
            raise ValueError("DATABASE_URL must start with 'postgresql://'")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            logger.warning(f"Invalid log level '{v}', defaulting to INFO")
            return "INFO"
        return v_upper


@lru_cache
def get_settings() -> WatchStatsSettings:
    """Get cached settings instance"""
    return WatchStatsSettings()  # type: ignore[call-arg]
