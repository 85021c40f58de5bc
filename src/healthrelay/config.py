"""
healthrelay Configuration Module

Centralized configuration management using Pydantic Settings.
Supports environment variables and .env files.
"""

from functools import lru_cache
from typing import Literal
from urllib.parse import urlsplit

import structlog
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = structlog.get_logger(__name__)

DEFAULT_PROVIDER_BASE_URL = "https://api.connect.fastenhealth.com"


class RelaySettings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="RELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    env: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    log_level: str = "INFO"
    log_json: bool = True

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    # Webhook intake
    webhook_secret: SecretStr | None = None
    event_archive_limit: int = 500
    seen_id_ttl_seconds: int = 7 * 24 * 60 * 60
    max_seen_ids: int = 100_000
    auto_trigger_export: bool = True


class ProviderSettings(BaseSettings):
    """Provider (Fasten Connect) API settings."""

    model_config = SettingsConfigDict(
        env_prefix="FASTEN_",
        env_file=".env",
        extra="ignore",
    )

    public_key: str | None = None
    private_key: SecretStr | None = None
    api_base_url: str = DEFAULT_PROVIDER_BASE_URL

    request_timeout_seconds: float = 60.0
    download_timeout_seconds: float = 60.0
    max_retries: int = 3
    retry_delay_seconds: float = 0.5

    @field_validator("public_key", mode="before")
    @classmethod
    def _strip_key(cls, value):
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value

    @field_validator("api_base_url", mode="before")
    @classmethod
    def _normalize_base_url(cls, value):
        raw = (value or "").strip()
        parts = urlsplit(raw)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            logger.warning(
                "Provider base URL is invalid, using default",
                value=raw,
                default=DEFAULT_PROVIDER_BASE_URL,
            )
            return DEFAULT_PROVIDER_BASE_URL
        return f"{parts.scheme}://{parts.netloc}{parts.path.rstrip('/')}"

    @property
    def is_configured(self) -> bool:
        """Both halves of the credential pair are present."""
        private = self.private_key.get_secret_value().strip() if self.private_key else ""
        return bool(self.public_key and private)

    @property
    def credentials(self) -> tuple[str, str] | None:
        """Basic-auth pair, or None when not configured."""
        if not self.is_configured:
            return None
        return self.public_key, self.private_key.get_secret_value().strip()


class MonitorSettings(BaseSettings):
    """Export timeout monitoring settings."""

    model_config = SettingsConfigDict(
        env_prefix="MONITOR_",
        env_file=".env",
        extra="ignore",
    )

    export_timeout_minutes: float = 30.0
    slow_platform_timeout_minutes: float = 60.0
    slow_platforms: list[str] = Field(default_factory=lambda: ["epic"])
    diagnostics_limit: int = 200
    finished_entries_limit: int = 1000


class PipelineSettings(BaseSettings):
    """Bulk export transform settings."""

    model_config = SettingsConfigDict(
        env_prefix="PIPELINE_",
        env_file=".env",
        extra="ignore",
    )

    batch_size: int = Field(default=100, ge=1)
    chunk_size: int = Field(default=64 * 1024, ge=1)
    cache_ttl_seconds: float = 300.0
    history_limit: int = 100
    source_tag: str = "fasten-connect"
    slow_operation_ms: float = 30_000.0


class SinkSettings(BaseSettings):
    """Downstream sink settings."""

    model_config = SettingsConfigDict(
        env_prefix="SINK_",
        env_file=".env",
        extra="ignore",
    )

    # Leave unset to serve records through the pull API only
    ingest_url: str | None = None
    service_secret: SecretStr | None = None
    timeout_seconds: float = 30.0
    max_retries: int = 2
    retry_delay_seconds: float = 1.0


class Settings:
    """
    Aggregated settings container.

    Usage:
        from healthrelay.config import get_settings
        settings = get_settings()
        print(settings.provider.api_base_url)
        print(settings.monitor.export_timeout_minutes)
    """

    def __init__(self):
        self.app = RelaySettings()
        self.provider = ProviderSettings()
        self.monitor = MonitorSettings()
        self.pipeline = PipelineSettings()
        self.sink = SinkSettings()

    @property
    def is_development(self) -> bool:
        return self.app.env == "development"

    @property
    def is_production(self) -> bool:
        return self.app.env == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: The application settings
    """
    return Settings()
