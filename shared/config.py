"""
Shared configuration management for the Space Telemetry Gateway.
"""

from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from shared.retry import RetryConfig


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="TELEMETRY_",
        case_sensitive=False,
        populate_by_name=True,
        extra="allow"
    )

    # Environment
    env: str = "local"
    log_level: str = "info"

    # Upstream APIs
    nasa_api_url: str = "https://api.nasa.gov"
    nasa_api_key: str = Field(
        default="DEMO_KEY",
        validation_alias=AliasChoices("TELEMETRY_NASA_API_KEY", "NASA_API_KEY"),
    )
    sbdb_api_url: str = "https://ssd-api.jpl.nasa.gov"
    horizons_api_url: str = "https://ssd.jpl.nasa.gov/api/horizons.api"
    dsn_feed_url: str = "https://eyes.nasa.gov/dsn/data/dsn.xml"

    # Rate budgets
    nasa_rate_limit: int = 950
    unmetered_rate_limit: int = 3000
    rate_limit_window_seconds: float = 3600.0
    inter_call_delay_seconds: float = 0.1
    rate_limit_policy: str = "sliding"
    scheduler_max_queue_size: Optional[int] = None

    # Circuit breaker
    breaker_failure_threshold: int = 3
    breaker_cooldown_seconds: float = 30.0

    # Retry
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    retry_backoff_multiplier: float = 2.0

    # Transport
    request_timeout_seconds: float = 12.0
    user_agent: str = "SpaceTelemetryGateway/1.0"

    # Cache
    cache_max_entries: Optional[int] = 2048

    # Observability
    enable_tracing: bool = False
    otel_exporter: Optional[str] = None
    enable_console_tracing: bool = False

    def retry_config(self) -> RetryConfig:
        """Project the retry settings onto a RetryConfig."""
        return RetryConfig(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay_seconds,
            max_delay=self.retry_max_delay_seconds,
            backoff_multiplier=self.retry_backoff_multiplier,
        )


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
