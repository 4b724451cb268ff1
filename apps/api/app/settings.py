from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application
    app_name: str = "Starter Kit API"
    app_version: str = "0.1.0"
    environment: str = "development"

    # Database settings
    database_url: str = "sqlite:///./starterkit.db"
    db_pool_size: int = 20
    db_max_overflow: int = 30
    db_pool_timeout: int = 30

    # API settings
    cors_origins: str = "http://localhost:3000"
    metrics_auth: Optional[str] = None

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Health check settings
    health_cache_ttl: int = 30

    # Telemetry
    otel_enabled: bool = True
    otel_service_name: str = "starterkit-api"
    otel_exporter_otlp_endpoint: Optional[str] = None
    otel_exporter_insecure: bool = True
    trace_sample_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    metrics_export_interval_ms: int = Field(default=10000, ge=100)

    # Comma-separated path prefixes that are never traced
    trace_excluded_paths: str = "/_next,/static,/api/health,/favicon.ico"
    trace_exclude_static_files: bool = True

    # Diagnostics
    test_telemetry_error_rate: float = Field(default=0.2, ge=0.0, le=1.0)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def cors_allowed_origins(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def trace_excluded_prefixes(self) -> List[str]:
        return [p.strip() for p in self.trace_excluded_paths.split(",") if p.strip()]


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()


def reset_settings_cache() -> None:
    """Clear cached settings (useful for tests)."""

    get_settings.cache_clear()
