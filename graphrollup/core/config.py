"""
Configuration management for the cross-repository rollup service
"""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )
    app_env: str = "dev"
    app_name: str = "graphrollup"

    api_host: str = "0.0.0.0"
    api_port: int = 8000

    log_level: str = "INFO"
    log_json: bool = True

    # Database configuration
    database_url: Optional[str] = None  # Allow override with full URL
    sqlite_path: str = "./data/graphrollup.db"

    # Event transport; in-process broadcaster when unset
    redis_url: Optional[str] = None
    event_channel_prefix: str = "rollup:"

    # Scanning API that serves per-repository graphs
    graph_api_url: str = "http://localhost:3000/api/v1"
    graph_api_token: Optional[str] = None
    graph_api_timeout_seconds: float = 30.0

    # Rollup limits
    max_repositories_per_rollup: int = Field(default=10, ge=2)
    max_matchers_per_rollup: int = Field(default=20, ge=1)
    max_merged_nodes: int = Field(default=50000, ge=1)

    # Execution timeouts (seconds)
    default_timeout_seconds: int = Field(default=300, ge=1)
    max_timeout_seconds: int = Field(default=3600, ge=1)
    # How often a forced execution re-checks a status held by another process
    force_wait_poll_seconds: float = Field(default=1.0, gt=0)

    # Retry policy for transient execution failures
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_base_delay_ms: int = Field(default=1000, ge=0)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1.0)
    retry_max_delay_ms: int = Field(default=30000, ge=0)
    retry_jitter_factor: float = Field(default=0.1, ge=0.0, le=1.0)

    # Matching / blast radius
    matching_workers: int = Field(default=4, ge=1)
    blast_radius_cache_ttl_seconds: int = Field(default=3600, ge=0)
    blast_radius_cache_max_entries: int = Field(default=256, ge=1)

    prometheus_enabled: bool = True

    @field_validator("event_channel_prefix")
    @classmethod
    def _prefix_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("event_channel_prefix must not be blank")
        return value

    @property
    def sqlalchemy_url(self) -> str:
        # Use database_url if provided, otherwise a local SQLite file
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.sqlite_path}"


settings = Settings()


def get_settings() -> Settings:
    """Get the current settings instance (for dependency injection)."""
    return settings
