"""Configuration management for SmartDock."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "SmartDock"
    debug: bool = False

    # Docker
    docker_host: Optional[str] = Field(
        default=None,
        description="Docker daemon address (unix socket or tcp://), default local daemon",
    )

    # State
    state_path: Path = Field(
        default=Path("/var/lib/smartdock"),
        description="Directory holding schedules.yaml and proxy_rules.yaml",
    )

    # Reverse proxy
    proxy_enabled: bool = True
    proxy_config_path: Path = Field(
        default=Path("/etc/caddy/Caddyfile"),
        description="Where the compiled Caddyfile is written",
    )
    main_domain: str = Field(
        default="localhost",
        description="Parent domain used for auto-generated proxy rules",
    )
    acme_email: Optional[str] = Field(
        default=None,
        description="ACME account email for the tls directive (tls internal when unset)",
    )
    proxy_health_uri: str = Field(
        default="/",
        description="Upstream health check path for rules with health checks enabled",
    )

    # Smart wake-up
    wake_timeout_ms: int = Field(
        default=30000,
        description="Overall budget for a wake-up session",
    )
    wake_poll_interval_ms: int = Field(
        default=1000,
        description="Delay between readiness checks",
    )
    wake_max_retries: int = Field(
        default=3,
        description="Consecutive inspect failures tolerated while health checking",
    )

    # Events
    event_queue_size: int = Field(
        default=256,
        description="Per-subscriber buffer before a slow subscriber is dropped",
    )

    # Web
    host: str = "0.0.0.0"
    port: int = 3000


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
