"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Callback / API server
    callback_host: str = Field(default="0.0.0.0", description="Callback listen host")
    callback_port: int = Field(
        default=8765, ge=1, le=65535, description="Callback listen port"
    )
    callback_public_url: Optional[str] = Field(
        default=None,
        description="Base URL the in-VM runner uses to reach the callback endpoint",
    )
    log_level: str = Field(default="INFO", description="Logging level")
    docs_enabled: bool = Field(default=True, description="Expose OpenAPI docs")

    # Provisioner
    provisioner_url: str = Field(..., description="Provisioner service base URL")
    provisioner_api_token: Optional[str] = Field(
        default=None, description="Bearer token for the provisioner API"
    )
    provisioner_timeout: float = Field(
        default=30.0, gt=0, description="Provisioner request timeout in seconds"
    )
    provisioner_max_attempts: int = Field(
        default=3, ge=1, description="Attempts per provisioner call on transient errors"
    )

    # Job defaults
    default_vm_template: str = Field(
        default="agent-template", description="VM template used when the manifest has none"
    )
    default_timeout: int = Field(
        default=3600, ge=1, description="Runner timeout when the manifest has none"
    )
    default_cpu: int = Field(default=2, ge=1, description="Default vCPU count")
    default_memory: str = Field(
        default="2G", pattern=r"^\d+[GMK]$", description="Default VM memory"
    )
    default_disk: str = Field(
        default="10G", pattern=r"^\d+[GMK]$", description="Default VM disk size"
    )

    # Reconciliation
    heartbeat_threshold_seconds: int = Field(
        default=120,
        ge=30,
        description="Seconds without a heartbeat before a running job is stale",
    )
    cleanup_interval_seconds: int = Field(
        default=30, ge=10, description="Seconds between reconciliation ticks"
    )
    cleanup_concurrency: int = Field(
        default=5, ge=1, description="Concurrent environment destroys per tick"
    )
    job_retention_seconds: Optional[int] = Field(
        default=None,
        ge=0,
        description="Evict finished jobs this long after completion (unset = keep)",
    )

    # Request size limits
    max_request_body_size: int = Field(
        default=10 * 1024 * 1024,  # 10 MB
        description="Maximum request body size in bytes",
    )

    # Sentry Observability
    sentry_dsn: Optional[str] = Field(
        default=None, description="Sentry DSN for error tracking"
    )
    sentry_environment: str = Field(
        default="development", description="Sentry environment tag"
    )
    sentry_traces_sample_rate: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Sentry performance tracing sample rate (0.0-1.0)",
    )

    @property
    def callback_base_url(self) -> str:
        """Get the callback base URL handed to job runners."""
        if self.callback_public_url:
            return self.callback_public_url.rstrip("/")
        host = "localhost" if self.callback_host == "0.0.0.0" else self.callback_host
        return f"http://{host}:{self.callback_port}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
