"""Configuration management for the rollout driver."""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Rollout driver settings."""

    model_config = SettingsConfigDict(
        env_prefix="ROLLOUT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: str = "INFO"

    # Kubernetes Settings
    kubeconfig_path: Optional[str] = Field(
        default=None,
        description="Path to kubeconfig file (default kubeconfig when unset)",
    )
    kubeconfig_data: Optional[str] = Field(
        default=None,
        description="Base64 encoded kubeconfig, takes precedence over kubeconfig_path",
    )
    kube_context: Optional[str] = None
    in_cluster: bool = False
    default_namespace: str = "default"

    # Field manager / annotation prefix
    prefix: str = Field(
        default="rollout",
        description="Prefix for field managers and the redeploy annotation",
    )

    # Rollout Tracking Settings
    rollout_timeout_seconds: float = Field(default=600.0, gt=0)
    check_interval_seconds: float = Field(default=2.0, gt=0)
    strict: bool = Field(
        default=True,
        description="Require status.replicas == spec.replicas before ready",
    )
    verbosity: int = Field(
        default=1,
        ge=0,
        description="0: terminal only, 1: +deploying, 2: +updated and stale polls",
    )
    include_status: bool = True
    event_queue_size: int = Field(default=16, ge=1)

    # Gateway Settings
    gateway_retry_attempts: int = Field(
        default=1,
        ge=1,
        description="Attempts for transient API errors (1 disables retries)",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
