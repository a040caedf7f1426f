"""NETFORGE Settings configuration.

Uses Pydantic Settings for type-safe configuration management
with support for environment variables and .env files.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from netforge.version import __version__


DEFAULT_LOCAL_CONFIG_PATH = Path.home() / ".netforge" / "local-config.yaml"


class KubernetesSettings(BaseSettings):
    """Kubernetes configuration."""

    model_config = SettingsConfigDict(
        env_prefix="NETFORGE_K8S_",
        extra="ignore",
    )

    kubeconfig: str | None = Field(
        default=None,
        description="Path to kubeconfig file (None = default loader rules)",
    )
    context: str | None = Field(
        default=None,
        description="Context for cluster references with no mapping (None = active context)",
    )
    api_timeout: int = Field(
        default=30,
        ge=1,
        description="Kubernetes API request timeout in seconds",
    )
    local_config_path: Path = Field(
        default=DEFAULT_LOCAL_CONFIG_PATH,
        description="File mapping cluster references to kubeconfig contexts",
    )


class LockSettings(BaseSettings):
    """Deployment lock configuration."""

    model_config = SettingsConfigDict(
        env_prefix="NETFORGE_LOCK_",
        extra="ignore",
    )

    lease_duration_seconds: int = Field(
        default=20,
        ge=3,
        description="Seconds a lease stays valid without renewal",
    )
    max_wait_seconds: float = Field(
        default=60.0,
        ge=0.0,
        description="Maximum time to wait for a contended lock",
    )
    read_retries: int = Field(
        default=4,
        ge=0,
        description="Retries for lease/config reads on transient server errors",
    )
    read_retry_delay_seconds: float = Field(
        default=5.0,
        ge=0.0,
        description="Fixed backoff between read retries",
    )
    lease_name: str | None = Field(
        default=None,
        description="Lease name override (None = derived from deployment name)",
    )


class RemoteConfigSettings(BaseSettings):
    """Remote configuration storage settings."""

    model_config = SettingsConfigDict(
        env_prefix="NETFORGE_REMOTE_CONFIG_",
        extra="ignore",
    )

    configmap_name: str = Field(
        default="netforge-remote-config",
        description="Name of the ConfigMap holding the remote config",
    )
    data_key: str = Field(
        default="remote-config-data",
        description="ConfigMap data key holding the YAML document",
    )
    labels: dict[str, str] = Field(
        default_factory=lambda: {"netforge.io/type": "remote-config"},
        description="Labels applied to the remote config ConfigMap",
    )
    max_write_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per cluster when a write loses an optimistic-concurrency race",
    )


class ObservabilitySettings(BaseSettings):
    """Observability configuration."""

    model_config = SettingsConfigDict(
        env_prefix="NETFORGE_OBSERVABILITY_",
        extra="ignore",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "console"] = Field(
        default="console",
        description="Log output format",
    )
    metrics_enabled: bool = Field(
        default=True,
        description="Register Prometheus metrics in the default registry",
    )
    metrics_namespace: str = Field(
        default="netforge",
        description="Prefix for Prometheus metric names",
    )


class Settings(BaseSettings):
    """Main NETFORGE configuration."""

    model_config = SettingsConfigDict(
        env_prefix="NETFORGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    version: str = Field(default=__version__)
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    quiet: bool = Field(
        default=False,
        description="Non-interactive mode: never prompt, use defaults",
    )

    kubernetes: KubernetesSettings = Field(default_factory=KubernetesSettings)
    lock: LockSettings = Field(default_factory=LockSettings)
    remote_config: RemoteConfigSettings = Field(default_factory=RemoteConfigSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    @field_validator("environment", mode="before")
    @classmethod
    def normalize_environment(cls, v: str) -> str:
        """Accept environment names in any case."""
        return v.lower() if isinstance(v, str) else v

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Settings are cached after first load; use :func:`reload_settings`
    to pick up environment changes.

    Returns:
        Settings: The application settings instance.
    """
    return Settings()


def reload_settings() -> Settings:
    """Force reload settings (clears cache).

    Returns:
        Settings: Fresh settings instance.
    """
    get_settings.cache_clear()
    return get_settings()
