"""Configuration settings for steiger.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the STEIGER_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="STEIGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Project
    config_file: str = Field(
        default="steiger.yml",
        description="Service configuration file, relative to the project dir",
    )
    builder_name: str = Field(
        default="steiger",
        description="Name of the persistent buildx builder instance",
    )

    # Operational modes
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    detect_cluster_platform: bool = Field(
        default=True,
        description="Infer the target platform from the active Kubernetes context",
    )
    kube_context: str | None = Field(
        default=None,
        description="Kubernetes context used for platform detection",
    )

    # Concurrency
    max_concurrent_builds: int | None = Field(
        default=None,
        ge=1,
        description="Maximum concurrent builds (unbounded if not set)",
    )

    # Registry
    insecure_registries: list[str] = Field(
        default_factory=list,
        description="Registry hosts reached over plain HTTP",
    )
    registry_max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retries for failed registry requests",
    )
    registry_backoff: float = Field(
        default=0.5,
        ge=0,
        description="Base delay in seconds for registry retry backoff",
    )

    # Timeouts (in seconds)
    build_timeout: int | None = Field(
        default=None,
        ge=1,
        description="Timeout for a single build invocation (none if not set)",
    )
    command_timeout: int = Field(
        default=60,
        ge=1,
        description="Timeout for short helper commands",
    )
    registry_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Timeout for a single registry request",
    )


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
