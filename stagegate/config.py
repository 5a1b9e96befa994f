"""Configuration settings for stagegate.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_work_dir() -> Path:
    """Return the default working directory for stage outputs."""
    return Path.home() / ".cache" / "stagegate" / "work"


def _default_reports_dir() -> Path:
    """Return the default directory for verification reports."""
    return Path.home() / ".local" / "share" / "stagegate" / "reports"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "stagegate" / "ledger.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the STAGEGATE_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="STAGEGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    work_dir: Path = Field(
        default_factory=_default_work_dir,
        description="Root directory for stage outputs",
    )
    reports_dir: Path = Field(
        default_factory=_default_reports_dir,
        description="Root directory for verification reports",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL for the persisted ledger",
    )

    # Platform handling
    target_platform: str | None = Field(
        default=None,
        description="Platform override applied to every stage of a run",
    )
    compatibility: Literal["minimum-version", "exact"] = Field(
        default="minimum-version",
        description="Predicate used to compare libc/runtime library versions",
    )

    # Execution
    executor: Literal["docker", "local"] = Field(
        default="docker",
        description="Build executor used to run stage commands and checks",
    )
    docker_binary: str = Field(
        default="docker",
        description="Container CLI binary used by the docker executor",
    )
    max_workers: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Maximum stages executed concurrently",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Timeouts (in seconds); unset means no timeout
    stage_timeout: int | None = Field(
        default=None,
        ge=1,
        description="Timeout for a single stage's commands",
    )
    check_timeout: int | None = Field(
        default=None,
        ge=1,
        description="Timeout for a single verification check",
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
