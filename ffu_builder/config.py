"""Configuration settings for ffu_builder.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.

These are environment-wide settings (directories, concurrency, polling).
Per-build parameters live in ffu_builder.buildconfig.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Subdirectories of downloads_dir, one per download batch kind
DOWNLOAD_KINDS = ("drivers", "apps", "updates")


def _default_state_dir() -> Path:
    """Return the default state directory (marker, progress log, database)."""
    return Path.home() / ".local" / "share" / "ffubuilder"


def _default_cache_dir() -> Path:
    """Return the default base-image cache directory."""
    return Path.home() / ".cache" / "ffubuilder" / "images"


def _default_work_dir() -> Path:
    """Return the default scratch directory for in-progress runs."""
    return Path.home() / ".cache" / "ffubuilder" / "work"


def _default_downloads_dir() -> Path:
    """Return the default directory for downloaded drivers, apps and updates."""
    return Path.home() / ".cache" / "ffubuilder" / "downloads"


def _default_output_dir() -> Path:
    """Return the default directory for finished images."""
    return Path.home() / ".local" / "share" / "ffubuilder" / "images"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = _default_state_dir() / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the FFU_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="FFU_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    state_dir: Path = Field(
        default_factory=_default_state_dir,
        description="Directory for the run marker, progress log and database",
    )
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Directory holding cached base images and their manifests",
    )
    work_dir: Path = Field(
        default_factory=_default_work_dir,
        description="Root directory for per-run scratch space",
    )
    downloads_dir: Path = Field(
        default_factory=_default_downloads_dir,
        description="Root directory for downloaded drivers, apps and updates",
    )
    output_dir: Path = Field(
        default_factory=_default_output_dir,
        description="Directory for finished images",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL for run history",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Concurrency (0 = one worker per item)
    max_concurrent_downloads: int = Field(
        default=4,
        ge=0,
        le=32,
        description="Maximum concurrent driver/app/update downloads",
    )
    max_concurrent_devices: int = Field(
        default=0,
        ge=0,
        le=64,
        description="Maximum USB devices provisioned at once",
    )

    # Downloads
    download_timeout: int = Field(
        default=3600,
        ge=10,
        description="Timeout for a single download, in seconds",
    )
    download_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Retries for transient network failures",
    )

    # Polling and process control (in seconds)
    vm_poll_interval: float = Field(
        default=5.0,
        gt=0,
        description="Interval between VM power-state polls",
    )
    vm_power_off_timeout: int | None = Field(
        default=None,
        ge=1,
        description="Upper bound on waiting for VM power-off (unset waits indefinitely)",
    )
    tool_poll_interval: float = Field(
        default=0.5,
        gt=0,
        description="Interval between external tool completion checks",
    )
    process_kill_grace: float = Field(
        default=5.0,
        ge=0,
        description="Grace period between SIGTERM and SIGKILL on cancel",
    )

    @property
    def marker_path(self) -> Path:
        """Path of the run marker sentinel."""
        return self.state_dir / "run.marker"

    @property
    def progress_log_path(self) -> Path:
        """Path of the append-only progress log."""
        return self.state_dir / "progress.log"


def get_settings() -> Settings:
    """Get the application settings singleton.

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


__all__ = ["DOWNLOAD_KINDS", "Settings", "get_settings", "print_settings_json"]
