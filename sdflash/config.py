"""Configuration settings for sdflash.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = "SDFLASH_"


def _default_search_dirs() -> list[Path]:
    """Return the standard installation directories searched for helpers."""
    return [
        Path("/usr/local/sbin"),
        Path("/usr/local/bin"),
        Path("/usr/sbin"),
        Path("/usr/bin"),
        Path("/sbin"),
        Path("/bin"),
    ]


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the SDFLASH_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="WARNING",
        description="Logging level",
    )

    # Helper programs
    search_dirs: list[Path] = Field(
        default_factory=_default_search_dirs,
        description="Directories searched, in order, for helper programs",
    )
    elevate: Literal["auto", "sudo", "none"] = Field(
        default="auto",
        description="Privilege elevation: sudo unless already root, always, or never",
    )

    # Kernel interfaces and mount handling
    sysfs_root: Path = Field(
        default=Path("/sys"),
        description="Root of the sysfs tree used for MMC card type checks",
    )
    mount_root: Path = Field(
        default=Path("/mnt"),
        description="Directory under which NOOBS partitions are mounted",
    )

    # Writing
    block_size: str = Field(
        default="4M",
        description="Block size passed to dd",
    )
    bootstrap_min_device_bytes: int = Field(
        default=7_000_000_000,
        ge=0,
        description="Minimum card size for NOOBS installer archives",
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


__all__ = ["ENV_PREFIX", "Settings", "get_settings", "print_settings_json"]
