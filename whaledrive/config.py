"""Configuration settings for whaledrive.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.

A Settings instance is built once by the CLI and passed explicitly to
every component; nothing reads configuration from module globals.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_REGISTRY_URL = "https://registry-1.docker.io"
DEFAULT_AUTH_URL = "https://auth.docker.io"
DEFAULT_AUTH_SERVICE = "registry.docker.io"
DEFAULT_BOOTLOADER_LABEL = "org.whaledrive.bootloader"


def _default_base_path() -> Path:
    """Return the default base directory (./data)."""
    return Path.cwd() / "data"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the WHALEDRIVE_
    prefix. CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="WHALEDRIVE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    base_path: Path = Field(
        default_factory=_default_base_path,
        description="Directory holding state.json, layers and images",
    )
    tmp_dir: Path | None = Field(
        default=None,
        description="Temporary directory for staging (uses system default if not set)",
    )

    # Registry
    registry_url: str = Field(
        default=DEFAULT_REGISTRY_URL,
        description="Base URL of the container registry",
    )
    auth_url: str = Field(
        default=DEFAULT_AUTH_URL,
        description="Base URL of the registry token service",
    )
    auth_service: str = Field(
        default=DEFAULT_AUTH_SERVICE,
        description="Service name requested from the token service",
    )
    bootloader_label: str = Field(
        default=DEFAULT_BOOTLOADER_LABEL,
        description="Image config label holding the in-image bootloader path",
    )

    # Operational
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="WARNING",
        description="Logging level (logs go to stderr)",
    )
    max_concurrent_downloads: int = Field(
        default=4,
        ge=1,
        le=16,
        description="Maximum concurrent layer downloads",
    )
    download_timeout: int = Field(
        default=3600,
        ge=1,
        description="Timeout for registry requests and downloads (seconds)",
    )

    @property
    def state_path(self) -> Path:
        """Path of the persisted state document."""
        return self.base_path / "state.json"

    @property
    def layers_dir(self) -> Path:
        """Directory of compressed layer archives."""
        return self.base_path / "layers_compressed"

    @property
    def images_dir(self) -> Path:
        """Directory of assembled disk images."""
        return self.base_path / "images"

    def image_path(self, digest: str) -> Path:
        """Return the default output path for an image digest."""
        return self.images_dir / f"{digest}.img"


def get_settings(**overrides: object) -> Settings:
    """Build settings from the environment, applying explicit overrides.

    Args:
        **overrides: Field values taking precedence over the environment.
            None values are ignored.

    Returns:
        Settings instance.
    """
    values = {k: v for k, v in overrides.items() if v is not None}
    return Settings(**values)


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


__all__ = [
    "DEFAULT_AUTH_SERVICE",
    "DEFAULT_AUTH_URL",
    "DEFAULT_BOOTLOADER_LABEL",
    "DEFAULT_REGISTRY_URL",
    "Settings",
    "get_settings",
    "print_settings_json",
]
