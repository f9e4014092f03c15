"""Configuration settings for probe_builder.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

import os
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Fields that must be set before a build run can start
BUILD_PARAMETERS = ("probe_name", "probe_version", "probe_source_dir")


class ConfigurationError(Exception):
    """Raised when mandatory run parameters are missing or invalid."""

    def __init__(self, message: str, code: str = "configuration_error") -> None:
        super().__init__(message)
        self.code = code


def _default_work_dir() -> Path:
    """Return the default download and unpack directory."""
    return Path.home() / ".cache" / "probe-builder"


def _default_output_dir() -> Path:
    """Return the default artifact directory."""
    return Path.home() / ".local" / "share" / "probe-builder" / "output"


def _default_fetch_concurrency() -> int:
    """Return the host core count."""
    return os.cpu_count() or 1


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the PROBE_BUILDER_
    prefix. CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="PROBE_BUILDER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Probe identity
    probe_name: str | None = Field(
        default=None,
        description="Name of the kernel module being built",
    )
    probe_version: str | None = Field(
        default=None,
        description="Version of the kernel module being built",
    )
    probe_source_dir: Path | None = Field(
        default=None,
        description="Module source tree mounted into the builder container",
    )

    # Paths
    work_dir: Path = Field(
        default_factory=_default_work_dir,
        description="Root directory for downloaded and unpacked kernels",
    )
    output_dir: Path = Field(
        default_factory=_default_output_dir,
        description="Directory receiving built probe artifacts",
    )
    builder_dir: Path = Field(
        default=Path("builder"),
        description="Directory holding Dockerfile.<distro>-gcc<version> files",
    )
    kernel_list_dir: Path | None = Field(
        default=None,
        description="Directory of <family>.txt kernel URL lists",
    )

    # Toolchain images
    builder_image_prefix: str | None = Field(
        default=None,
        description="Pull builder images from this registry prefix instead of building",
    )
    docker_binary: str = Field(
        default="docker",
        description="Container runtime executable",
    )
    arch: str = Field(
        default="x86_64",
        description="Target architecture",
    )

    # Fetching
    fetch_concurrency: int = Field(
        default_factory=_default_fetch_concurrency,
        ge=0,
        description="Concurrent kernel downloads (0 disables fetching)",
    )
    fetch_retries: int = Field(
        default=3,
        ge=1,
        description="Attempts per kernel download",
    )
    fetch_timeout: int = Field(
        default=300,
        ge=1,
        description="Timeout per download attempt in seconds",
    )
    strict_fetch: bool = Field(
        default=False,
        description="Treat failed downloads as run failures",
    )

    # Builds
    build_timeout: int | None = Field(
        default=None,
        ge=60,
        description="Timeout for a single containerized build",
    )
    log_excerpt_lines: int = Field(
        default=200,
        ge=1,
        description="Lines of a failed build log kept in the failure report",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    def missing_build_parameters(self) -> list[str]:
        """Return the names of mandatory build parameters that are unset."""
        return [name for name in BUILD_PARAMETERS if not getattr(self, name)]


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def require_build_parameters(settings: Settings) -> None:
    """Check that a build run has everything it needs.

    Args:
        settings: Effective settings.

    Raises:
        ConfigurationError: If a mandatory parameter is missing.
    """
    missing = settings.missing_build_parameters()
    if missing:
        raise ConfigurationError(
            "Missing mandatory build parameters: " + ", ".join(missing),
            code="missing_parameters",
        )
    if not Path(str(settings.probe_source_dir)).is_dir():
        raise ConfigurationError(
            f"Probe source directory does not exist: {settings.probe_source_dir}",
            code="missing_source",
        )


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
    "ConfigurationError",
    "Settings",
    "get_settings",
    "print_settings_json",
    "require_build_parameters",
]
