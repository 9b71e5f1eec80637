"""Configuration settings for kata_static.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.

Settings are immutable: per-target overrides (for example forcing a
measured rootfs for confidential targets) produce a modified copy with
``Settings.with_overrides()`` instead of mutating shared state.
"""

import platform
from pathlib import Path
from typing import Any, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Default Jenkins instance publishing cached component tarballs
DEFAULT_CACHE_URL = "http://jenkins.katacontainers.io"

# Default registry for the containerised static builders
DEFAULT_BUILDER_REGISTRY = "quay.io/kata-containers/builders"


def _default_arch() -> str:
    """Return the host machine architecture."""
    return platform.machine()


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the KATA_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="KATA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Paths
    workdir: Path = Field(
        default_factory=Path.cwd,
        description="Working directory holding build/ and the final tarballs",
    )
    repo_root: Path = Field(
        default_factory=Path.cwd,
        description="Root of the kata-containers source checkout",
    )
    prefix: str = Field(
        default="/opt/kata",
        description="Install prefix inside every component tarball",
    )

    # Target platform and boot hardening
    arch: str = Field(
        default_factory=_default_arch,
        description="Target architecture (defaults to the host machine)",
    )
    measured_rootfs: bool = Field(
        default=False,
        description="Build a measured (dm-verity protected) guest rootfs",
    )
    dm_verity: bool = Field(
        default=False,
        description="Enable dm-verity for the guest rootfs",
    )
    aa_kbc: str | None = Field(
        default=None,
        description="Attestation agent key broker client for confidential images",
    )

    # Remote cache
    use_cache: bool = Field(
        default=True,
        description="Reuse published component tarballs when fingerprints match",
    )
    cache_url: str = Field(
        default=DEFAULT_CACHE_URL,
        description="Base URL of the CI server publishing cached tarballs",
    )
    builder_registry: str = Field(
        default=DEFAULT_BUILDER_REGISTRY,
        description="Container registry of the static builder images",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Timeouts (in seconds)
    request_timeout: int = Field(
        default=30,
        ge=1,
        description="Timeout for cache pointer and checksum requests",
    )
    download_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for cached tarball downloads",
    )
    build_timeout: int | None = Field(
        default=None,
        ge=60,
        description="Timeout for external builders (None waits indefinitely)",
    )

    @property
    def build_root(self) -> Path:
        """Directory holding the per-target destdir/builddir pairs."""
        return self.workdir / "build"

    @property
    def osbuilder_dir(self) -> Path:
        """Directory where rootfs root-hash files are exchanged."""
        return self.repo_root / "tools" / "osbuilder"

    def with_overrides(self, **overrides: Any) -> "Settings":
        """Return a copy of these settings with some fields replaced.

        Args:
            **overrides: Field names and their new values.

        Returns:
            New Settings instance; self is left untouched.
        """
        if not overrides:
            return self
        return self.model_copy(update=overrides)


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


__all__ = [
    "DEFAULT_BUILDER_REGISTRY",
    "DEFAULT_CACHE_URL",
    "Settings",
    "get_settings",
    "print_settings_json",
]
