"""Configuration settings for hubris_imagegen.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_store_dir() -> Path:
    """Return the default content-addressed store directory."""
    return Path.home() / ".cache" / "hubris-imagegen" / "store"


def _default_artifacts_dir() -> Path:
    """Return the default directory for published image artifacts."""
    return Path.home() / ".local" / "share" / "hubris-imagegen" / "artifacts"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "hubris-imagegen" / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the HUBRIS_IMG_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="HUBRIS_IMG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    store_dir: Path = Field(
        default_factory=_default_store_dir,
        description="Root of the vendor store and derivation cache",
    )
    artifacts_dir: Path = Field(
        default_factory=_default_artifacts_dir,
        description="Directory where finished images are published",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL",
    )
    tmp_dir: Path | None = Field(
        default=None,
        description="Temporary directory for builds (uses system default if not set)",
    )
    toolchain_dir: Path | None = Field(
        default=None,
        description="Root of the pinned Rust toolchain (contains bin/)",
    )

    # Operational modes
    offline: bool = Field(
        default=False,
        description="Offline mode - vendor only from the local store",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    keep_build_dir: bool = Field(
        default=False,
        description="Keep derivation work directories after execution",
    )

    # Source filtering and identity
    excluded_names: list[str] = Field(
        default_factory=lambda: ["target", ".git", "result", ".direnv"],
        description="Base names pruned from source snapshots",
    )
    manifest_root: str = Field(
        default="app",
        description="Directory that holds application manifests",
    )
    default_version: str = Field(
        default="0.1.0",
        description="Version used when none is requested",
    )

    # Provenance
    version_env_var: str = Field(
        default="HUBRIS_CABOOSE_VERS",
        description="Environment variable carrying the image version",
    )
    version_env_prefix: str = Field(
        default="",
        description="Prefix prepended to the version in the provenance variable",
    )
    vcs_sentinel: str = Field(
        default="hermetic-" + "0" * 40,
        description="Revision reported by the git shim",
    )
    toolchain_tools: list[str] = Field(
        default_factory=lambda: ["rustfmt", "rustc", "cargo", "clippy-driver"],
        description="Tools the rustup shim can locate in the pinned toolchain",
    )

    # Dependency resolution
    crates_download_url: str = Field(
        default="https://static.crates.io/crates",
        description="Base URL for crate archive downloads",
    )

    # Execution
    deps_build_args: list[str] = Field(
        default_factory=lambda: ["build", "--release", "--locked", "--offline"],
        description="cargo arguments used to compile the dependency layer",
    )
    sandbox_command: list[str] = Field(
        default_factory=list,
        description="Command prefix isolating build steps (e.g. unshare -rn)",
    )

    # Concurrency
    max_concurrent_builds: int = Field(
        default=2,
        ge=1,
        le=16,
        description="Maximum concurrent image builds in a batch",
    )

    # Timeouts (in seconds)
    download_timeout: int = Field(
        default=600,
        ge=10,
        description="Timeout for a single dependency download",
    )
    build_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for a single build step",
    )
    lock_timeout: int = Field(
        default=3600,
        ge=1,
        description="Timeout waiting for another process building the same key",
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
