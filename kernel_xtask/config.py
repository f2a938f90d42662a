"""Configuration settings for kernel_xtask.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.

Directory fields left unset are resolved relative to ``repo_root`` so a
single override relocates the whole working layout (tests rely on this).
"""

from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the XTASK_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="XTASK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    repo_root: Path = Field(
        default_factory=Path.cwd,
        description="Root of the kernel repository",
    )
    rootfs_dir: Path | None = Field(
        default=None,
        description="Root directory for per-architecture rootfs trees",
    )
    image_dir: Path | None = Field(
        default=None,
        description="Directory receiving <arch>.img disk images",
    )
    prebuilt_dir: Path | None = Field(
        default=None,
        description="Read-only prefix holding prebuilt archives and libraries",
    )
    cache_dir: Path | None = Field(
        default=None,
        description="Download cache for fetched archives",
    )
    toolchain_dir: Path | None = Field(
        default=None,
        description="Directory holding extracted cross toolchains and firmware",
    )
    log_dir: Path | None = Field(
        default=None,
        description="Directory for external tool logs",
    )
    toolchain_search_path: list[Path] = Field(
        default_factory=list,
        description="Explicit compiler search path (overrides toolchain_dir and PATH)",
    )

    # Operational modes
    offline: bool = Field(
        default=False,
        description="Offline mode - do not download prebuilt archives",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Image packaging
    image_pad: str = Field(
        default="+5M",
        pattern=r"^\+\d+[KMG]?$",
        description="Grow size passed to qemu-img resize",
    )
    image_fs: Literal["sfs", "ext4"] = Field(
        default="sfs",
        description="Filesystem kind for packaged images",
    )
    qemu_memory: str = Field(
        default="512M",
        description="Guest memory for emulated launches",
    )

    # Timeouts (in seconds)
    build_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for build steps (make, cargo, cmake)",
    )
    download_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for prebuilt downloads",
    )

    # External tools
    packer: str = Field(default="rcore-fs-fuse", description="SFS image packer")
    mkfs_ext4: str = Field(default="mkfs.ext4", description="ext4 image packer")
    qemu_img: str = Field(default="qemu-img", description="Image resize tool")
    cargo: str = Field(default="cargo", description="Cargo executable")
    rustup: str = Field(default="rustup", description="Rustup executable")
    qemu_system: str = Field(
        default="qemu-system",
        description="Emulator prefix; the architecture is appended",
    )
    objdump: str = Field(default="rust-objdump", description="Disassembler")
    objcopy: str = Field(default="rust-objcopy", description="Binary stripper")
    gdb: str = Field(default="gdb-multiarch", description="Debugger")
    host_cc: str = Field(default="gcc", description="Host C compiler")
    make: str = Field(default="make", description="Make executable")
    cmake: str = Field(default="cmake", description="CMake executable")
    git: str = Field(default="git", description="Git executable")

    # Prebuilt sources
    alpine_mirror: str = Field(
        default="https://dl-cdn.alpinelinux.org/alpine/v3.12/releases",
        description="Alpine release mirror for the x86_64 minirootfs",
    )
    alpine_version: str = Field(
        default="3.12.0",
        description="Alpine minirootfs version",
    )

    @model_validator(mode="after")
    def _resolve_layout(self) -> "Settings":
        """Fill unset directories relative to repo_root."""
        root = self.repo_root
        defaults = {
            "rootfs_dir": root / "rootfs",
            "image_dir": root / "zCore",
            "prebuilt_dir": root / "prebuilt",
            "cache_dir": root / "ignored" / "origin",
            "toolchain_dir": root / "ignored" / "target",
            "log_dir": root / "ignored" / "logs",
        }
        for name, default in defaults.items():
            if getattr(self, name) is None:
                object.__setattr__(self, name, default)
        return self


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
