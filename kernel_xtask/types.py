"""Shared type definitions for kernel_xtask.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum, IntEnum


class Arch(str, Enum):
    """Supported target architectures."""

    X86_64 = "x86_64"
    RISCV64 = "riscv64"


class OverlayPriority(IntEnum):
    """Application order of rootfs overlays (lower applies first)."""

    CORE = 10
    TESTS = 20
    MEDIA = 30
    VISION = 40


class FsKind(str, Enum):
    """Filesystem kind for packaged images."""

    SFS = "sfs"
    EXT4 = "ext4"


class LaunchMode(str, Enum):
    """Execution mode of a kernel launch."""

    EMULATED = "emulated"
    LIBOS = "libos"


@dataclass
class OperationResult:
    """Result of a dispatched operation (rootfs, image, launch, etc.)."""

    success: bool
    message: str
    code: str | None = None
    log_path: str | None = None
    details: dict[str, object] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


__all__ = [
    "Arch",
    "FsKind",
    "LaunchMode",
    "OperationResult",
    "OverlayPriority",
]
