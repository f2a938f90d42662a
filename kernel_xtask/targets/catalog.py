"""Static catalog of architectures, boards and feature flags.

Every combination rule used by target validation lives here so that the
set of supported targets can be read in one place.
"""

from dataclasses import dataclass

from kernel_xtask.types import Arch

KERNEL_FEATURES = frozenset(
    {"linux", "zircon", "libos", "board-qemu", "board-d1", "link-user-img"}
)

ROOTFS_FEATURES = frozenset(
    {"musl-libs", "libc-test", "other-test", "ffmpeg", "opencv"}
)

# Overlays that build on top of another overlay when it is present
SOFT_REQUIREMENTS: dict[str, tuple[str, ...]] = {
    "opencv": ("ffmpeg",),
}


@dataclass(frozen=True)
class ArchProfile:
    """Per-architecture catalog entry.

    Attributes:
        arch: Architecture.
        boards: Supported board variants mapped to their board feature
            (None if the board has no feature flag).
        default_board: Board used when none is given.
        rootfs_features: Rootfs overlays offered on this architecture.
        kernel_only_features: Kernel features restricted to this architecture.
    """

    arch: Arch
    boards: dict[str, str | None]
    default_board: str
    rootfs_features: frozenset[str]
    kernel_only_features: frozenset[str]


ARCH_PROFILES: dict[Arch, ArchProfile] = {
    Arch.X86_64: ArchProfile(
        arch=Arch.X86_64,
        boards={"generic": None},
        default_board="generic",
        rootfs_features=ROOTFS_FEATURES,
        kernel_only_features=frozenset({"zircon", "libos"}),
    ),
    Arch.RISCV64: ArchProfile(
        arch=Arch.RISCV64,
        boards={"qemu": "board-qemu", "d1": "board-d1"},
        default_board="qemu",
        rootfs_features=ROOTFS_FEATURES,
        kernel_only_features=frozenset({"link-user-img"}),
    ),
}


def get_arch_profile(arch: Arch) -> ArchProfile:
    """Return the catalog entry for an architecture."""
    return ARCH_PROFILES[arch]


def board_features() -> frozenset[str]:
    """Return every board-* feature known to the catalog."""
    return frozenset(f for f in KERNEL_FEATURES if f.startswith("board-"))


__all__ = [
    "ARCH_PROFILES",
    "KERNEL_FEATURES",
    "ROOTFS_FEATURES",
    "SOFT_REQUIREMENTS",
    "ArchProfile",
    "board_features",
    "get_arch_profile",
]
