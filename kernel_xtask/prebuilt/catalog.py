"""Catalog of prebuilt archives consumed by the build.

Archives are looked up in the read-only prebuilt prefix first and then in
the download cache populated by `xtask init`.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from kernel_xtask.toolchain.resolver import toolchain_dirname
from kernel_xtask.types import Arch

if TYPE_CHECKING:
    from kernel_xtask.config import Settings

LIBC_TEST_PREBUILT_URL = (
    "https://github.com/rcore-os/libc-test-prebuilt/releases/download/0.1/prebuild.tar.xz"
)
MUSL_CC_BASE = "https://musl.cc"
RUSTSBI_QEMU_URL = (
    "https://github.com/rustsbi/rustsbi-qemu/releases/download/v0.1.1/"
    "rustsbi-qemu-release.zip"
)

# x86_64 loader shipped by the minirootfs; swapped for libc-libos.so in the tree
X86_64_LOADER = "lib/ld-musl-x86_64.so.1"
LIBC_LIBOS = Path("linux") / "libc-libos.so"


@dataclass(frozen=True)
class PrebuiltArchive:
    """A downloadable archive.

    Attributes:
        name: Short name used in logs and errors.
        filename: File name in the prebuilt prefix / download cache.
        url: Download URL.
        strip_components: Leading path components dropped on extraction.
        include: Top-level members to extract (None = everything).
        sha256: Expected checksum, when known.
    """

    name: str
    filename: str
    url: str
    strip_components: int = 0
    include: tuple[str, ...] | None = None
    sha256: str | None = None


def base_rootfs_archive(arch: Arch, settings: Settings) -> PrebuiltArchive:
    """Return the minimal base filesystem archive for an architecture."""
    if arch is Arch.RISCV64:
        return PrebuiltArchive(
            name="base-rootfs",
            filename="minirootfs.tar.xz",
            url=LIBC_TEST_PREBUILT_URL,
            strip_components=1,
            include=("bin", "lib"),
        )
    version = settings.alpine_version
    return PrebuiltArchive(
        name="base-rootfs",
        filename="minirootfs.tar.gz",
        url=(
            f"{settings.alpine_mirror}/x86_64/"
            f"alpine-minirootfs-{version}-x86_64.tar.gz"
        ),
    )


def toolchain_archive(arch: Arch) -> PrebuiltArchive:
    """Return the musl.cc cross toolchain archive for an architecture."""
    name = toolchain_dirname(arch)
    return PrebuiltArchive(
        name=name,
        filename=f"{name}.tgz",
        url=f"{MUSL_CC_BASE}/{name}.tgz",
    )


def rustsbi_archive() -> PrebuiltArchive:
    """Return the rustsbi-qemu firmware archive (riscv64 only)."""
    return PrebuiltArchive(
        name="rustsbi-qemu",
        filename="rustsbi-qemu-release.zip",
        url=RUSTSBI_QEMU_URL,
    )


def archive_candidates(
    archive: PrebuiltArchive, arch: Arch, settings: Settings
) -> list[Path]:
    """Locations searched for an archive, in priority order."""
    return [
        settings.prebuilt_dir / arch.value / archive.filename,
        settings.cache_dir / arch.value / archive.filename,
    ]


def locate_archive(
    archive: PrebuiltArchive, arch: Arch, settings: Settings
) -> Path | None:
    """Return the first existing location of an archive, if any."""
    for candidate in archive_candidates(archive, arch, settings):
        if candidate.is_file():
            return candidate
    return None


def rustsbi_firmware(settings: Settings) -> Path:
    """Path of the extracted rustsbi-qemu firmware image."""
    return settings.toolchain_dir / "rustsbi-qemu-release" / "rustsbi-qemu.bin"


def ovmf_firmware(settings: Settings) -> Path:
    """Path of the UEFI firmware used for x86_64 emulation."""
    return settings.prebuilt_dir / "firmware" / "OVMF.fd"


__all__ = [
    "LIBC_LIBOS",
    "PrebuiltArchive",
    "X86_64_LOADER",
    "archive_candidates",
    "base_rootfs_archive",
    "locate_archive",
    "ovmf_firmware",
    "rustsbi_archive",
    "rustsbi_firmware",
    "toolchain_archive",
]
