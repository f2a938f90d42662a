"""Cross toolchain resolution.

Maps an architecture to a musl cross-compiler prefix and sysroot and
verifies that the compiler is present. The lookup is driven by the
Settings object passed in, never by ambient globals, so tests can point
it at fake toolchain directories.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from kernel_xtask.errors import ToolchainMissing
from kernel_xtask.types import Arch

if TYPE_CHECKING:
    from kernel_xtask.config import Settings

logger = logging.getLogger(__name__)

# Compiler prefix per architecture
TOOLCHAIN_PREFIXES: dict[Arch, str] = {
    Arch.X86_64: "x86_64-linux-musl-",
    Arch.RISCV64: "riscv64-linux-musl-",
}


@dataclass(frozen=True)
class Toolchain:
    """Resolved cross toolchain.

    Attributes:
        arch: Target architecture.
        prefix: Tool prefix (e.g. 'riscv64-linux-musl-').
        bin_dir: Directory holding the prefixed tools.
        sysroot: Target sysroot (headers and libraries).
    """

    arch: Arch
    prefix: str
    bin_dir: Path
    sysroot: Path

    def tool(self, name: str) -> Path:
        """Path of a prefixed tool, e.g. tool('gcc')."""
        return self.bin_dir / f"{self.prefix}{name}"

    @property
    def cc(self) -> Path:
        return self.tool("gcc")

    @property
    def cxx(self) -> Path:
        return self.tool("g++")

    def path_env(self) -> str:
        """PATH value with the toolchain bin directory prepended."""
        current = os.environ.get("PATH", "")
        return f"{self.bin_dir}{os.pathsep}{current}" if current else str(self.bin_dir)


def toolchain_dirname(arch: Arch) -> str:
    """Directory name of the extracted musl.cc cross toolchain."""
    return f"{TOOLCHAIN_PREFIXES[arch]}cross"


class ToolchainResolver:
    """Resolves and caches toolchains per architecture."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._cache: dict[Arch, Toolchain] = {}

    def search_path(self, arch: Arch) -> list[Path]:
        """Directories searched for the compiler, in order."""
        if self.settings.toolchain_search_path:
            return list(self.settings.toolchain_search_path)
        paths = [self.settings.toolchain_dir / toolchain_dirname(arch) / "bin"]
        paths.extend(
            Path(p) for p in os.environ.get("PATH", "").split(os.pathsep) if p
        )
        return paths

    def resolve(self, arch: Arch) -> Toolchain:
        """Resolve the toolchain for an architecture.

        Args:
            arch: Target architecture.

        Returns:
            Toolchain for the architecture.

        Raises:
            ToolchainMissing: If the compiler is not on the search path.
        """
        if arch in self._cache:
            return self._cache[arch]

        prefix = TOOLCHAIN_PREFIXES[arch]
        compiler = f"{prefix}gcc"
        search = os.pathsep.join(str(p) for p in self.search_path(arch))
        found = shutil.which(compiler, path=search)
        if found is None:
            raise ToolchainMissing(arch.value, compiler, search)

        bin_dir = Path(found).parent
        toolchain = Toolchain(
            arch=arch,
            prefix=prefix,
            bin_dir=bin_dir,
            sysroot=bin_dir.parent / prefix.rstrip("-"),
        )
        logger.debug("Resolved %s toolchain at %s", arch.value, bin_dir)
        self._cache[arch] = toolchain
        return toolchain

    def is_available(self, arch: Arch) -> bool:
        """Check toolchain presence without raising."""
        try:
            self.resolve(arch)
        except ToolchainMissing:
            return False
        return True


__all__ = [
    "TOOLCHAIN_PREFIXES",
    "Toolchain",
    "ToolchainResolver",
    "toolchain_dirname",
]
