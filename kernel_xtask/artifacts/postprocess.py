"""Post-processing of an already-built kernel binary.

Neither operation builds anything: both fail with ArtifactNotFound when
the kernel ELF for the architecture does not exist yet.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

from kernel_xtask.artifacts.kernel import kernel_elf
from kernel_xtask.errors import ArtifactNotFound
from kernel_xtask.types import Arch

if TYPE_CHECKING:
    from kernel_xtask.config import Settings
    from kernel_xtask.runner import ToolRunner

logger = logging.getLogger(__name__)


def default_asm_path(elf: Path) -> Path:
    return elf.with_name(f"{elf.name}.asm")


def default_bin_path(elf: Path) -> Path:
    return elf.with_name(f"{elf.name}.bin")


class ArtifactPostProcessor:
    """Disassembles and strips kernel binaries."""

    def __init__(self, settings: Settings, runner: ToolRunner) -> None:
        self.settings = settings
        self.runner = runner

    def _elf(self, arch: Arch, elf: Path | None) -> Path:
        path = elf or kernel_elf(self.settings, arch)
        if not path.is_file():
            raise ArtifactNotFound(str(path))
        return path

    def disassemble(
        self,
        arch: Arch,
        output: Path | None = None,
        elf: Path | None = None,
    ) -> Path:
        """Write a disassembly dump of the kernel.

        The dump is written beside ``output`` and renamed into place only
        when objdump succeeds, so a failure leaves any previous dump intact.

        Args:
            arch: Architecture.
            output: Output path (default: ``zcore.asm`` next to the ELF).
            elf: Kernel ELF (default: the architecture's release build).

        Returns:
            Path of the dump.
        """
        source = self._elf(arch, elf)
        out = output or default_asm_path(source)
        out.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=out.parent, prefix=f".{out.name}.", suffix=".tmp"
        )
        os.close(fd)
        tmp_out = Path(tmp_name)
        try:
            self.runner.run_checked(
                [self.settings.objdump, "-d", "--print-imm-hex", source],
                stdout_path=tmp_out,
                label=f"asm-{arch.value}",
            )
            os.replace(tmp_out, out)
        except BaseException:
            tmp_out.unlink(missing_ok=True)
            raise
        logger.info("Disassembly written to %s", out)
        return out

    def strip(
        self,
        arch: Arch,
        output: Path | None = None,
        elf: Path | None = None,
    ) -> Path:
        """Write a stripped raw binary of the kernel.

        Args:
            arch: Architecture.
            output: Output path (default: ``zcore.bin`` next to the ELF).
            elf: Kernel ELF (default: the architecture's release build).

        Returns:
            Path of the stripped binary.
        """
        source = self._elf(arch, elf)
        out = output or default_bin_path(source)
        out.parent.mkdir(parents=True, exist_ok=True)
        cmd: list[str | Path] = [self.settings.objcopy]
        if arch is Arch.RISCV64:
            cmd.append("--binary-architecture=riscv64")
        cmd.extend([source, "--strip-all", "-O", "binary", out])
        self.runner.run_checked(cmd, label=f"bin-{arch.value}")
        logger.info("Stripped binary written to %s", out)
        return out


__all__ = ["ArtifactPostProcessor", "default_asm_path", "default_bin_path"]
