"""Kernel launcher: emulated runs, debugger attach and libos runs.

Emulated mode starts ``qemu-system-<arch>`` with the machine configuration
for the architecture. With a debug port the guest starts halted, waiting
for ``attach()``. Libos mode runs the kernel as one host process bound to
one user binary; it always returns once that binary exits.
"""

from __future__ import annotations

import logging
import socket
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from kernel_xtask.errors import ArtifactNotFound, LaunchConfigError, LaunchFailed
from kernel_xtask.prebuilt.catalog import ovmf_firmware, rustsbi_firmware
from kernel_xtask.types import Arch, LaunchMode

if TYPE_CHECKING:
    from kernel_xtask.config import Settings
    from kernel_xtask.runner import ToolRunner

logger = logging.getLogger(__name__)

GDB_ARCH: dict[Arch, str] = {
    Arch.X86_64: "i386:x86-64",
    Arch.RISCV64: "riscv:rv64",
}

LIBOS_FEATURES = "linux libos"
CONNECT_TIMEOUT = 1.0


class LaunchSpec(BaseModel):
    """What to launch and how.

    Attributes:
        arch: Architecture.
        artifact: Kernel binary for emulated mode.
        image: Disk image attached in emulated mode.
        smp: Core count.
        gdb_port: Start halted and listen for a debugger on this port.
        libos_args: User binary and its arguments; selects libos mode.
        memory: Guest memory.
    """

    model_config = ConfigDict(frozen=True)

    arch: Arch
    artifact: Path | None = None
    image: Path | None = None
    smp: int = 1
    gdb_port: int | None = None
    libos_args: list[str] | None = None
    memory: str = Field(default="512M")

    @property
    def mode(self) -> LaunchMode:
        return LaunchMode.LIBOS if self.libos_args is not None else LaunchMode.EMULATED


def validate_port(port: int) -> int:
    """Raise LaunchConfigError unless port is a valid TCP port."""
    if not 1 <= port <= 65535:
        raise LaunchConfigError(f"Invalid debug port {port}: must be in 1..65535")
    return port


class Launcher:
    """Starts kernels under the emulator or as a libos process."""

    def __init__(self, settings: Settings, runner: ToolRunner) -> None:
        self.settings = settings
        self.runner = runner

    def validate(self, spec: LaunchSpec) -> None:
        """Check a spec before anything is started.

        Raises:
            LaunchConfigError: On an invalid combination of fields.
        """
        if spec.smp < 1:
            raise LaunchConfigError(f"Core count must be at least 1, got {spec.smp}")
        if spec.gdb_port is not None:
            validate_port(spec.gdb_port)

        if spec.mode is LaunchMode.LIBOS:
            if not spec.libos_args or not spec.libos_args[0].strip():
                raise LaunchConfigError("Libos mode needs the path of a user binary")
            if spec.arch is not Arch.X86_64:
                raise LaunchConfigError(
                    f"Libos mode is only supported on x86_64, not {spec.arch.value}"
                )
            if spec.gdb_port is not None:
                raise LaunchConfigError("A debug port cannot be used in libos mode")
        elif spec.artifact is None:
            raise LaunchConfigError("Emulated mode needs a kernel artifact")

    @staticmethod
    def _kernel_artifact(spec: LaunchSpec) -> Path:
        if spec.artifact is None:
            raise LaunchConfigError("Emulated mode needs a kernel artifact")
        return spec.artifact

    def compose_qemu_command(self, spec: LaunchSpec) -> list[str]:
        """Compose the emulator command for an emulated launch."""
        artifact = self._kernel_artifact(spec)
        cmd = [f"{self.settings.qemu_system}-{spec.arch.value}", "-smp", str(spec.smp)]

        if spec.arch is Arch.RISCV64:
            firmware = rustsbi_firmware(self.settings)
            if not firmware.is_file():
                raise LaunchConfigError(
                    f"RustSBI firmware missing at {firmware} (run `xtask init`)"
                )
            cmd += [
                "-machine", "virt",
                "-bios", str(firmware),
                "-m", spec.memory,
                "-serial", "mon:stdio",
                "-kernel", str(artifact),
            ]
            if spec.image is not None:
                cmd += ["-initrd", str(spec.image)]
            cmd += ["-append", "LOG=warn"]
        else:
            cmd += [
                "-machine", "q35",
                "-cpu", "Haswell,+smap,-check,-fsgsbase",
                "-bios", str(ovmf_firmware(self.settings)),
                "-m", spec.memory,
                "-serial", "mon:stdio",
                "-kernel", str(artifact),
            ]
            if spec.image is not None:
                cmd += ["-drive", f"format=raw,file={spec.image}"]
            cmd += ["-append", "LOG=warn"]

        cmd += ["-display", "none", "-no-reboot", "-nographic"]
        if spec.gdb_port is not None:
            cmd += ["-S", "-gdb", f"tcp::{spec.gdb_port}"]
        return cmd

    def compose_libos_command(self, spec: LaunchSpec) -> list[str]:
        if not spec.libos_args:
            raise LaunchConfigError("Libos mode needs the path of a user binary")
        return [
            self.settings.cargo,
            "run",
            "--package",
            "zcore",
            "--release",
            "--features",
            LIBOS_FEATURES,
            "--",
            *spec.libos_args,
        ]

    def launch(self, spec: LaunchSpec) -> int:
        """Run a kernel to completion.

        Returns:
            Exit code of the emulator or libos process.

        Raises:
            LaunchConfigError: If the launch request is invalid.
            ArtifactNotFound: If the kernel artifact is missing.
            ToolExecutionError: If the process cannot be started.
        """
        self.validate(spec)

        if spec.mode is LaunchMode.LIBOS:
            cmd = self.compose_libos_command(spec)
            logger.info("Running %s under libos", cmd[cmd.index("--") + 1])
            result = self.runner.run(
                cmd, cwd=self.settings.repo_root, interactive=True, label="libos"
            )
            return result.exit_code

        artifact = self._kernel_artifact(spec)
        if not artifact.is_file():
            raise ArtifactNotFound(str(artifact))
        cmd = self.compose_qemu_command(spec)
        if spec.gdb_port is not None:
            logger.info(
                "Emulator starts halted; attach with `xtask gdb --arch %s --port %d`",
                spec.arch.value,
                spec.gdb_port,
            )
        result = self.runner.run(cmd, interactive=True, label="qemu")
        return result.exit_code

    def compose_gdb_command(self, arch: Arch, port: int, elf: Path) -> list[str]:
        return [
            self.settings.gdb,
            "-ex",
            f"file {elf}",
            "-ex",
            f"set arch {GDB_ARCH[arch]}",
            "-ex",
            f"target remote localhost:{port}",
        ]

    def attach(self, arch: Arch, port: int, elf: Path) -> int:
        """Attach a debugger to an emulator already listening on port.

        Raises:
            LaunchConfigError: If the port is invalid.
            ArtifactNotFound: If the kernel ELF is missing.
            LaunchFailed: If nothing listens on the port.
        """
        validate_port(port)
        if not elf.is_file():
            raise ArtifactNotFound(str(elf))
        try:
            with socket.create_connection(("localhost", port), timeout=CONNECT_TIMEOUT):
                pass
        except OSError as e:
            raise LaunchFailed(
                f"No emulator is listening for a debugger on localhost:{port}: {e}"
            ) from e

        result = self.runner.run(
            self.compose_gdb_command(arch, port, elf), interactive=True, label="gdb"
        )
        return result.exit_code


__all__ = ["GDB_ARCH", "LaunchSpec", "Launcher", "validate_port"]
