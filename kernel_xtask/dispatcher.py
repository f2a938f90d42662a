"""Command dispatcher.

Maps command names to stage sequences over the pipeline components:
- validation (Target construction) always runs before any side effect
- every stage runs inside stage(), which tags the first failure with the
  stage name
- packaging only ever runs after an assembly that completed

Unknown command names fail before anything runs.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from kernel_xtask.artifacts import ArtifactPostProcessor, KernelBuilder, kernel_elf
from kernel_xtask.errors import (
    InvalidArchitecture,
    LaunchConfigError,
    StageFailed,
    UnknownCommand,
    XtaskError,
)
from kernel_xtask.image.packager import ImagePackager, default_image_spec, image_path
from kernel_xtask.launch import Launcher, LaunchSpec
from kernel_xtask.launch.launcher import validate_port
from kernel_xtask.rootfs import RootfsAssembler, RootfsTree
from kernel_xtask.rootfs.tree import manifest_path, tree_path
from kernel_xtask.runner import CancellationToken, ToolRunner
from kernel_xtask.targets import Target, build_target, parse_arch
from kernel_xtask.targets.catalog import ROOTFS_FEATURES
from kernel_xtask.toolchain import ToolchainResolver
from kernel_xtask.types import Arch, FsKind, OperationResult
from kernel_xtask.workspace import init_workspace, update_workspace

if TYPE_CHECKING:
    from kernel_xtask.config import Settings

logger = logging.getLogger(__name__)

OVERLAY_COMMANDS = ("musl-libs", "ffmpeg", "opencv", "libc-test", "other-test")


@dataclass
class CommandRequest:
    """Raw command input, validated by the dispatcher.

    Attributes:
        arch: Architecture string.
        board: Board variant.
        features: Feature flags.
        output: Output path for asm/bin.
        smp: Core count for qemu.
        gdb_port: Debug port for qemu (starts halted).
        port: Debug port for gdb attach.
        fs_kind: Image filesystem kind.
        libos_args: User binary and arguments for linux-libos.
    """

    arch: str | None = None
    board: str | None = None
    features: list[str] = field(default_factory=list)
    output: Path | None = None
    smp: int = 1
    gdb_port: int | None = None
    port: int | None = None
    fs_kind: FsKind | None = None
    libos_args: list[str] | None = None


@contextmanager
def stage(name: str) -> Iterator[None]:
    """Run a pipeline stage, tagging the first failure with its name."""
    logger.debug("Entering stage %s", name)
    try:
        yield
    except XtaskError as e:
        if e.stage is None:
            e.stage = name
        raise
    except OSError as e:
        raise StageFailed(name, e) from e


class Dispatcher:
    """Registry of named operations over the build pipeline."""

    def __init__(
        self,
        settings: Settings,
        runner: ToolRunner | None = None,
        cancel: CancellationToken | None = None,
    ) -> None:
        self.settings = settings
        self.runner = runner or ToolRunner(
            settings.log_dir,
            cancel=cancel,
            default_timeout=settings.build_timeout,
        )
        self.resolver = ToolchainResolver(settings)
        self.assembler = RootfsAssembler(settings, self.runner, self.resolver)
        self.packager = ImagePackager(settings, self.runner)
        self.kernel = KernelBuilder(settings, self.runner)
        self.postprocessor = ArtifactPostProcessor(settings, self.runner)
        self.launcher = Launcher(settings, self.runner)

        self._commands: dict[str, Callable[[CommandRequest], OperationResult]] = {
            "init": self.cmd_init,
            "update": self.cmd_update,
            "dump": self.cmd_dump,
            "build": self.cmd_build,
            "asm": self.cmd_asm,
            "bin": self.cmd_bin,
            "qemu": self.cmd_qemu,
            "gdb": self.cmd_gdb,
            "rootfs": self.cmd_rootfs,
            "image": self.cmd_image,
            "linux-libos": self.cmd_linux_libos,
        }
        for name in OVERLAY_COMMANDS:
            self._commands[name] = self._overlay_command(name)

    @property
    def commands(self) -> list[str]:
        return sorted(self._commands)

    def dispatch(
        self, name: str, request: CommandRequest | None = None
    ) -> OperationResult:
        """Run a named command.

        Raises:
            UnknownCommand: If the name is not registered (nothing runs).
            XtaskError: The first stage failure, with ``stage`` set.
        """
        handler = self._commands.get(name)
        if handler is None:
            raise UnknownCommand(name)
        logger.info("Running command %s", name)
        return handler(request or CommandRequest())

    # Validation helpers: no side effects

    def _target(self, request: CommandRequest, extra: tuple[str, ...] = ()) -> Target:
        with stage("target"):
            return build_target(
                request.arch or "",
                board=request.board,
                features=[*request.features, *extra],
                settings=self.settings,
            )

    def _arch(self, request: CommandRequest) -> Arch:
        with stage("target"):
            if not request.arch:
                raise InvalidArchitecture("")
            return parse_arch(request.arch)

    # Shared stage sequences

    def _assemble(self, target: Target) -> RootfsTree:
        with stage("rootfs"):
            return self.assembler.assemble(target)

    def _package(self, tree: RootfsTree, fs_kind: FsKind | None) -> Path:
        with stage("image"):
            spec = default_image_spec(self.settings, tree, fs_kind)
            return self.packager.package(tree, spec)

    def _assemble_and_package(
        self, target: Target, fs_kind: FsKind | None
    ) -> tuple[RootfsTree, Path]:
        # One hold over both stages: no other assembly may touch the tree
        # between its completion and the end of the pack.
        with stage("rootfs"), self.assembler.locked(target.arch):
            tree = self._assemble(target)
            image = self._package(tree, fs_kind)
        return tree, image

    def _tree_result(
        self, message: str, tree: RootfsTree, **details: object
    ) -> OperationResult:
        return OperationResult(
            success=True,
            message=message,
            details={
                "arch": tree.arch.value,
                "rootfs": str(tree.path),
                "overlays": list(tree.capabilities),
                "tree_hash": tree.tree_hash,
                **details,
            },
            warnings=list(tree.warnings),
        )

    # Commands

    def cmd_init(self, request: CommandRequest) -> OperationResult:
        with stage("init"):
            actions = init_workspace(self.settings, self.runner)
        return OperationResult(
            True, "Workspace initialized", details={"actions": actions}
        )

    def cmd_update(self, request: CommandRequest) -> OperationResult:
        with stage("update"):
            actions = update_workspace(self.settings, self.runner)
        return OperationResult(True, "Toolchain updated", details={"actions": actions})

    def cmd_dump(self, request: CommandRequest) -> OperationResult:
        target = self._target(request)
        arch = target.arch

        toolchain: dict[str, object] = {"available": False}
        if self.resolver.is_available(arch):
            resolved = self.resolver.resolve(arch)
            toolchain = {
                "available": True,
                "prefix": resolved.prefix,
                "bin_dir": str(resolved.bin_dir),
                "sysroot": str(resolved.sysroot),
            }

        tree = self.assembler.load(arch)
        image = image_path(self.settings, arch)
        details: dict[str, object] = {
            "target": {
                "arch": arch.value,
                "board": target.board,
                "features": sorted(target.features),
                "output_dir": str(target.output_dir),
            },
            "toolchain": toolchain,
            "overlays": [o.name for o in self.assembler.select_overlays(target)],
            "paths": {
                "rootfs": str(tree_path(self.settings, arch)),
                "manifest": str(manifest_path(self.settings, arch)),
                "image": str(image),
                "kernel": str(kernel_elf(self.settings, arch)),
            },
            "rootfs": {
                "present": tree is not None,
                "complete": bool(tree and tree.complete),
                "overlays": list(tree.capabilities) if tree else [],
                "tree_hash": tree.tree_hash if tree else None,
            },
            "image_present": image.is_file(),
        }
        return OperationResult(
            True, f"Build configuration for {arch.value}", details=details
        )

    def cmd_build(self, request: CommandRequest) -> OperationResult:
        target = self._target(request)
        with stage("build"):
            elf = self.kernel.build(target)
        return OperationResult(
            True, f"Kernel built at {elf}", details={"kernel": str(elf)}
        )

    def cmd_asm(self, request: CommandRequest) -> OperationResult:
        arch = self._arch(request)
        with stage("asm"):
            out = self.postprocessor.disassemble(arch, request.output)
        return OperationResult(
            True, f"Disassembly written to {out}", details={"output": str(out)}
        )

    def cmd_bin(self, request: CommandRequest) -> OperationResult:
        arch = self._arch(request)
        with stage("bin"):
            out = self.postprocessor.strip(arch, request.output)
        return OperationResult(
            True,
            f"Stripped binary written to {out}",
            details={"output": str(out)},
        )

    def cmd_rootfs(self, request: CommandRequest) -> OperationResult:
        target = self._target(request)
        tree = self._assemble(target)
        return self._tree_result(f"Rootfs for {tree.arch.value} rebuilt", tree)

    def _overlay_command(
        self, name: str
    ) -> Callable[[CommandRequest], OperationResult]:
        def run(request: CommandRequest) -> OperationResult:
            target = self._target(request)
            with stage(name):
                tree = self.assembler.apply_overlay(target, name)
            return self._tree_result(
                f"Overlay {name} applied to {tree.arch.value}", tree
            )

        run.__name__ = f"cmd_{name.replace('-', '_')}"
        return run

    def cmd_image(self, request: CommandRequest) -> OperationResult:
        target = self._target(request)
        tree, image = self._assemble_and_package(target, request.fs_kind)
        return self._tree_result(
            f"Image for {tree.arch.value} written to {image}", tree, image=str(image)
        )

    def cmd_qemu(self, request: CommandRequest) -> OperationResult:
        target = self._target(request)
        with stage("qemu"):
            if request.gdb_port is not None:
                validate_port(request.gdb_port)
            if request.smp < 1:
                raise LaunchConfigError(
                    f"Core count must be at least 1, got {request.smp}"
                )

        tree, image = self._assemble_and_package(target, request.fs_kind)
        with stage("build"):
            elf = self.kernel.build(target, user_image=image)
        with stage("bin"):
            artifact = (
                self.postprocessor.strip(target.arch, elf=elf)
                if target.arch is Arch.RISCV64
                else elf
            )
        with stage("qemu"):
            exit_code = self.launcher.launch(
                LaunchSpec(
                    arch=target.arch,
                    artifact=artifact,
                    image=image,
                    smp=request.smp,
                    gdb_port=request.gdb_port,
                    memory=self.settings.qemu_memory,
                )
            )
        return OperationResult(
            success=exit_code == 0,
            message=f"Emulator exited with code {exit_code}",
            details={
                "exit_code": exit_code,
                "image": str(image),
                "kernel": str(artifact),
            },
        )

    def cmd_gdb(self, request: CommandRequest) -> OperationResult:
        arch = self._arch(request)
        with stage("gdb"):
            if request.port is None:
                raise LaunchConfigError("A debug port is required")
            elf = kernel_elf(self.settings, arch)
            exit_code = self.launcher.attach(arch, request.port, elf)
        return OperationResult(
            success=exit_code == 0,
            message=f"Debugger exited with code {exit_code}",
            details={"exit_code": exit_code},
        )

    def cmd_linux_libos(self, request: CommandRequest) -> OperationResult:
        with stage("linux-libos"):
            if not request.libos_args or not request.libos_args[0].strip():
                raise LaunchConfigError(
                    "linux-libos needs --args with a user binary path"
                )
        target = self._target(
            CommandRequest(
                arch=Arch.X86_64.value,
                features=[f for f in request.features if f in ROOTFS_FEATURES],
            ),
            extra=("libos",),
        )

        tree = self.assembler.load(target.arch)
        if tree is None or not tree.complete:
            tree = self._assemble(target)

        with stage("linux-libos"):
            exit_code = self.launcher.launch(
                LaunchSpec(arch=target.arch, libos_args=list(request.libos_args))
            )
        return OperationResult(
            success=exit_code == 0,
            message=f"{request.libos_args[0]} exited with code {exit_code}",
            details={"exit_code": exit_code, "rootfs": str(tree.path)},
        )


__all__ = ["OVERLAY_COMMANDS", "CommandRequest", "Dispatcher", "stage"]
