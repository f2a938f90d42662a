"""Kernel build via cargo.

The kernel is built for a custom target spec (``zCore/<arch>.json``) with
``build-std``, so the ELF lands at ``<target dir>/<arch>/release/zcore``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from kernel_xtask.errors import ArtifactNotFound
from kernel_xtask.types import Arch

if TYPE_CHECKING:
    from kernel_xtask.config import Settings
    from kernel_xtask.runner import ToolRunner
    from kernel_xtask.targets import Target

logger = logging.getLogger(__name__)

KERNEL_PACKAGE = "zcore"


def kernel_dir(settings: Settings, arch: Arch) -> Path:
    """Default directory of an architecture's release artifacts."""
    return settings.repo_root / "target" / arch.value / "release"


def kernel_elf(settings: Settings, arch: Arch) -> Path:
    """Default path of the compiled kernel ELF."""
    return kernel_dir(settings, arch) / KERNEL_PACKAGE


def target_spec(settings: Settings, arch: Arch) -> Path:
    return settings.repo_root / "zCore" / f"{arch.value}.json"


class KernelBuilder:
    """Builds the kernel binary for a target."""

    def __init__(self, settings: Settings, runner: ToolRunner) -> None:
        self.settings = settings
        self.runner = runner

    def compose_build_command(self, target: Target) -> list[str]:
        """Compose the cargo build command for a target.

        The target's output_dir is ``<target dir>/<arch>``; cargo receives
        its parent as ``--target-dir``.
        """
        return [
            self.settings.cargo,
            "build",
            "--package",
            KERNEL_PACKAGE,
            "--release",
            "--no-default-features",
            "--features",
            " ".join(target.kernel_features),
            "--target",
            str(target_spec(self.settings, target.arch)),
            "--target-dir",
            str(target.output_dir.parent),
            "-Z",
            "build-std=core,alloc",
            "-Z",
            "build-std-features=compiler-builtins-mem",
        ]

    def build(self, target: Target, user_image: Path | None = None) -> Path:
        """Build the kernel.

        Args:
            target: Validated (non-libos) target.
            user_image: Image embedded into the kernel when the target has
                the ``link-user-img`` feature.

        Returns:
            Path of the kernel ELF.

        Raises:
            ToolExecutionError: If cargo fails.
            ArtifactNotFound: If cargo succeeded but produced no ELF.
        """
        env: dict[str, str] = {}
        if "link-user-img" in target.features:
            if user_image is None:
                user_image = self.settings.image_dir / f"{target.arch.value}.img"
            env["USER_IMG"] = str(user_image)

        self.runner.run_checked(
            self.compose_build_command(target),
            cwd=self.settings.repo_root,
            env_override=env or None,
            label=f"cargo-build-{target.arch.value}",
        )

        elf = target.output_dir / "release" / KERNEL_PACKAGE
        if not elf.is_file():
            raise ArtifactNotFound(str(elf))
        logger.info("Built kernel %s", elf)
        return elf


__all__ = ["KernelBuilder", "kernel_dir", "kernel_elf", "target_spec"]
