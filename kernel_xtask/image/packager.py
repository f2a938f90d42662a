"""Disk image packaging.

This module handles:
- Composing the packer command (rcore-fs-fuse for SFS, mkfs.ext4 for ext4)
- Swapping image substitutions into the tree for the duration of a pack
- Growing the packed image with qemu-img
- Writing the image atomically (temporary file + rename)

A failed pack or resize never touches a previously packaged image at the
output path.
"""

from __future__ import annotations

import logging
import math
import os
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from kernel_xtask.errors import PackagingFailed, ResizeFailed, ToolExecutionError
from kernel_xtask.rootfs.tree import load_tree
from kernel_xtask.types import Arch, FsKind

if TYPE_CHECKING:
    from kernel_xtask.config import Settings
    from kernel_xtask.rootfs.tree import RootfsTree
    from kernel_xtask.runner import ToolRunner

logger = logging.getLogger(__name__)

# ext4 images are sized to the tree plus this headroom before growing
EXT4_HEADROOM_RATIO = 1.2
EXT4_MIN_SIZE_MB = 16


class ImageSpec(BaseModel):
    """Request to pack one tree into one image.

    Attributes:
        source: Tree directory to pack.
        output: Final image path.
        fs_kind: Filesystem kind.
        pad: Grow size passed to qemu-img resize (e.g. '+5M').
    """

    model_config = ConfigDict(frozen=True)

    source: Path
    output: Path
    fs_kind: FsKind = FsKind.SFS
    pad: str = Field(default="+5M", pattern=r"^\+\d+[KMG]?$")


def image_path(settings: Settings, arch: Arch) -> Path:
    """Fixed, architecture-named image path."""
    return settings.image_dir / f"{arch.value}.img"


def default_image_spec(
    settings: Settings,
    tree: RootfsTree,
    fs_kind: FsKind | None = None,
) -> ImageSpec:
    """ImageSpec for a tree using the configured image layout."""
    return ImageSpec(
        source=tree.path,
        output=image_path(settings, tree.arch),
        fs_kind=fs_kind or FsKind(settings.image_fs),
        pad=settings.image_pad,
    )


def tree_size_bytes(directory: Path) -> int:
    """Apparent size of all regular files in a tree."""
    total = 0
    for root, _dirs, files in os.walk(directory):
        for name in files:
            path = Path(root) / name
            if not path.is_symlink():
                total += path.stat().st_size
    return total


def ext4_size_mb(directory: Path) -> int:
    size = tree_size_bytes(directory) * EXT4_HEADROOM_RATIO / (1024 * 1024)
    return max(EXT4_MIN_SIZE_MB, math.ceil(size) + 8)


@contextmanager
def applied_substitutions(tree: RootfsTree) -> Iterator[list[str]]:
    """Swap image substitutions into the tree, restoring originals on exit.

    Yields:
        Relative paths that were substituted.

    Raises:
        PackagingFailed: If a substitution source is missing; whatever was
            already swapped in is restored first.
    """
    backups: list[tuple[Path, Path | None]] = []
    applied: list[str] = []
    backup_dir = Path(tempfile.mkdtemp(prefix="xtask-subst-"))
    try:
        for rel, host in sorted(tree.image_substitutions.items()):
            dest = tree.path / rel
            if not host.is_file():
                raise PackagingFailed(
                    f"Image substitution for {rel} is missing its source {host} "
                    "(rebuild the rootfs)"
                )
            backup = backup_dir / str(len(backups))
            if os.path.lexists(dest):
                os.replace(dest, backup)
                backups.append((dest, backup))
            else:
                backups.append((dest, None))
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(host, dest)
            applied.append(rel)
            logger.debug("Substituted %s for packing", rel)
        yield applied
    finally:
        for dest, backup in reversed(backups):
            if dest.is_symlink() or dest.is_file():
                dest.unlink()
            if backup is not None:
                os.replace(backup, dest)
        shutil.rmtree(backup_dir, ignore_errors=True)


class ImagePackager:
    """Packs assembled rootfs trees into image files."""

    def __init__(self, settings: Settings, runner: ToolRunner) -> None:
        self.settings = settings
        self.runner = runner

    def compose_pack_command(self, spec: ImageSpec, tmp_image: Path) -> list[str]:
        """Compose the packer command for a spec.

        Args:
            spec: Image spec.
            tmp_image: Temporary image path the packer writes to.

        Returns:
            Command as list of strings.
        """
        if spec.fs_kind is FsKind.EXT4:
            return [
                self.settings.mkfs_ext4,
                "-F",
                "-q",
                "-d",
                str(spec.source),
                str(tmp_image),
                f"{ext4_size_mb(spec.source)}M",
            ]
        return [self.settings.packer, str(tmp_image), str(spec.source), "zip"]

    def compose_resize_command(self, spec: ImageSpec, tmp_image: Path) -> list[str]:
        return [self.settings.qemu_img, "resize", "-f", "raw", str(tmp_image), spec.pad]

    def package(self, tree: RootfsTree, spec: ImageSpec) -> Path:
        """Pack a tree into an image and grow it.

        The caller must hold the tree's architecture lock (see
        ``RootfsAssembler.locked``) so no assembly rewrites the tree mid-pack.
        The manifest on disk is checked again here: the image is only packed
        when the recorded assembly is complete and matches ``tree``.

        Args:
            tree: Assembled tree; must be marked complete.
            spec: Image spec.

        Returns:
            Path of the final image.

        Raises:
            PackagingFailed: If the tree is incomplete or stale, a substitution
                source is missing, or the packer fails.
            ResizeFailed: If growing the image fails.
        """
        if not tree.complete:
            raise PackagingFailed(
                f"Rootfs tree for {tree.arch.value} is not a completed assembly; "
                "refusing to package it"
            )
        recorded = load_tree(self.settings, tree.arch)
        if (
            recorded is None
            or not recorded.complete
            or recorded.tree_hash != tree.tree_hash
        ):
            raise PackagingFailed(
                f"Rootfs manifest for {tree.arch.value} no longer records this "
                "completed assembly; refusing to package it"
            )
        if not spec.source.is_dir():
            raise PackagingFailed(f"Rootfs tree {spec.source} does not exist")

        output = spec.output
        output.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=output.parent, prefix=f".{output.name}.", suffix=".tmp"
        )
        os.close(fd)
        tmp_image = Path(tmp_name)

        try:
            with applied_substitutions(tree):
                pack_cmd = self.compose_pack_command(spec, tmp_image)
                try:
                    result = self.runner.run(pack_cmd, label="pack")
                except ToolExecutionError as e:
                    raise PackagingFailed(e.message) from e
            if not result.success:
                raise PackagingFailed(
                    f"{pack_cmd[0]} exited with code {result.exit_code} "
                    f"(see log: {result.log_path})"
                )

            resize_cmd = self.compose_resize_command(spec, tmp_image)
            try:
                result = self.runner.run(resize_cmd, label="resize")
            except ToolExecutionError as e:
                raise ResizeFailed(e.message) from e
            if not result.success:
                raise ResizeFailed(
                    f"{resize_cmd[0]} exited with code {result.exit_code} "
                    f"(see log: {result.log_path})"
                )

            os.replace(tmp_image, output)
        except BaseException:
            tmp_image.unlink(missing_ok=True)
            raise

        logger.info(
            "Packaged %s image %s (%d bytes)",
            spec.fs_kind.value,
            output,
            output.stat().st_size,
        )
        return output


__all__ = [
    "ImagePackager",
    "ImageSpec",
    "applied_substitutions",
    "default_image_spec",
    "image_path",
    "tree_size_bytes",
]
