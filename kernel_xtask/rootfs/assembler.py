"""RootFS assembly.

This module provides the high-level rootfs API:
- assemble(): clean-slate rebuild of one architecture's tree
- apply_overlay(): rebuild with one more named overlay
- locked(): hold an architecture's tree across assembly and packaging

A tree is never patched across builds: every assembly deletes the previous
tree, its manifest and side-car files, then rebuilds from the base archive.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING

from kernel_xtask.errors import BuildCancelled, FetchError, OverlayFailed, XtaskError
from kernel_xtask.prebuilt.catalog import base_rootfs_archive, locate_archive
from kernel_xtask.prebuilt.fetch import extract_archive
from kernel_xtask.rootfs.overlay import (
    Overlay,
    OverlayConflict,
    OverlayContext,
    copy_tree,
    merge_payload,
    order_overlays,
)
from kernel_xtask.rootfs.overlays import OVERLAYS
from kernel_xtask.rootfs.tree import (
    RootfsTree,
    arch_lock,
    base_extract_dir,
    compute_tree_hash,
    image_extra_dir,
    load_tree,
    lock_dir,
    manifest_path,
    save_tree,
    tree_path,
    work_dir,
)
from kernel_xtask.toolchain import ToolchainResolver

if TYPE_CHECKING:
    from kernel_xtask.config import Settings
    from kernel_xtask.runner import ToolRunner
    from kernel_xtask.targets import Target
    from kernel_xtask.toolchain import Toolchain
    from kernel_xtask.types import Arch

logger = logging.getLogger(__name__)

BASE_OVERLAY = "base-rootfs"


def _remove(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)


class RootfsAssembler:
    """Builds per-architecture root filesystem trees."""

    def __init__(
        self,
        settings: Settings,
        runner: ToolRunner,
        resolver: ToolchainResolver | None = None,
        overlays: Sequence[Overlay] = OVERLAYS,
        lock_timeout: float | None = None,
    ) -> None:
        self.settings = settings
        self.runner = runner
        self.resolver = resolver or ToolchainResolver(settings)
        self.overlays = tuple(overlays)
        self.lock_timeout = lock_timeout
        self._held: set[Arch] = set()

    @contextmanager
    def locked(self, arch: Arch) -> Iterator[None]:
        """Hold an architecture's tree for the duration of the block.

        Assemblies inside the block reuse the hold instead of locking again,
        so a rebuild and the pack that reads it form one critical section.
        """
        if arch in self._held:
            yield
            return
        with arch_lock(lock_dir(self.settings), arch, self.lock_timeout):
            self._held.add(arch)
            try:
                yield
            finally:
                self._held.discard(arch)

    def select_overlays(self, target: Target) -> list[Overlay]:
        """Overlays applicable to a target, in application order."""
        return order_overlays(o for o in self.overlays if o.applies_to(target))

    def load(self, arch: Arch) -> RootfsTree | None:
        """Return the recorded tree for an architecture, if any."""
        return load_tree(self.settings, arch)

    def _resolve_toolchain(
        self, target: Target, selected: list[Overlay]
    ) -> Toolchain | None:
        if any(o.needs_toolchain(target.arch) for o in selected):
            return self.resolver.resolve(target.arch)
        return None

    def _clean_slate(self, arch: Arch) -> None:
        for path in (
            manifest_path(self.settings, arch),
            tree_path(self.settings, arch),
            image_extra_dir(self.settings, arch),
            base_extract_dir(self.settings, arch),
            work_dir(self.settings, arch),
        ):
            if os.path.lexists(path):
                logger.debug("Removing %s", path)
                _remove(path)

    def _extract_base(self, target: Target, tree: RootfsTree) -> Path:
        archive = base_rootfs_archive(target.arch, self.settings)
        archive_path = locate_archive(archive, target.arch, self.settings)
        if archive_path is None:
            raise OverlayFailed(
                BASE_OVERLAY,
                f"{archive.filename} not found for {target.arch.value} "
                "(run `xtask init`)",
            )
        base_dir = base_extract_dir(self.settings, target.arch)
        try:
            extract_archive(
                archive_path, base_dir, strip_components=archive.strip_components
            )
        except FetchError as e:
            raise OverlayFailed(BASE_OVERLAY, e) from e

        tree.path.mkdir(parents=True, exist_ok=True)
        for entry in sorted(base_dir.iterdir()):
            if archive.include is not None and entry.name not in archive.include:
                continue
            if entry.is_dir() and not entry.is_symlink():
                copy_tree(entry, tree.path / entry.name)
            else:
                shutil.copy2(entry, tree.path / entry.name, follow_symlinks=False)
        return base_dir

    def _soft_requirements(
        self, overlay: Overlay, ctx: OverlayContext
    ) -> frozenset[str]:
        """Soft requirements the tree provides; warn about the rest."""
        present: set[str] = set()
        for name in overlay.soft_requires:
            if ctx.tree.has_capability(name):
                present.add(name)
            else:
                ctx.warn(
                    f"{overlay.name}: {name} overlay not applied, "
                    f"building without {name} support"
                )
        return frozenset(present)

    def _apply(self, overlay: Overlay, ctx: OverlayContext) -> None:
        self.runner.cancel.raise_if_cancelled(f"overlay {overlay.name}")
        logger.info("Applying overlay %s to %s", overlay.name, ctx.target.arch.value)
        ctx = replace(ctx, present=self._soft_requirements(overlay, ctx))
        ctx.work_dir.mkdir(parents=True, exist_ok=True)
        try:
            with tempfile.TemporaryDirectory(
                dir=ctx.work_dir, prefix=f"{overlay.name}-"
            ) as staging:
                overlay.producer(ctx, Path(staging))
                written = merge_payload(Path(staging), ctx.tree, overlay)
        except OverlayConflict as e:
            raise OverlayFailed(overlay.name, e) from e
        except BuildCancelled:
            raise
        except XtaskError as e:
            raise OverlayFailed(overlay.name, e) from e
        except (OSError, RuntimeError) as e:
            raise OverlayFailed(overlay.name, e) from e

        ctx.tree.record_capability(overlay.name)
        logger.info("Overlay %s applied (%d entries)", overlay.name, written)

    def assemble(self, target: Target) -> RootfsTree:
        """Rebuild the target's rootfs tree from a clean slate.

        Args:
            target: Validated target.

        Returns:
            The completed tree.

        Raises:
            ToolchainMissing: If an applicable overlay needs the cross
                toolchain and it is absent (nothing is touched on disk).
            OverlayFailed: If the base archive or any overlay fails; the
                tree's manifest stays marked incomplete.
            BuildCancelled: If cancellation was requested between steps.
        """
        selected = self.select_overlays(target)
        toolchain = self._resolve_toolchain(target, selected)
        logger.info(
            "Assembling %s rootfs with overlays: %s",
            target.arch.value,
            ", ".join(o.name for o in selected) or "(none)",
        )

        with self.locked(target.arch):
            self._clean_slate(target.arch)
            tree = RootfsTree(
                arch=target.arch,
                path=tree_path(self.settings, target.arch),
                features=frozenset(target.rootfs_features),
            )
            save_tree(self.settings, tree)

            try:
                base_dir = self._extract_base(target, tree)
                ctx = OverlayContext(
                    target=target,
                    tree=tree,
                    settings=self.settings,
                    runner=self.runner,
                    base_dir=base_dir,
                    work_dir=work_dir(self.settings, target.arch),
                    toolchain=toolchain,
                    warnings=tree.warnings,
                )
                for overlay in selected:
                    self._apply(overlay, ctx)
            except OSError as e:
                save_tree(self.settings, tree)
                raise OverlayFailed(BASE_OVERLAY, e) from e
            except BaseException:
                save_tree(self.settings, tree)
                raise

            tree.tree_hash = compute_tree_hash(tree.path)
            tree.complete = True
            save_tree(self.settings, tree)

        logger.info(
            "Rootfs for %s assembled at %s (hash %s...)",
            target.arch.value,
            tree.path,
            tree.tree_hash[:16],
        )
        return tree

    def apply_overlay(self, target: Target, name: str) -> RootfsTree:
        """Rebuild the tree with one more overlay.

        The new tree carries the rootfs features of the existing tree (if
        any), the target's own, and ``name``. Overlay order therefore
        follows the catalog, never the order of requests.

        Raises:
            InvalidFeatureCombination: If ``name`` is not offered for the arch.
        """
        features = set(target.features) | {name}
        existing = self.load(target.arch)
        if existing is not None:
            features |= set(existing.features)
        extended = target.with_features(features, self.settings)

        return self.assemble(extended)


__all__ = ["BASE_OVERLAY", "RootfsAssembler"]
