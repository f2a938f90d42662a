"""Overlay model, ordering and merging into a rootfs tree.

This module handles:
- The Overlay record and its applicability predicate over a Target
- Stable application order (priority, shadow depth, name)
- Copying staged payloads while preserving symlinks
- Merging a staged payload into the tree with ownership tracking

Every overlay stages its payload into a private directory first; only a
fully staged payload is merged, so a failing producer never writes into
the tree.
"""

from __future__ import annotations

import filecmp
import logging
import os
import shutil
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from kernel_xtask.types import Arch, OverlayPriority

if TYPE_CHECKING:
    from kernel_xtask.config import Settings
    from kernel_xtask.rootfs.tree import RootfsTree
    from kernel_xtask.runner import ToolRunner
    from kernel_xtask.targets import Target
    from kernel_xtask.toolchain import Toolchain

logger = logging.getLogger(__name__)


class OverlayConflict(Exception):
    """Raised when two overlays place different content at the same path."""

    def __init__(self, relpath: str, owner: str | None, overlay: str) -> None:
        who = owner or "the base filesystem"
        super().__init__(
            f"{relpath} is already provided by {who} and {overlay} "
            "does not declare that it shadows it"
        )
        self.relpath = relpath
        self.owner = owner
        self.code = "overlay_conflict"


@dataclass
class OverlayContext:
    """Everything a producer may read while staging its payload.

    Attributes:
        target: Target being assembled.
        tree: Tree being assembled (read-only for producers, apart from
            image_substitutions).
        settings: Settings.
        runner: Tool runner for external build steps.
        base_dir: Full extraction of the architecture's base archive.
        work_dir: Scratch space shared by the overlays of one assembly.
        toolchain: Cross toolchain, when the overlay needs one.
        warnings: Soft-dependency warnings collected for the caller.
        present: Soft requirements of the running overlay that the tree
            already provides.
    """

    target: Target
    tree: RootfsTree
    settings: Settings
    runner: ToolRunner
    base_dir: Path
    work_dir: Path
    toolchain: Toolchain | None = None
    warnings: list[str] = field(default_factory=list)
    present: frozenset[str] = frozenset()

    def warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)

    def require_toolchain(self) -> Toolchain:
        if self.toolchain is None:
            raise RuntimeError("overlay requires a toolchain but none was resolved")
        return self.toolchain


Producer = Callable[[OverlayContext, Path], None]


@dataclass(frozen=True)
class Overlay:
    """A named, conditionally applicable payload merged into a rootfs tree.

    Attributes:
        name: Overlay name (matches its rootfs feature, when it has one).
        priority: Application tier; lower tiers apply first.
        producer: Stages the payload into the directory it is given.
        archs: Architectures the overlay exists for.
        feature: Feature flag that enables it (None = always applied).
        destination: Subpath of the tree the payload is merged into.
        shadows: Overlays whose files this one may replace.
        soft_requires: Capabilities used when present, skipped otherwise.
        toolchain_archs: Architectures on which the producer needs the
            cross toolchain.
    """

    name: str
    priority: OverlayPriority
    producer: Producer
    archs: frozenset[Arch] = frozenset(Arch)
    feature: str | None = None
    destination: str = ""
    shadows: frozenset[str] = frozenset()
    soft_requires: tuple[str, ...] = ()
    toolchain_archs: frozenset[Arch] = frozenset()

    def applies_to(self, target: Target) -> bool:
        """Applicability depends on the target's arch and features only."""
        if target.arch not in self.archs:
            return False
        return self.feature is None or self.feature in target.features

    def needs_toolchain(self, arch: Arch) -> bool:
        return arch in self.toolchain_archs


def _shadow_depth(overlay: Overlay, by_name: dict[str, Overlay]) -> int:
    depth = 0
    pending = list(overlay.shadows)
    seen: set[str] = set()
    while pending:
        name = pending.pop()
        if name in seen or name not in by_name:
            continue
        seen.add(name)
        depth += 1
        pending.extend(by_name[name].shadows)
    return depth


def order_overlays(overlays: Iterable[Overlay]) -> list[Overlay]:
    """Sort overlays into their application order.

    The order is (priority, shadow depth, name): tiers first, then any
    overlay that shadows another after it, then alphabetical. The input
    order never matters.
    """
    items = list(overlays)
    by_name = {o.name: o for o in items}
    return sorted(
        items,
        key=lambda o: (o.priority, _shadow_depth(o, by_name), o.name),
    )


def copy_entry(source: Path, dest: Path) -> None:
    """Copy a file or symlink, replacing whatever is at dest."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    if dest.is_symlink() or dest.is_file():
        dest.unlink()
    if source.is_symlink():
        os.symlink(os.readlink(source), dest)
    else:
        shutil.copy2(source, dest)


def copy_tree(source: Path, dest: Path) -> None:
    """Copy a directory tree, keeping symlinks as symlinks."""
    shutil.copytree(source, dest, symlinks=True, dirs_exist_ok=True)


def _same_entry(a: Path, b: Path) -> bool:
    if a.is_symlink() or b.is_symlink():
        return (
            a.is_symlink()
            and b.is_symlink()
            and os.readlink(a) == os.readlink(b)
        )
    return filecmp.cmp(a, b, shallow=False)


def _staged_entries(staging_dir: Path) -> list[Path]:
    entries: list[Path] = []
    for root, dirs, files in os.walk(staging_dir):
        root_path = Path(root)
        entries.extend(root_path / name for name in files)
        links = [d for d in dirs if (root_path / d).is_symlink()]
        entries.extend(root_path / d for d in links)
        dirs[:] = [d for d in dirs if d not in links]
    return sorted(entries)


def merge_payload(staging_dir: Path, tree: RootfsTree, overlay: Overlay) -> int:
    """Merge a staged payload into the tree.

    Rules per staged entry:
    - nothing at the path yet: copy it, the overlay owns it;
    - identical content already there: no-op (re-application is idempotent);
    - a base-filesystem file, the overlay's own file, or a file of an
      overlay listed in ``shadows``: replace it;
    - anything else: OverlayConflict.

    Returns:
        Number of entries written.

    Raises:
        OverlayConflict: On contradictory content for the same path.
    """
    prefix = PurePosixPath(overlay.destination.strip("/"))
    written = 0
    for entry in _staged_entries(staging_dir):
        rel = str(prefix / entry.relative_to(staging_dir).as_posix())
        dest = tree.path / rel

        if dest.is_dir() and not dest.is_symlink():
            raise OverlayConflict(rel, tree.owners.get(rel), overlay.name)

        if os.path.lexists(dest):
            if _same_entry(entry, dest):
                continue
            owner = tree.owners.get(rel)
            allowed = owner is None or owner == overlay.name or owner in overlay.shadows
            if not allowed:
                raise OverlayConflict(rel, owner, overlay.name)
            logger.debug(
                "%s replaces %s (owner: %s)", overlay.name, rel, owner or "base"
            )

        copy_entry(entry, dest)
        tree.owners[rel] = overlay.name
        written += 1
    return written


__all__ = [
    "Overlay",
    "OverlayConflict",
    "OverlayContext",
    "Producer",
    "copy_entry",
    "copy_tree",
    "merge_payload",
    "order_overlays",
]
