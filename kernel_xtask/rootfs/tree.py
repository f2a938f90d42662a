"""On-disk rootfs working tree and its manifest.

This module handles:
- Canonical paths of the per-architecture tree, manifest and side-car dir
- The RootfsTree state record (capabilities, file owners, completion)
- Persisting that state as a JSON manifest next to the tree
- Computing a deterministic hash of a tree
- The per-architecture lock that owns a tree while it is built or packed

The manifest is written as soon as a clean-slate assembly starts, with
``complete`` False, and rewritten with ``complete`` True only once every
overlay has been applied.
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import logging
import os
import stat
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, ValidationError

from kernel_xtask.types import Arch

if TYPE_CHECKING:
    from kernel_xtask.config import Settings

logger = logging.getLogger(__name__)

MANIFEST_VERSION = 1
LOCK_POLL_INTERVAL = 0.1


def tree_path(settings: Settings, arch: Arch) -> Path:
    """Working tree directory for an architecture."""
    return settings.rootfs_dir / arch.value


def manifest_path(settings: Settings, arch: Arch) -> Path:
    """Manifest file recording the state of an architecture's tree."""
    return settings.rootfs_dir / f"{arch.value}.manifest.json"


def image_extra_dir(settings: Settings, arch: Arch) -> Path:
    """Side-car directory for files swapped into the tree only while packing."""
    return settings.rootfs_dir / f"{arch.value}.image-extra"


def base_extract_dir(settings: Settings, arch: Arch) -> Path:
    """Full extraction of the base archive (source of prebuilt test payloads)."""
    return settings.toolchain_dir / arch.value / "rootfs"


def work_dir(settings: Settings, arch: Arch) -> Path:
    """Scratch directory for overlay builds."""
    return settings.toolchain_dir / arch.value / "build"


def lock_dir(settings: Settings) -> Path:
    """Directory holding per-architecture assembly locks."""
    return settings.rootfs_dir / ".locks"


def _flock_exclusive(fd: int, timeout: float | None) -> bool:
    """Take an exclusive flock on fd, polling until timeout if one is given."""
    if timeout is None:
        fcntl.flock(fd, fcntl.LOCK_EX)
        return True
    deadline = time.monotonic() + timeout
    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            return True
        except BlockingIOError:
            if time.monotonic() >= deadline:
                return False
            time.sleep(LOCK_POLL_INTERVAL)


@contextmanager
def arch_lock(
    directory: Path, arch: Arch, timeout: float | None = None
) -> Iterator[Path]:
    """Own one architecture's tree, manifest and side-car files.

    Whoever holds ``<directory>/<arch>.lock`` may rebuild the tree or read
    it into an image; the lock is an flock, so it also serializes separate
    xtask processes. Architectures never contend with each other.

    Raises:
        TimeoutError: If ``timeout`` seconds pass without getting the lock.
    """
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{arch.value}.lock"
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o600)
    try:
        if not _flock_exclusive(fd, timeout):
            raise TimeoutError(f"{arch.value} rootfs is busy (lock {path})")
        logger.debug("Holding %s", path)
        try:
            yield path
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Released %s", path)
    finally:
        os.close(fd)


class RootfsManifest(BaseModel):
    """Serialized form of a RootfsTree."""

    version: int = MANIFEST_VERSION
    arch: Arch
    features: list[str] = Field(default_factory=list)
    capabilities: list[str] = Field(default_factory=list)
    owners: dict[str, str] = Field(default_factory=dict)
    image_substitutions: dict[str, str] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)
    complete: bool = False
    tree_hash: str | None = None
    updated_at: datetime | None = None


@dataclass
class RootfsTree:
    """Working state of one architecture's root filesystem.

    Attributes:
        arch: Architecture the tree is built for.
        path: Tree directory.
        features: Rootfs features the tree was assembled with.
        capabilities: Overlays that completed, in application order.
        owners: Relative path -> overlay that placed the file there.
        image_substitutions: Relative path -> host file swapped in while packing.
        warnings: Soft-dependency warnings emitted during assembly.
        complete: True only after every overlay applied without error.
        tree_hash: Hash of the finished tree.
    """

    arch: Arch
    path: Path
    features: frozenset[str] = frozenset()
    capabilities: list[str] = field(default_factory=list)
    owners: dict[str, str] = field(default_factory=dict)
    image_substitutions: dict[str, Path] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    complete: bool = False
    tree_hash: str | None = None

    def has_capability(self, name: str) -> bool:
        return name in self.capabilities

    def record_capability(self, name: str) -> None:
        """Record that an overlay finished populating the tree."""
        if name not in self.capabilities:
            self.capabilities.append(name)

    def to_manifest(self) -> RootfsManifest:
        return RootfsManifest(
            arch=self.arch,
            features=sorted(self.features),
            capabilities=list(self.capabilities),
            owners=dict(sorted(self.owners.items())),
            image_substitutions={
                rel: str(host) for rel, host in sorted(self.image_substitutions.items())
            },
            warnings=list(self.warnings),
            complete=self.complete,
            tree_hash=self.tree_hash,
            updated_at=datetime.now(timezone.utc),
        )

    @classmethod
    def from_manifest(cls, manifest: RootfsManifest, path: Path) -> RootfsTree:
        return cls(
            arch=manifest.arch,
            path=path,
            features=frozenset(manifest.features),
            capabilities=list(manifest.capabilities),
            owners=dict(manifest.owners),
            image_substitutions={
                rel: Path(host) for rel, host in manifest.image_substitutions.items()
            },
            warnings=list(manifest.warnings),
            complete=manifest.complete,
            tree_hash=manifest.tree_hash,
        )


def save_tree(settings: Settings, tree: RootfsTree) -> Path:
    """Write the manifest for a tree (atomically) and return its path."""
    path = manifest_path(settings, tree.arch)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(tree.to_manifest().model_dump_json(indent=2))
    os.replace(tmp, path)
    return path


def load_tree(settings: Settings, arch: Arch) -> RootfsTree | None:
    """Load the recorded tree for an architecture.

    Returns None when there is no manifest, the manifest is unreadable, or
    the tree directory itself is gone.
    """
    path = manifest_path(settings, arch)
    if not path.is_file():
        return None
    try:
        manifest = RootfsManifest.model_validate(json.loads(path.read_text()))
    except (ValueError, ValidationError) as e:
        logger.warning("Ignoring unreadable rootfs manifest %s: %s", path, e)
        return None
    directory = tree_path(settings, arch)
    if not directory.is_dir():
        return None
    return RootfsTree.from_manifest(manifest, directory)


def compute_tree_hash(directory: Path) -> str:
    """Compute a deterministic hash of a directory tree.

    The hash covers sorted relative paths, file modes (lower 9 bits),
    file contents and symlink targets. Timestamps are ignored, so two
    clean assemblies from the same inputs hash equal.

    Args:
        directory: Directory to hash.

    Returns:
        SHA-256 hex digest of the tree.
    """
    hasher = hashlib.sha256()
    if not directory.exists():
        return hasher.hexdigest()

    entries: list[Path] = []
    for root, dirs, files in os.walk(directory):
        root_path = Path(root)
        entries.extend(root_path / name for name in files)
        # Symlinked directories are recorded as links, not descended into
        entries.extend(root_path / d for d in dirs if (root_path / d).is_symlink())
        dirs[:] = [d for d in dirs if not (root_path / d).is_symlink()]

    for path in sorted(entries, key=lambda p: p.relative_to(directory).as_posix()):
        rel_path = path.relative_to(directory).as_posix()
        hasher.update(rel_path.encode("utf-8"))
        hasher.update(b"\0")
        if path.is_symlink():
            hasher.update(b"L\0")
            hasher.update(os.readlink(path).encode("utf-8"))
        else:
            mode = stat.S_IMODE(path.stat().st_mode)
            hasher.update(f"{mode:o}".encode())
            hasher.update(b"\0")
            hasher.update(path.read_bytes())
        hasher.update(b"\0")

    return hasher.hexdigest()


__all__ = [
    "RootfsManifest",
    "RootfsTree",
    "arch_lock",
    "base_extract_dir",
    "compute_tree_hash",
    "image_extra_dir",
    "load_tree",
    "lock_dir",
    "manifest_path",
    "save_tree",
    "tree_path",
    "work_dir",
]
