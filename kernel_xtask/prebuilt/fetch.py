"""Prebuilt archive fetch module.

This module handles:
- Download with optional checksum verification
- Safe extraction of tar archives (strip-components, member selection)
- Extraction of zip archives
- Populating the download cache for `xtask init`
"""

from __future__ import annotations

import hashlib
import logging
import os
import tarfile
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

import httpx

from kernel_xtask.errors import FetchError
from kernel_xtask.prebuilt.catalog import (
    PrebuiltArchive,
    locate_archive,
)

if TYPE_CHECKING:
    from kernel_xtask.config import Settings
    from kernel_xtask.types import Arch

logger = logging.getLogger(__name__)

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB


@dataclass
class DownloadResult:
    """Result of an archive download."""

    archive_path: Path
    checksum: str
    size_bytes: int


def compute_file_sha256(file_path: Path, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> str:
    """Compute SHA256 checksum of a file."""
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    expected_checksum: str | None = None,
    timeout: float = 3600,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> DownloadResult:
    """Download a file with optional checksum verification.

    The body is streamed to a temporary file next to dest_path and moved
    into place only once complete and verified.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        expected_checksum: Expected SHA256 checksum (optional).
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        DownloadResult with path, checksum, and size.

    Raises:
        FetchError: If the download or verification fails.
    """
    logger.info("Downloading %s to %s", url, dest_path)
    dest_path.parent.mkdir(parents=True, exist_ok=True)

    with tempfile.NamedTemporaryFile(
        dir=dest_path.parent, suffix=".tmp", delete=False
    ) as tmp_file:
        tmp_path = Path(tmp_file.name)

    try:
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()

            total_bytes = 0
            sha256 = hashlib.sha256()
            with tmp_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    sha256.update(chunk)
                    total_bytes += len(chunk)

        computed_checksum = sha256.hexdigest()
        if expected_checksum and computed_checksum != expected_checksum.lower():
            raise FetchError(
                f"Checksum mismatch for {url}: "
                f"expected {expected_checksum}, got {computed_checksum}",
                code="checksum_mismatch",
            )

        os.replace(tmp_path, dest_path)
        logger.info(
            "Downloaded %s (%d bytes, checksum: %s)",
            dest_path.name,
            total_bytes,
            computed_checksum[:16] + "...",
        )
        return DownloadResult(
            archive_path=dest_path,
            checksum=computed_checksum,
            size_bytes=total_bytes,
        )

    except httpx.HTTPStatusError as e:
        raise FetchError(
            f"HTTP {e.response.status_code} downloading {url}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        raise FetchError(f"Timeout downloading {url}", code="timeout") from e
    except httpx.RequestError as e:
        raise FetchError(
            f"Network error downloading {url}: {e}", code="network_error"
        ) from e
    finally:
        tmp_path.unlink(missing_ok=True)


def _select_members(
    tar: tarfile.TarFile,
    strip_components: int,
) -> list[tarfile.TarInfo]:
    """Rename and filter members for extraction."""
    selected: list[tarfile.TarInfo] = []
    for member in tar.getmembers():
        parts = PurePosixPath(member.name).parts
        if member.name.startswith("/") or ".." in parts:
            raise FetchError(
                f"Refusing to extract {member.name}: path traversal detected",
                code="path_traversal",
            )
        parts = parts[strip_components:]
        if not parts or parts == (".",):
            continue
        member.name = str(PurePosixPath(*parts))
        if member.islnk():
            link_parts = PurePosixPath(member.linkname).parts[strip_components:]
            if not link_parts:
                continue
            member.linkname = str(PurePosixPath(*link_parts))
        selected.append(member)
    return selected


def extract_archive(
    archive_path: Path,
    dest_dir: Path,
    strip_components: int = 0,
) -> Path:
    """Extract a tar archive (gz/xz/bz2/plain) into a directory.

    Args:
        archive_path: Path to the archive file.
        dest_dir: Destination directory for extraction.
        strip_components: Leading path components to drop.

    Returns:
        The destination directory.

    Raises:
        FetchError: If extraction fails.
    """
    logger.info("Extracting %s to %s", archive_path.name, dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)

    try:
        with tarfile.open(archive_path, "r:*") as tar:
            members = _select_members(tar, strip_components)
            if not members:
                raise FetchError(
                    f"Archive {archive_path} has no entries to extract",
                    code="empty_archive",
                )
            # Rootfs archives carry absolute symlinks (bin/ls -> /bin/busybox),
            # which the "data" filter rejects.
            tar.extractall(dest_dir, members=members, filter="tar")
    except tarfile.TarError as e:
        raise FetchError(
            f"Failed to extract {archive_path}: {e}", code="tar_error"
        ) from e
    except OSError as e:
        raise FetchError(
            f"OS error extracting {archive_path}: {e}", code="os_error"
        ) from e

    return dest_dir


def extract_zip(archive_path: Path, dest_dir: Path) -> Path:
    """Extract a zip archive into a directory.

    Raises:
        FetchError: If extraction fails.
    """
    logger.info("Extracting %s to %s", archive_path.name, dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    try:
        with zipfile.ZipFile(archive_path) as zf:
            for name in zf.namelist():
                parts = PurePosixPath(name).parts
                if name.startswith("/") or ".." in parts:
                    raise FetchError(
                        f"Refusing to extract {name}: path traversal detected",
                        code="path_traversal",
                    )
            zf.extractall(dest_dir)
    except zipfile.BadZipFile as e:
        raise FetchError(
            f"Failed to extract {archive_path}: {e}", code="zip_error"
        ) from e
    return dest_dir


def ensure_archive(
    client: httpx.Client,
    archive: PrebuiltArchive,
    arch: Arch,
    settings: Settings,
) -> Path:
    """Return a local copy of an archive, downloading it into the cache if needed.

    Raises:
        FetchError: If the archive is absent and offline mode is set, or if
            the download fails.
    """
    existing = locate_archive(archive, arch, settings)
    if existing is not None and archive.sha256 and not settings.offline:
        if compute_file_sha256(existing) != archive.sha256.lower():
            logger.warning("Cached %s is corrupt, downloading again", existing)
            existing = None
    if existing is not None:
        logger.debug("Using cached %s at %s", archive.name, existing)
        return existing

    if settings.offline:
        raise FetchError(
            f"{archive.name} is not available locally and offline mode is enabled",
            code="offline_mode",
        )

    dest = settings.cache_dir / arch.value / archive.filename
    download_file(
        client,
        archive.url,
        dest,
        expected_checksum=archive.sha256,
        timeout=settings.download_timeout,
    )
    return dest


__all__ = [
    "DownloadResult",
    "compute_file_sha256",
    "download_file",
    "ensure_archive",
    "extract_archive",
    "extract_zip",
]
