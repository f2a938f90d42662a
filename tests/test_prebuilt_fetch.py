"""Tests for prebuilt/fetch.py and prebuilt/catalog.py."""

import hashlib
import io
import tarfile
import zipfile
from dataclasses import replace
from pathlib import Path

import httpx
import pytest
import respx

from conftest import RISCV64_BASE, X86_64_BASE, make_tar
from kernel_xtask.errors import FetchError
from kernel_xtask.prebuilt.catalog import (
    archive_candidates,
    base_rootfs_archive,
    locate_archive,
    toolchain_archive,
)
from kernel_xtask.prebuilt.fetch import (
    DownloadResult,
    compute_file_sha256,
    download_file,
    ensure_archive,
    extract_archive,
    extract_zip,
)
from kernel_xtask.types import Arch


class TestCatalog:
    """Tests for the prebuilt archive catalog."""

    def test_riscv64_base_strips_top_dir(self, settings) -> None:
        """The riscv64 base archive should strip one level and keep bin/lib."""
        archive = base_rootfs_archive(Arch.RISCV64, settings)
        assert archive.strip_components == 1
        assert archive.include == ("bin", "lib")

    def test_x86_64_base_uses_mirror(self, settings) -> None:
        """The x86_64 base archive URL should follow the configured mirror."""
        custom = settings.model_copy(
            update={
                "alpine_mirror": "https://mirror.test/alpine",
                "alpine_version": "3.18.4",
            }
        )
        archive = base_rootfs_archive(Arch.X86_64, custom)
        assert archive.url == (
            "https://mirror.test/alpine/x86_64/alpine-minirootfs-3.18.4-x86_64.tar.gz"
        )
        assert archive.include is None

    def test_toolchain_archive(self) -> None:
        """Toolchain archives should be the musl.cc cross tarballs."""
        archive = toolchain_archive(Arch.RISCV64)
        assert archive.url == "https://musl.cc/riscv64-linux-musl-cross.tgz"

    def test_prebuilt_prefix_wins_over_cache(self, settings) -> None:
        """locate_archive should prefer the prebuilt prefix."""
        archive = base_rootfs_archive(Arch.X86_64, settings)
        prebuilt, cached = archive_candidates(archive, Arch.X86_64, settings)
        cached.parent.mkdir(parents=True, exist_ok=True)
        cached.write_bytes(b"cache")
        assert locate_archive(archive, Arch.X86_64, settings) == cached

        prebuilt.parent.mkdir(parents=True)
        prebuilt.write_bytes(b"prebuilt")
        assert locate_archive(archive, Arch.X86_64, settings) == prebuilt

    def test_locate_missing(self, settings) -> None:
        """locate_archive should return None when nothing exists."""
        archive = base_rootfs_archive(Arch.RISCV64, settings)
        assert locate_archive(archive, Arch.RISCV64, settings) is None


class TestComputeFileSha256:
    """Tests for compute_file_sha256."""

    def test_matches_hashlib(self, tmp_path: Path) -> None:
        """Checksum should match a one-shot hashlib digest."""
        path = tmp_path / "blob"
        content = b"x" * 200_000
        path.write_bytes(content)
        assert compute_file_sha256(path) == hashlib.sha256(content).hexdigest()


class TestDownloadFile:
    """Tests for download_file function."""

    @respx.mock
    def test_successful_download(self, tmp_path: Path) -> None:
        """Should download file successfully."""
        content = b"archive bytes"
        respx.get("https://example.com/rootfs.tar.gz").mock(
            return_value=httpx.Response(200, content=content)
        )

        dest_path = tmp_path / "cache" / "rootfs.tar.gz"
        with httpx.Client() as client:
            result = download_file(client, "https://example.com/rootfs.tar.gz", dest_path)

        assert isinstance(result, DownloadResult)
        assert dest_path.read_bytes() == content
        assert result.checksum == hashlib.sha256(content).hexdigest()
        assert result.size_bytes == len(content)
        assert list(dest_path.parent.glob("*.tmp")) == []

    @respx.mock
    def test_checksum_mismatch(self, tmp_path: Path) -> None:
        """A checksum mismatch should raise and leave no file behind."""
        respx.get("https://example.com/file.bin").mock(
            return_value=httpx.Response(200, content=b"content")
        )

        dest_path = tmp_path / "bad.bin"
        with httpx.Client() as client, pytest.raises(FetchError) as exc_info:
            download_file(
                client,
                "https://example.com/file.bin",
                dest_path,
                expected_checksum="0" * 64,
            )

        assert exc_info.value.code == "checksum_mismatch"
        assert not dest_path.exists()
        assert list(tmp_path.glob("*.tmp")) == []

    @respx.mock
    def test_http_error(self, tmp_path: Path) -> None:
        """Should raise FetchError on HTTP error."""
        respx.get("https://example.com/missing.bin").mock(
            return_value=httpx.Response(404)
        )

        with httpx.Client() as client, pytest.raises(FetchError) as exc_info:
            download_file(client, "https://example.com/missing.bin", tmp_path / "m")

        assert exc_info.value.code == "http_error"

    @respx.mock
    def test_timeout_error(self, tmp_path: Path) -> None:
        """Should raise FetchError on timeout."""
        respx.get("https://example.com/slow.bin").mock(
            side_effect=httpx.TimeoutException("Connection timed out")
        )

        with httpx.Client() as client, pytest.raises(FetchError) as exc_info:
            download_file(client, "https://example.com/slow.bin", tmp_path / "s")

        assert exc_info.value.code == "timeout"


class TestExtractArchive:
    """Tests for extract_archive."""

    def test_keeps_symlinks(self, tmp_path: Path) -> None:
        """Absolute symlinks from rootfs archives should be kept as links."""
        archive = make_tar(tmp_path / "rootfs.tar.gz", X86_64_BASE)
        dest = extract_archive(archive, tmp_path / "out")

        assert (dest / "bin" / "busybox").read_bytes() == b"busybox-x86_64"
        assert (dest / "bin" / "sh").is_symlink()
        assert (dest / "bin" / "sh").readlink() == Path("/bin/busybox")

    def test_strip_components(self, tmp_path: Path) -> None:
        """strip_components should drop the archive's top directory."""
        archive = make_tar(tmp_path / "prebuild.tar.xz", RISCV64_BASE, mode="w:xz")
        dest = extract_archive(archive, tmp_path / "out", strip_components=1)

        assert (dest / "bin" / "busybox").is_file()
        assert (dest / "oscomp" / "run.sh").is_file()
        assert not (dest / "prebuild").exists()

    def test_path_traversal_rejected(self, tmp_path: Path) -> None:
        """Members escaping the destination should be refused."""
        archive = make_tar(tmp_path / "evil.tar.gz", {"../escape": b"x"})
        with pytest.raises(FetchError) as exc_info:
            extract_archive(archive, tmp_path / "out")
        assert exc_info.value.code == "path_traversal"

    def test_empty_after_strip(self, tmp_path: Path) -> None:
        """An archive with nothing left after stripping should fail."""
        path = tmp_path / "flat.tar"
        with tarfile.open(path, "w") as tar:
            info = tarfile.TarInfo("only")
            info.size = 1
            tar.addfile(info, io.BytesIO(b"x"))
        with pytest.raises(FetchError) as exc_info:
            extract_archive(path, tmp_path / "out", strip_components=1)
        assert exc_info.value.code == "empty_archive"

    def test_corrupt_archive(self, tmp_path: Path) -> None:
        """A file that is not a tar archive should raise tar_error."""
        path = tmp_path / "junk.tar.gz"
        path.write_bytes(b"definitely not a tarball")
        with pytest.raises(FetchError) as exc_info:
            extract_archive(path, tmp_path / "out")
        assert exc_info.value.code == "tar_error"


class TestExtractZip:
    """Tests for extract_zip."""

    def test_extracts(self, tmp_path: Path) -> None:
        """Zip members should be extracted."""
        path = tmp_path / "fw.zip"
        with zipfile.ZipFile(path, "w") as zf:
            zf.writestr("rustsbi-qemu.bin", b"sbi")
        extract_zip(path, tmp_path / "fw")
        assert (tmp_path / "fw" / "rustsbi-qemu.bin").read_bytes() == b"sbi"

    def test_path_traversal_rejected(self, tmp_path: Path) -> None:
        """Zip members escaping the destination should be refused."""
        path = tmp_path / "evil.zip"
        with zipfile.ZipFile(path, "w") as zf:
            zf.writestr("../evil", b"x")
        with pytest.raises(FetchError):
            extract_zip(path, tmp_path / "fw")
        assert not (tmp_path / "evil").exists()


class TestEnsureArchive:
    """Tests for ensure_archive."""

    def test_uses_existing(self, settings, base_archives) -> None:
        """An archive in the prebuilt prefix should be used without a download."""
        archive = base_rootfs_archive(Arch.X86_64, settings)
        with httpx.Client() as client:
            path = ensure_archive(client, archive, Arch.X86_64, settings)
        assert path == base_archives[Arch.X86_64]

    def test_offline_missing(self, settings) -> None:
        """A missing archive in offline mode should raise offline_mode."""
        archive = toolchain_archive(Arch.RISCV64)
        with httpx.Client() as client, pytest.raises(FetchError) as exc_info:
            ensure_archive(client, archive, Arch.RISCV64, settings)
        assert exc_info.value.code == "offline_mode"

    @respx.mock
    def test_downloads_into_cache(self, settings) -> None:
        """A missing archive should be downloaded into the cache."""
        online = settings.model_copy(update={"offline": False})
        archive = toolchain_archive(Arch.X86_64)
        respx.get(archive.url).mock(return_value=httpx.Response(200, content=b"tgz"))

        with httpx.Client() as client:
            path = ensure_archive(client, archive, Arch.X86_64, online)

        assert path == online.cache_dir / "x86_64" / archive.filename
        assert path.read_bytes() == b"tgz"

    @respx.mock
    def test_corrupt_cache_downloaded_again(self, settings) -> None:
        """A cached copy failing its checksum should be replaced."""
        online = settings.model_copy(update={"offline": False})
        archive = replace(
            toolchain_archive(Arch.X86_64), sha256=hashlib.sha256(b"tgz").hexdigest()
        )
        cached = online.cache_dir / "x86_64" / archive.filename
        cached.parent.mkdir(parents=True, exist_ok=True)
        cached.write_bytes(b"truncated")
        route = respx.get(archive.url).mock(
            return_value=httpx.Response(200, content=b"tgz")
        )

        with httpx.Client() as client:
            path = ensure_archive(client, archive, Arch.X86_64, online)

        assert route.called
        assert path == cached
        assert path.read_bytes() == b"tgz"
