"""Shared fixtures: isolated settings, fake prebuilt archives and a fake runner.

No test runs a real external tool: FakeRunner replaces process spawning
with small handlers that produce the files the real tools would.
"""

import io
import os
import tarfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import pytest

from kernel_xtask.config import Settings
from kernel_xtask.runner import CancellationToken, ToolRunner
from kernel_xtask.toolchain.resolver import TOOLCHAIN_PREFIXES, toolchain_dirname
from kernel_xtask.types import Arch

Handler = Callable[[list[str], Path | None, dict[str, str] | None, object], int]

X86_64_BASE = {
    "bin/busybox": b"busybox-x86_64",
    "bin/sh": ("symlink", "/bin/busybox"),
    "lib/ld-musl-x86_64.so.1": b"real-loader",
    "etc/hostname": b"zcore\n",
}

RISCV64_BASE = {
    "prebuild/bin/busybox": b"busybox-riscv64",
    "prebuild/bin/ls": ("symlink", "busybox"),
    "prebuild/lib/ld-musl-riscv64.so.1": b"riscv-loader",
    "prebuild/libc-test/functional/tls_align-static.exe": b"tls-align",
    "prebuild/oscomp/run.sh": b"#!/bin/sh\n",
    "prebuild/etc/motd": b"not copied into the tree\n",
}


def make_tar(path: Path, entries: dict[str, object], mode: str = "w:gz") -> Path:
    """Write a tar archive from {name: bytes | ("symlink", target)}."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, mode) as tar:
        for name, content in entries.items():
            info = tarfile.TarInfo(name)
            if isinstance(content, tuple):
                info.type = tarfile.SYMTYPE
                info.linkname = content[1]
                tar.addfile(info)
            else:
                info.size = len(content)
                info.mode = 0o755 if name.startswith(("bin/", "prebuild/bin/")) else 0o644
                tar.addfile(info, io.BytesIO(content))
    return path


@dataclass
class SpawnCall:
    """One faked process spawn."""

    argv: list[str]
    cwd: Path | None
    env: dict[str, str] | None


def _pad_bytes(pad: str) -> int:
    units = {"K": 1024, "M": 1024**2, "G": 1024**3}
    value = pad.lstrip("+")
    if value[-1] in units:
        return int(value[:-1]) * units[value[-1]]
    return int(value)


def fake_packer(argv, cwd, env, stdout) -> int:
    """rcore-fs-fuse <image> <dir> zip: records the packed tree's entries."""
    image, source = Path(argv[1]), Path(argv[2])
    listing = []
    for root, dirs, files in os.walk(source):
        for name in sorted(dirs + files):
            rel = (Path(root) / name).relative_to(source).as_posix()
            entry = Path(root) / name
            if entry.is_file() and not entry.is_symlink():
                listing.append(f"{rel}={entry.read_bytes().hex()}")
            else:
                listing.append(rel)
    image.write_text("\n".join(sorted(listing)) + "\n")
    return 0


def fake_mkfs(argv, cwd, env, stdout) -> int:
    Path(argv[-2]).write_bytes(b"ext4")
    return 0


def fake_qemu_img(argv, cwd, env, stdout) -> int:
    image = Path(argv[-2])
    os.truncate(image, image.stat().st_size + _pad_bytes(argv[-1]))
    return 0


def fake_objcopy(argv, cwd, env, stdout) -> int:
    Path(argv[-1]).write_bytes(b"stripped")
    return 0


def fake_objdump(argv, cwd, env, stdout) -> int:
    stdout.write("zcore: file format elf64\n")
    return 0


def fake_cargo(argv, cwd, env, stdout) -> int:
    if argv[1] == "build":
        target_dir = Path(argv[argv.index("--target-dir") + 1])
        spec = Path(argv[argv.index("--target") + 1])
        elf = target_dir / spec.stem / "release" / "zcore"
        elf.parent.mkdir(parents=True, exist_ok=True)
        elf.write_bytes(b"\x7fELF")
    return 0


def fake_cc(argv, cwd, env, stdout) -> int:
    out = Path(argv[argv.index("-o") + 1])
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(b"compiled " + Path(argv[1]).name.encode())
    return 0


DEFAULT_HANDLERS: dict[str, Handler] = {
    "rcore-fs-fuse": fake_packer,
    "mkfs.ext4": fake_mkfs,
    "qemu-img": fake_qemu_img,
    "rust-objcopy": fake_objcopy,
    "rust-objdump": fake_objdump,
    "cargo": fake_cargo,
    "gcc": fake_cc,
}


class FakeRunner(ToolRunner):
    """ToolRunner that fakes process spawning.

    Handlers are keyed by program name; programs without a handler exit 0.
    """

    def __init__(
        self,
        log_dir: Path,
        handlers: dict[str, Handler] | None = None,
        cancel: CancellationToken | None = None,
    ) -> None:
        super().__init__(log_dir, cancel=cancel)
        self.handlers = dict(DEFAULT_HANDLERS)
        if handlers:
            self.handlers.update(handlers)
        self.calls: list[SpawnCall] = []

    def _spawn(self, cmd, cwd, env, stdout, stderr, timeout) -> int:
        self.calls.append(SpawnCall(list(cmd), cwd, env))
        handler = self.handlers.get(Path(cmd[0]).name)
        if handler is None:
            return 0
        return handler(list(cmd), cwd, env, stdout)

    def programs(self) -> list[str]:
        return [Path(call.argv[0]).name for call in self.calls]


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in a temporary repository."""
    repo = tmp_path / "repo"
    repo.mkdir()
    return Settings(repo_root=repo, offline=True)


@pytest.fixture
def runner(settings: Settings) -> FakeRunner:
    return FakeRunner(settings.log_dir)


def install_fake_toolchain(settings: Settings, arch: Arch) -> Path:
    """Create an executable <prefix>gcc and a sysroot with shared libraries."""
    prefix = TOOLCHAIN_PREFIXES[arch]
    root = settings.toolchain_dir / toolchain_dirname(arch)
    bin_dir = root / "bin"
    bin_dir.mkdir(parents=True, exist_ok=True)
    for tool in ("gcc", "g++"):
        exe = bin_dir / f"{prefix}{tool}"
        exe.write_text("#!/bin/sh\nexit 0\n")
        exe.chmod(0o755)
    lib = root / prefix.rstrip("-") / "lib"
    lib.mkdir(parents=True, exist_ok=True)
    (lib / "libc.so").write_bytes(b"musl-libc")
    (lib / f"ld-musl-{arch.value}.so.1").write_bytes(b"toolchain-loader")
    (lib / "libz.so.1.2.13").write_bytes(b"zlib")
    os.symlink("libz.so.1.2.13", lib / "libz.so.1")
    return bin_dir


@pytest.fixture
def x86_64_toolchain(settings: Settings) -> Path:
    return install_fake_toolchain(settings, Arch.X86_64)


@pytest.fixture
def riscv64_toolchain(settings: Settings) -> Path:
    return install_fake_toolchain(settings, Arch.RISCV64)


@pytest.fixture
def base_archives(settings: Settings) -> dict[Arch, Path]:
    """Prebuilt base archives for both architectures plus libc-libos.so."""
    libos = settings.prebuilt_dir / "linux" / "libc-libos.so"
    libos.parent.mkdir(parents=True, exist_ok=True)
    libos.write_bytes(b"libc-libos")
    return {
        Arch.X86_64: make_tar(
            settings.prebuilt_dir / "x86_64" / "minirootfs.tar.gz", X86_64_BASE
        ),
        Arch.RISCV64: make_tar(
            settings.prebuilt_dir / "riscv64" / "minirootfs.tar.xz",
            RISCV64_BASE,
            mode="w:xz",
        ),
    }


@pytest.fixture
def syscall_tests(settings: Settings) -> Path:
    """Two C sources under linux-syscall/test."""
    test_dir = settings.repo_root / "linux-syscall" / "test"
    test_dir.mkdir(parents=True)
    (test_dir / "pipe.c").write_text("int main(void) { return 0; }\n")
    (test_dir / "fork.c").write_text("int main(void) { return 0; }\n")
    return test_dir


@pytest.fixture
def libc_test_sources(settings: Settings) -> Path:
    source = settings.repo_root / "libc-test"
    (source / "src" / "functional").mkdir(parents=True)
    (source / "config.mak.def").write_text("# defaults\n")
    (source / "Makefile").write_text("all:\n")
    return source
