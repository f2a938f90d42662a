"""Catalog of rootfs overlays and their payload producers.

Overlay order within an assembly is CORE -> TESTS -> MEDIA -> VISION.
Each producer stages its payload into the directory it is given; the
assembler merges that directory into the tree afterwards.
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path

from kernel_xtask.prebuilt.catalog import LIBC_LIBOS, X86_64_LOADER
from kernel_xtask.rootfs.overlay import Overlay, OverlayContext, copy_entry, copy_tree
from kernel_xtask.rootfs.tree import image_extra_dir
from kernel_xtask.targets.catalog import SOFT_REQUIREMENTS
from kernel_xtask.types import Arch, OverlayPriority

logger = logging.getLogger(__name__)

LIBC_TEST_DIR = "libc-test"
SYSCALL_TEST_DIR = Path("linux-syscall") / "test"
FFMPEG_DIR = "ffmpeg"
OPENCV_DIR = "opencv"

# Restored from the prebuilt archive after the riscv64 libc-test build
TLS_ALIGN_STATIC = Path("functional") / "tls_align-static.exe"

X86_64_LIBC_TEST_MAK = "CC := musl-gcc\nAR := ar\nRANLIB := ranlib\n"


def _jobs() -> str:
    return f"-j{os.cpu_count() or 1}"


def _require_dir(path: Path, what: str) -> Path:
    if not path.is_dir():
        raise FileNotFoundError(f"{what} not found at {path} (run `xtask init`)")
    return path


def _copy_shared_libs(
    lib_dir: Path, staging: Path, skip_prefix: str | None = None
) -> int:
    """Copy lib*.so* entries (symlinks kept) from lib_dir into staging."""
    count = 0
    for entry in sorted(lib_dir.iterdir()):
        if ".so" not in entry.name or entry.is_dir():
            continue
        if skip_prefix and entry.name.startswith(skip_prefix):
            continue
        copy_entry(entry, staging / entry.name)
        count += 1
    return count


def stage_libc_libos(ctx: OverlayContext, staging: Path) -> None:
    """Replace the x86_64 loader with the libos libc.

    The real loader is kept aside and registered as an image
    substitution, so packed images still boot with it while libos runs
    from the tree get libc-libos.so.
    """
    libos = ctx.settings.prebuilt_dir / LIBC_LIBOS
    if not libos.is_file():
        raise FileNotFoundError(f"libc-libos.so not found at {libos}")

    real_loader = ctx.tree.path / X86_64_LOADER
    if real_loader.is_file():
        extra_dir = image_extra_dir(ctx.settings, ctx.target.arch)
        extra = extra_dir / Path(X86_64_LOADER).name
        copy_entry(real_loader, extra)
        ctx.tree.image_substitutions[X86_64_LOADER] = extra
    else:
        ctx.warn(f"Base filesystem has no {X86_64_LOADER}; images keep libc-libos.so")

    copy_entry(libos, staging / X86_64_LOADER)


def stage_musl_libs(ctx: OverlayContext, staging: Path) -> None:
    """Shared libraries from the cross toolchain sysroot."""
    toolchain = ctx.require_toolchain()
    lib_dir = _require_dir(toolchain.sysroot / "lib", "Toolchain sysroot")
    # The loader always comes from the base filesystem (or libc-libos)
    count = _copy_shared_libs(lib_dir, staging, skip_prefix="ld-musl-")
    logger.info("Staged %d shared libraries from %s", count, lib_dir)


def stage_libc_test(ctx: OverlayContext, staging: Path) -> None:
    """Build libc-test from the checked-out sources."""
    source = _require_dir(ctx.settings.repo_root / LIBC_TEST_DIR, "libc-test sources")
    shutil.copytree(
        source,
        staging,
        symlinks=True,
        dirs_exist_ok=True,
        ignore=shutil.ignore_patterns(".git"),
    )
    shutil.copyfile(staging / "config.mak.def", staging / "config.mak")

    if ctx.target.arch is Arch.RISCV64:
        toolchain = ctx.require_toolchain()
        ctx.runner.run_checked(
            [ctx.settings.make, _jobs()],
            cwd=staging,
            env_override={
                "ARCH": ctx.target.arch.value,
                "CROSS_COMPILE": toolchain.prefix,
                "PATH": toolchain.path_env(),
            },
            label="libc-test",
        )
        prebuilt = ctx.base_dir / LIBC_TEST_DIR / TLS_ALIGN_STATIC
        if not prebuilt.is_file():
            raise FileNotFoundError(
                f"Prebuilt {TLS_ALIGN_STATIC} missing at {prebuilt}"
            )
        copy_entry(prebuilt, staging / "src" / TLS_ALIGN_STATIC)
    else:
        with (staging / "config.mak").open("a") as f:
            f.write(X86_64_LIBC_TEST_MAK)
        ctx.runner.run_checked(
            [ctx.settings.make, _jobs()], cwd=staging, label="libc-test"
        )


def stage_other_test(ctx: OverlayContext, staging: Path) -> None:
    """Syscall tests (x86_64, built on the host) or the prebuilt oscomp suite."""
    if ctx.target.arch is Arch.RISCV64:
        oscomp = _require_dir(ctx.base_dir / "oscomp", "Prebuilt oscomp suite")
        copy_tree(oscomp, staging / "oscomp")
        return

    test_dir = _require_dir(ctx.settings.repo_root / SYSCALL_TEST_DIR, "Syscall tests")
    bin_dir = staging / "bin"
    bin_dir.mkdir(parents=True, exist_ok=True)
    for source in sorted(test_dir.glob("*.c")):
        ctx.runner.run_checked(
            [
                ctx.settings.host_cc,
                source,
                "-o",
                bin_dir / source.stem,
                f"-Wl,--dynamic-linker=/{X86_64_LOADER}",
            ],
            label=f"other-test-{source.stem}",
        )


def ffmpeg_install_dir(ctx: OverlayContext) -> Path:
    return ctx.work_dir / "ffmpeg-install"


def stage_ffmpeg(ctx: OverlayContext, staging: Path) -> None:
    """Cross-build FFmpeg shared libraries."""
    toolchain = ctx.require_toolchain()
    source = _require_dir(ctx.settings.repo_root / FFMPEG_DIR, "FFmpeg sources")
    build = ctx.work_dir / "ffmpeg-build"
    install = ffmpeg_install_dir(ctx)
    build.mkdir(parents=True, exist_ok=True)

    env = {"PATH": toolchain.path_env()}
    ctx.runner.run_checked(
        [
            source / "configure",
            f"--prefix={install}",
            "--enable-cross-compile",
            f"--cross-prefix={toolchain.prefix}",
            f"--arch={ctx.target.arch.value}",
            "--target-os=linux",
            "--enable-shared",
            "--disable-static",
            "--disable-programs",
            "--disable-doc",
        ],
        cwd=build,
        env_override=env,
        label="ffmpeg-configure",
    )
    ctx.runner.run_checked(
        [ctx.settings.make, _jobs()], cwd=build, env_override=env, label="ffmpeg"
    )
    ctx.runner.run_checked(
        [ctx.settings.make, "install"],
        cwd=build,
        env_override=env,
        label="ffmpeg-install",
    )
    _copy_shared_libs(_require_dir(install / "lib", "FFmpeg install"), staging)


def stage_opencv(ctx: OverlayContext, staging: Path) -> None:
    """Cross-build OpenCV, with FFmpeg support when the tree has it."""
    toolchain = ctx.require_toolchain()
    source = _require_dir(ctx.settings.repo_root / OPENCV_DIR, "OpenCV sources")
    build = ctx.work_dir / "opencv-build"
    install = ctx.work_dir / "opencv-install"

    with_ffmpeg = "ffmpeg" in ctx.present
    env = {"PATH": toolchain.path_env()}
    if with_ffmpeg:
        env["PKG_CONFIG_PATH"] = str(ffmpeg_install_dir(ctx) / "lib" / "pkgconfig")

    cmake = ctx.settings.cmake
    ctx.runner.run_checked(
        [
            cmake,
            "-S",
            source,
            "-B",
            build,
            f"-DCMAKE_INSTALL_PREFIX={install}",
            "-DCMAKE_SYSTEM_NAME=Linux",
            f"-DCMAKE_SYSTEM_PROCESSOR={ctx.target.arch.value}",
            f"-DCMAKE_C_COMPILER={toolchain.cc}",
            f"-DCMAKE_CXX_COMPILER={toolchain.cxx}",
            "-DBUILD_SHARED_LIBS=ON",
            "-DBUILD_TESTS=OFF",
            "-DBUILD_PERF_TESTS=OFF",
            "-DBUILD_EXAMPLES=OFF",
            "-DBUILD_opencv_apps=OFF",
            f"-DWITH_FFMPEG={'ON' if with_ffmpeg else 'OFF'}",
        ],
        env_override=env,
        label="opencv-configure",
    )
    ctx.runner.run_checked(
        [cmake, "--build", build, "--parallel", str(os.cpu_count() or 1)],
        env_override=env,
        label="opencv",
    )
    ctx.runner.run_checked(
        [cmake, "--install", build], env_override=env, label="opencv-install"
    )
    _copy_shared_libs(_require_dir(install / "lib", "OpenCV install"), staging)


OVERLAYS: tuple[Overlay, ...] = (
    Overlay(
        name="libc-libos",
        priority=OverlayPriority.CORE,
        producer=stage_libc_libos,
        archs=frozenset({Arch.X86_64}),
    ),
    Overlay(
        name="musl-libs",
        priority=OverlayPriority.CORE,
        producer=stage_musl_libs,
        feature="musl-libs",
        destination="lib",
        toolchain_archs=frozenset(Arch),
    ),
    Overlay(
        name="libc-test",
        priority=OverlayPriority.TESTS,
        producer=stage_libc_test,
        feature="libc-test",
        destination=LIBC_TEST_DIR,
        toolchain_archs=frozenset({Arch.RISCV64}),
    ),
    Overlay(
        name="other-test",
        priority=OverlayPriority.TESTS,
        producer=stage_other_test,
        feature="other-test",
    ),
    Overlay(
        name="ffmpeg",
        priority=OverlayPriority.MEDIA,
        producer=stage_ffmpeg,
        feature="ffmpeg",
        destination="lib",
        shadows=frozenset({"musl-libs"}),
        toolchain_archs=frozenset(Arch),
    ),
    Overlay(
        name="opencv",
        priority=OverlayPriority.VISION,
        producer=stage_opencv,
        feature="opencv",
        destination="lib",
        shadows=frozenset({"musl-libs", "ffmpeg"}),
        soft_requires=SOFT_REQUIREMENTS["opencv"],
        toolchain_archs=frozenset(Arch),
    ),
)


def get_overlay(name: str) -> Overlay:
    """Look up a catalog overlay by name."""
    for overlay in OVERLAYS:
        if overlay.name == name:
            return overlay
    raise KeyError(name)


__all__ = [
    "OVERLAYS",
    "get_overlay",
    "stage_ffmpeg",
    "stage_libc_libos",
    "stage_libc_test",
    "stage_musl_libs",
    "stage_opencv",
    "stage_other_test",
]
