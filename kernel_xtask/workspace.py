"""Idempotent workspace setup (`xtask init`, `xtask update`).

init creates the working layout, syncs git submodules and, unless
offline, fetches everything the pipeline reads from the prebuilt prefix:
base rootfs archives, the musl cross toolchains and the RustSBI
firmware. Anything already present is left alone.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx

from kernel_xtask.prebuilt.catalog import (
    base_rootfs_archive,
    rustsbi_archive,
    rustsbi_firmware,
    toolchain_archive,
)
from kernel_xtask.prebuilt.fetch import ensure_archive, extract_archive, extract_zip
from kernel_xtask.toolchain.resolver import toolchain_dirname
from kernel_xtask.types import Arch

if TYPE_CHECKING:
    from pathlib import Path

    from kernel_xtask.config import Settings
    from kernel_xtask.runner import ToolRunner

logger = logging.getLogger(__name__)

FETCHED_TOOLCHAINS = tuple(Arch)


def working_dirs(settings: Settings) -> list[Path]:
    return [
        settings.rootfs_dir,
        settings.image_dir,
        settings.cache_dir,
        settings.toolchain_dir,
        settings.log_dir,
    ]


def init_workspace(
    settings: Settings,
    runner: ToolRunner,
    client: httpx.Client | None = None,
) -> list[str]:
    """Prepare the workspace.

    Args:
        settings: Settings.
        runner: Tool runner (git).
        client: HTTP client; one is created when not given.

    Returns:
        Human-readable list of actions taken.

    Raises:
        ToolExecutionError: If the submodule sync fails.
        FetchError: If a download or extraction fails.
    """
    actions: list[str] = []
    for directory in working_dirs(settings):
        if not directory.exists():
            directory.mkdir(parents=True)
            actions.append(f"created {directory}")

    if (settings.repo_root / ".gitmodules").is_file():
        runner.run_checked(
            [settings.git, "submodule", "update", "--init", "--recursive"],
            cwd=settings.repo_root,
            label="git-submodule",
        )
        actions.append("synced git submodules")
    else:
        logger.debug(
            "No .gitmodules in %s, skipping submodule sync", settings.repo_root
        )

    if settings.offline:
        logger.info("Offline mode: skipping prebuilt downloads")
        return actions

    owns_client = client is None
    if client is None:
        client = httpx.Client(follow_redirects=True)
    try:
        for arch in Arch:
            archive = base_rootfs_archive(arch, settings)
            path = ensure_archive(client, archive, arch, settings)
            actions.append(f"{arch.value} base rootfs at {path}")

        for arch in FETCHED_TOOLCHAINS:
            toolchain_dir = settings.toolchain_dir / toolchain_dirname(arch)
            if toolchain_dir.is_dir():
                continue
            archive = ensure_archive(client, toolchain_archive(arch), arch, settings)
            extract_archive(archive, settings.toolchain_dir)
            actions.append(f"installed {toolchain_dir.name}")

        firmware = rustsbi_firmware(settings)
        if not firmware.is_file():
            archive = ensure_archive(client, rustsbi_archive(), Arch.RISCV64, settings)
            extract_zip(archive, firmware.parent)
            actions.append(f"installed {firmware.name}")
    finally:
        if owns_client:
            client.close()

    return actions


def update_workspace(settings: Settings, runner: ToolRunner) -> list[str]:
    """Update the Rust toolchain and the lockfile.

    Raises:
        ToolExecutionError: If rustup or cargo fails.
    """
    runner.run_checked([settings.rustup, "update"], label="rustup-update")
    runner.run_checked(
        [settings.cargo, "update"], cwd=settings.repo_root, label="cargo-update"
    )
    return ["updated rust toolchain", "updated Cargo.lock"]


__all__ = ["init_workspace", "update_workspace", "working_dirs"]
