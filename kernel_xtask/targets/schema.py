"""Target descriptor: validation and normalization of build targets.

A Target is immutable and only constructed through build_target(), which
rejects unsupported architectures and contradictory feature sets before
anything touches the filesystem.
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from kernel_xtask.errors import InvalidArchitecture, InvalidFeatureCombination
from kernel_xtask.targets.catalog import (
    KERNEL_FEATURES,
    ROOTFS_FEATURES,
    board_features,
    get_arch_profile,
)
from kernel_xtask.types import Arch

if TYPE_CHECKING:
    from kernel_xtask.config import Settings


class Target(BaseModel):
    """Fully validated (architecture, board, features) tuple.

    Attributes:
        arch: Target architecture.
        board: Board variant.
        features: Normalized feature flags.
        output_dir: Directory receiving compiled kernel artifacts.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    arch: Arch
    board: str
    features: frozenset[str] = Field(default_factory=frozenset)
    output_dir: Path

    @property
    def kernel_features(self) -> list[str]:
        """Feature flags passed to the kernel build, sorted."""
        return sorted(self.features & KERNEL_FEATURES)

    @property
    def rootfs_features(self) -> list[str]:
        """Rootfs overlay names requested by this target, sorted."""
        return sorted(self.features & ROOTFS_FEATURES)

    def with_features(self, extra: Iterable[str], settings: Settings) -> Target:
        """Return a re-validated target with additional features."""
        return build_target(
            self.arch.value,
            board=self.board,
            features=set(self.features) | set(extra),
            output_dir=self.output_dir,
            settings=settings,
        )


def parse_arch(arch: str) -> Arch:
    """Parse an architecture string (case-insensitive).

    Raises:
        InvalidArchitecture: If the architecture is not supported.
    """
    try:
        return Arch(arch.strip().lower())
    except ValueError:
        raise InvalidArchitecture(arch) from None


def _check_features(arch: Arch, board: str, features: set[str]) -> None:
    profile = get_arch_profile(arch)

    unknown = features - KERNEL_FEATURES - ROOTFS_FEATURES
    if unknown:
        raise InvalidFeatureCombination(
            f"Unknown feature(s): {', '.join(sorted(unknown))}"
        )

    if {"linux", "zircon"} <= features:
        raise InvalidFeatureCombination("Features 'linux' and 'zircon' are exclusive")

    for feature in sorted(features & (KERNEL_FEATURES - board_features())):
        owners = [
            p.arch.value
            for p in (get_arch_profile(a) for a in Arch)
            if feature in p.kernel_only_features
        ]
        if owners and arch.value not in owners:
            raise InvalidFeatureCombination(
                f"Feature '{feature}' is only supported on {', '.join(owners)}"
            )

    boards = features & board_features()
    if "libos" in features and (boards or "link-user-img" in features):
        raise InvalidFeatureCombination(
            "Feature 'libos' cannot be combined with board features or link-user-img"
        )
    if len(boards) > 1:
        raise InvalidFeatureCombination(
            f"Conflicting board features: {', '.join(sorted(boards))}"
        )
    expected = profile.boards[board]
    if boards and boards != {expected}:
        raise InvalidFeatureCombination(
            f"Board feature {next(iter(boards))} does not match board '{board}'"
        )

    unavailable = (features & ROOTFS_FEATURES) - profile.rootfs_features
    if unavailable:
        raise InvalidFeatureCombination(
            f"Rootfs feature(s) {', '.join(sorted(unavailable))} "
            f"not available on {arch.value}"
        )


def build_target(
    arch: str,
    board: str | None = None,
    features: Iterable[str] = (),
    output_dir: Path | None = None,
    settings: Settings | None = None,
) -> Target:
    """Construct a Target from raw command input.

    Normalization applied:
    - default board per architecture
    - 'linux' added when neither 'linux' nor 'zircon' is requested
      (libos runs are linux-only and get 'linux' too)
    - the board feature implied by the board, when the board has one
    - output_dir defaults to <repo_root>/target/<arch>

    Args:
        arch: Architecture string.
        board: Optional board variant.
        features: Feature flags.
        output_dir: Optional output directory for kernel artifacts.
        settings: Settings for default output paths.

    Returns:
        Validated Target.

    Raises:
        InvalidArchitecture: If the architecture is not supported.
        InvalidFeatureCombination: If board/features are invalid.
    """
    parsed = parse_arch(arch)
    profile = get_arch_profile(parsed)

    board = (board or profile.default_board).strip().lower()
    if board not in profile.boards:
        raise InvalidFeatureCombination(
            f"Board '{board}' is not supported on {parsed.value} "
            f"(supported: {', '.join(sorted(profile.boards))})"
        )

    flags = {f.strip().lower() for f in features if f.strip()}
    _check_features(parsed, board, flags)

    if "zircon" not in flags:
        flags.add("linux")
    board_feature = profile.boards[board]
    if board_feature and "libos" not in flags:
        flags.add(board_feature)

    if output_dir is None:
        root = settings.repo_root if settings is not None else Path.cwd()
        output_dir = root / "target" / parsed.value

    return Target(
        arch=parsed,
        board=board,
        features=frozenset(flags),
        output_dir=output_dir,
    )


__all__ = ["Target", "build_target", "parse_arch"]
