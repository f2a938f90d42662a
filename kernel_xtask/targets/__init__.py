"""Target descriptors.

This module handles:
- The static catalog of architectures, boards and feature flags
- Validation and normalization of raw command input into a Target
"""

from kernel_xtask.targets.schema import Target, build_target, parse_arch

__all__ = ["Target", "build_target", "parse_arch"]
