"""Cross toolchain resolution."""

from kernel_xtask.toolchain.resolver import Toolchain, ToolchainResolver

__all__ = ["Toolchain", "ToolchainResolver"]
