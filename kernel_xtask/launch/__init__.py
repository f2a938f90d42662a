"""Kernel launches under the emulator or as a libos process."""

from kernel_xtask.launch.launcher import Launcher, LaunchSpec

__all__ = ["LaunchSpec", "Launcher"]
