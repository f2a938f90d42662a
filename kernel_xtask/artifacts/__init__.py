"""Kernel artifacts: building the kernel and post-processing its binary."""

from kernel_xtask.artifacts.kernel import KernelBuilder, kernel_elf
from kernel_xtask.artifacts.postprocess import ArtifactPostProcessor

__all__ = ["ArtifactPostProcessor", "KernelBuilder", "kernel_elf"]
