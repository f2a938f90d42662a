"""Kernel xtask - build and deployment orchestration for a multi-arch kernel.

This package drives toolchain resolution, root filesystem assembly, disk
image packaging, kernel post-processing and emulator/libos launches for the
supported target architectures.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
