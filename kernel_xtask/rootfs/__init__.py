"""Root filesystem assembly.

This module handles:
- The per-architecture working tree and its manifest
- The overlay catalog (libraries, test suites, media/vision libraries)
- Clean-slate assembly with per-architecture locking
"""

from kernel_xtask.rootfs.assembler import RootfsAssembler
from kernel_xtask.rootfs.tree import RootfsTree, load_tree

__all__ = ["RootfsAssembler", "RootfsTree", "load_tree"]
