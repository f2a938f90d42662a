"""Disk image packaging."""

from kernel_xtask.image.packager import ImagePackager, ImageSpec, image_path

__all__ = ["ImagePackager", "ImageSpec", "image_path"]
