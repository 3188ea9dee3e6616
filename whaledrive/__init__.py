"""whaledrive - Build bootable VM disk images from container registry images.

This package fetches image layers from a container registry, caches them
locally, and assembles them into a partitioned raw disk image with an ext4
root filesystem and a burned bootloader.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
