"""Disk image assembly module.

This module handles:
- Host tool invocation (dd, sfdisk, losetup, mkfs.ext4, mount, cp)
- The assembly pipeline from staged layers to a bootable raw image
"""

from whaledrive.disk.assembler import assemble_disk_image, compute_image_size
from whaledrive.disk.commands import CommandRunner, HostTools, check_required_commands

__all__ = [
    "CommandRunner",
    "HostTools",
    "assemble_disk_image",
    "check_required_commands",
    "compute_image_size",
]
