"""Host command invocation.

This module handles:
- Running external tools with captured stdout/stderr
- Checking that required host tools are installed
- Typed wrappers for each host operation the assembler needs
  (raw file allocation, partitioning, loop devices, mkfs, mount, copy,
  bootloader burn)

Every wrapper raises a ResourceError subclass carrying the captured
output of the failing command. Swap the CommandRunner to run against a
different host (or a recording fake in tests).
"""

from __future__ import annotations

import json
import logging
import shlex
import shutil
import subprocess
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

from whaledrive.errors import (
    AllocationError,
    BootloaderError,
    CommandFailedError,
    CommandNotFoundError,
    CopyError,
    FormatError,
    LoopDeviceError,
    MountError,
    PartitionError,
)

logger = logging.getLogger(__name__)

# Tools the assembler shells out to
REQUIRED_COMMANDS = ("dd", "losetup", "mkfs.ext4", "mount", "umount", "sfdisk", "cp")

BLOCK_SIZE = 4096
DEFAULT_SECTOR_SIZE = 512
# MBR type 83: Linux native filesystem
LINUX_PARTITION_TYPE = "83"
FILESYSTEM_TYPE = "ext4"


@dataclass
class CommandResult:
    """Result of a host command.

    Attributes:
        args: The executed command.
        returncode: Process exit code.
        stdout: Captured standard output.
        stderr: Captured standard error.
    """

    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Runs host commands synchronously with captured output."""

    def run(self, args: list[str], input: str | None = None) -> CommandResult:
        """Execute a command.

        Args:
            args: Command as list of strings.
            input: Optional text written to the command's stdin.

        Returns:
            CommandResult with exit code and captured output.

        Raises:
            CommandFailedError: If the command cannot be started.
        """
        logger.debug("Executing: %s", shlex.join(args))
        try:
            result = subprocess.run(
                args,
                input=input,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            raise CommandFailedError(args, None, stderr=str(e)) from e

        return CommandResult(
            args=list(args),
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )


def check_required_commands(
    commands: Iterable[str] = REQUIRED_COMMANDS,
    which: Callable[[str], str | None] = shutil.which,
) -> None:
    """Fail fast if any required host tool is missing.

    Raises:
        CommandNotFoundError: Listing every missing command.
    """
    missing = [name for name in commands if which(name) is None]
    if missing:
        raise CommandNotFoundError(missing)


class HostTools:
    """Host operations used by the disk image assembler."""

    def __init__(self, runner: CommandRunner | None = None) -> None:
        self.runner = runner or CommandRunner()

    def _run(
        self,
        args: list[str],
        error_cls: type[CommandFailedError],
        input: str | None = None,
    ) -> str:
        result = self.runner.run(args, input=input)
        if not result.success:
            raise error_cls(args, result.returncode, result.stdout, result.stderr)
        return result.stdout

    def create_sparse_file(self, path: Path, blocks: int) -> None:
        """Create a zero-filled sparse file of `blocks` 4 KiB blocks."""
        self._run(
            [
                "dd",
                "if=/dev/zero",
                f"of={path}",
                f"bs={BLOCK_SIZE}",
                "count=0",
                f"seek={blocks}",
            ],
            AllocationError,
        )

    def write_partition_table(self, path: Path) -> None:
        """Write an MBR with a single bootable Linux partition spanning the file."""
        self._run(
            ["sfdisk", "--quiet", str(path)],
            PartitionError,
            input=f"type={LINUX_PARTITION_TYPE},bootable\n",
        )

    def partition_extent(self, path: Path) -> tuple[int, int]:
        """Read the first partition's byte offset and size.

        Returns:
            Tuple of (offset_bytes, size_bytes).

        Raises:
            PartitionError: If the table cannot be read or has no partition.
        """
        args = ["sfdisk", "--json", str(path)]
        output = self._run(args, PartitionError)
        try:
            table = json.loads(output)["partitiontable"]
            sector_size = int(table.get("sectorsize", DEFAULT_SECTOR_SIZE))
            first = table["partitions"][0]
            return int(first["start"]) * sector_size, int(first["size"]) * sector_size
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise PartitionError(args, 0, output, f"Unreadable partition table: {e}") from e

    def attach_loop(self, path: Path, offset: int, size: int) -> str:
        """Bind a byte range of a file to the first free loop device.

        The device is found and bound in one losetup call, so it is never
        released and re-claimed while in use.

        Args:
            path: Backing file.
            offset: Start of the range in bytes.
            size: Length of the range in bytes.

        Returns:
            The loop device path (e.g. /dev/loop3).
        """
        args = [
            "losetup",
            "--find",
            "--show",
            "--offset",
            str(offset),
            "--sizelimit",
            str(size),
            str(path),
        ]
        device = self._run(args, LoopDeviceError).strip()
        if not device:
            raise LoopDeviceError(args, 0, stderr="losetup reported no device")
        return device

    def detach_loop(self, device: str) -> None:
        self._run(["losetup", "--detach", device], LoopDeviceError)

    def format_filesystem(self, device: str) -> None:
        """Create an ext4 filesystem on a device."""
        logger.info("Formatting %s to %s", device, FILESYSTEM_TYPE)
        self._run([f"mkfs.{FILESYSTEM_TYPE}", "-q", "-F", device], FormatError)

    def mount(self, device: str, mount_point: Path) -> None:
        self._run(
            ["mount", "-t", FILESYSTEM_TYPE, device, str(mount_point)], MountError
        )

    def unmount(self, mount_point: Path) -> None:
        self._run(["umount", str(mount_point)], MountError)

    def copy_tree(self, source: Path, target: Path) -> None:
        """Copy a directory's contents preserving modes, owners and links.

        Raises:
            CopyError: If the copy fails.
        """
        result = self.runner.run(["cp", "-a", f"{source}/.", f"{target}/"])
        if not result.success:
            raise CopyError(
                f"Failed to copy {source} to {target}: {result.stderr.strip()}"
            )

    def burn_bootloader(self, bootloader: Path, image: Path, nbytes: int) -> None:
        """Write the first `nbytes` of the bootloader over the image's start.

        The image is not truncated, so the partition table after the boot
        code area is left untouched.

        Raises:
            BootloaderError: If the write fails.
        """
        result = self.runner.run(
            [
                "dd",
                f"if={bootloader}",
                f"of={image}",
                f"bs={nbytes}",
                "count=1",
                "conv=notrunc",
            ]
        )
        if not result.success:
            raise BootloaderError(
                f"Failed to burn bootloader {bootloader} into {image}",
                stdout=result.stdout,
                stderr=result.stderr,
            )


__all__ = [
    "BLOCK_SIZE",
    "CommandResult",
    "CommandRunner",
    "FILESYSTEM_TYPE",
    "HostTools",
    "LINUX_PARTITION_TYPE",
    "REQUIRED_COMMANDS",
    "check_required_commands",
]
