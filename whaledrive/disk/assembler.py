"""Disk image assembler.

Turns an ordered list of layer archives into a bootable raw disk image:

    STAGE -> SIZE -> ALLOCATE -> PARTITION -> ATTACH -> OFFSET-FORMAT
      -> MOUNT -> COPY -> EXTRACT-BOOTLOADER -> UNMOUNT -> DETACH -> BURN

Loop devices and mount points are acquired and released in LIFO order.
When a step fails after the loop device is attached, unmount and detach
are still attempted; their failures are logged and attached to the
triggering exception, which is what propagates.

Only one assembly runs at a time per process. Killing the process
mid-assembly can leak loop devices and mount points; nothing reclaims
them across processes.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import threading
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path

from whaledrive.disk.commands import BLOCK_SIZE, HostTools
from whaledrive.errors import BootloaderError, EmptyImageError, WhaledriveError
from whaledrive.layers.decompress import stage_layers
from whaledrive.layers.store import LayerStore
from whaledrive.types import Digest

logger = logging.getLogger(__name__)

# Headroom for the partition table, filesystem metadata and bootloader
SIZE_RESERVE_BYTES = 20 * 1024 * 1024
# Boot code area of the MBR; the partition table starts right after it
BOOTLOADER_BYTES = 440

_assembly_slot = threading.Lock()


def compute_image_size(staged_bytes: int) -> tuple[int, int]:
    """Compute the raw image size for a staged root filesystem.

    Twice the staged content plus a fixed reserve, rounded down to whole
    blocks. This is an estimate, not exact ext4 block accounting.

    Args:
        staged_bytes: Size of the staged content.

    Returns:
        Tuple of (size_bytes, block_count).
    """
    blocks = (staged_bytes * 2 + SIZE_RESERVE_BYTES) // BLOCK_SIZE
    return blocks * BLOCK_SIZE, blocks


def _release(action: Callable[[], None], what: str, error: BaseException) -> None:
    """Run a teardown step while another error is propagating."""
    try:
        action()
    except Exception as teardown_error:
        # Surfaced via teardown_errors; stderr is reserved for the JSON error
        logger.info("Failed to %s during cleanup: %s", what, teardown_error)
        if isinstance(error, WhaledriveError):
            error.add_teardown_error(teardown_error)
        else:
            error.add_note(f"teardown failed: {teardown_error}")


@contextmanager
def attached_loop_device(
    tools: HostTools, image_path: Path, offset: int, size: int
) -> Iterator[str]:
    """Attach a partition of a file to a loop device for the block.

    Yields:
        The loop device path.
    """
    device = tools.attach_loop(image_path, offset, size)
    logger.info("Attached %s (offset %d) to %s", image_path, offset, device)
    try:
        yield device
    except BaseException as e:
        _release(lambda: tools.detach_loop(device), f"detach {device}", e)
        raise
    else:
        tools.detach_loop(device)
        logger.info("Detached %s", device)


@contextmanager
def mounted(
    tools: HostTools, device: str, tmp_dir: Path | None = None
) -> Iterator[Path]:
    """Mount a device at a fresh temporary mount point.

    The mount point is removed with rmdir only, so a failed unmount never
    leads to deleting the mounted filesystem's contents.

    Yields:
        The mount point.
    """
    mount_point = Path(tempfile.mkdtemp(prefix="whaledrive-mnt-", dir=tmp_dir))
    try:
        tools.mount(device, mount_point)
    except BaseException as e:
        _release(mount_point.rmdir, f"remove {mount_point}", e)
        raise
    logger.info("Mounted %s at %s", device, mount_point)

    try:
        yield mount_point
    except BaseException as e:
        _release(lambda: tools.unmount(mount_point), f"unmount {mount_point}", e)
        _release(mount_point.rmdir, f"remove {mount_point}", e)
        raise
    else:
        tools.unmount(mount_point)
        logger.info("Unmounted %s", mount_point)
        mount_point.rmdir()


def extract_bootloader(mount_point: Path, bootloader_path: str, dest: Path) -> None:
    """Copy the bootloader out of the mounted image.

    Args:
        mount_point: Root of the mounted filesystem.
        bootloader_path: Path of the bootloader inside the image.
        dest: Location outside the mount point.

    Raises:
        BootloaderError: If the bootloader cannot be copied.
    """
    relative = bootloader_path.lstrip("/")
    if not relative:
        raise BootloaderError(f"Invalid bootloader path: {bootloader_path!r}")

    source = mount_point / relative
    try:
        shutil.copyfile(source, dest)
    except OSError as e:
        raise BootloaderError(
            f"Failed to copy bootloader {bootloader_path} from image: {e}"
        ) from e
    logger.debug("Copied bootloader %s to %s", bootloader_path, dest)


def assemble_disk_image(
    layers: Sequence[Digest],
    layer_store: LayerStore,
    bootloader_path: str,
    destination: Path,
    tools: HostTools | None = None,
    tmp_dir: Path | None = None,
) -> int:
    """Build a bootable raw disk image from layer archives.

    Any existing file at the destination is replaced; assembly is not
    resumable. Output is deterministic for an identical layer set.

    Args:
        layers: Layer digests in application order (bottom to top).
        layer_store: Store holding the compressed layer archives.
        bootloader_path: Path of the bootloader binary inside the image.
        destination: Output image path.
        tools: Host tool wrapper (default: run real commands).
        tmp_dir: Directory for staging and mount points.

    Returns:
        Size of the created image in bytes.

    Raises:
        EmptyImageError: If the layers stage to zero bytes.
        ExtractionError: If a layer cannot be unpacked.
        ResourceError: If a host tool step fails.
        CopyError: If staged content cannot be copied into the image.
    """
    tools = tools or HostTools()

    with _assembly_slot, tempfile.TemporaryDirectory(
        prefix="whaledrive-", dir=tmp_dir, ignore_cleanup_errors=True
    ) as work:
        work_dir = Path(work)
        staging_dir = work_dir / "rootfs"
        bootloader_copy = work_dir / "bootloader.img"

        # STAGE
        staged_bytes = stage_layers(layers, layer_store, staging_dir)
        if staged_bytes == 0:
            raise EmptyImageError()

        # SIZE
        size, blocks = compute_image_size(staged_bytes)
        logger.info(
            "Staged %d bytes; creating %d byte image at %s",
            staged_bytes,
            size,
            destination,
        )

        # ALLOCATE
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.unlink(missing_ok=True)
        tools.create_sparse_file(destination, blocks)

        # PARTITION
        tools.write_partition_table(destination)
        offset, partition_size = tools.partition_extent(destination)

        # ATTACH
        with attached_loop_device(
            tools, destination, offset, partition_size
        ) as device:
            # OFFSET-FORMAT
            tools.format_filesystem(device)

            with mounted(tools, device, tmp_dir) as mount_point:
                # COPY
                tools.copy_tree(staging_dir, mount_point)
                # EXTRACT-BOOTLOADER
                extract_bootloader(mount_point, bootloader_path, bootloader_copy)
            # UNMOUNT on leaving the mount block, DETACH on leaving the loop block

        # BURN
        tools.burn_bootloader(bootloader_copy, destination, BOOTLOADER_BYTES)

    logger.info("Assembled %s (%d bytes)", destination, size)
    return size


__all__ = [
    "BOOTLOADER_BYTES",
    "SIZE_RESERVE_BYTES",
    "assemble_disk_image",
    "attached_loop_device",
    "compute_image_size",
    "extract_bootloader",
    "mounted",
]
