"""Layer decompression onto a staging directory.

This module handles:
- Unpacking layer archives in manifest order (bottom to top)
- Overlay semantics: later entries replace earlier ones, directories merge
- OCI whiteouts (`.wh.<name>` and the opaque marker `.wh..wh..opq`)
- Measuring the staged content

Layer order is a correctness requirement: a later layer shadows files of
the layers below it.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import tarfile
from collections.abc import Sequence
from pathlib import Path, PurePosixPath

from whaledrive.errors import ExtractionError
from whaledrive.layers.store import LayerStore
from whaledrive.types import Digest

logger = logging.getLogger(__name__)

WHITEOUT_PREFIX = ".wh."
OPAQUE_WHITEOUT = ".wh..wh..opq"


def _member_path(name: str) -> PurePosixPath:
    """Normalize an archive member name to a safe relative path.

    Raises:
        ExtractionError: If the name escapes the destination.
    """
    rel = PurePosixPath(name.lstrip("/"))
    if ".." in rel.parts:
        raise ExtractionError(f"Refusing to extract {name}: path traversal detected")
    return rel


def _is_real_dir(path: Path) -> bool:
    return path.is_dir() and not path.is_symlink()


def _remove_path(path: Path) -> None:
    """Remove a file, symlink or directory tree if it exists."""
    if _is_real_dir(path):
        shutil.rmtree(path)
    elif os.path.lexists(path):
        path.unlink()


def _inside(dest: Path, path: Path) -> bool:
    """Check that a path resolves within dest (following host symlinks)."""
    real_dest = os.path.realpath(dest)
    real_path = os.path.realpath(path)
    return os.path.commonpath([real_dest, real_path]) == real_dest


def overlay_filter(member: tarfile.TarInfo, dest_path: str) -> tarfile.TarInfo:
    """Extraction filter applying overlay semantics for one member.

    Modes, ownership and special bits are kept as archived, since the
    result is a root filesystem. Whatever a lower layer left at the
    member's path is removed first unless both are directories, in which
    case they merge.

    Args:
        member: Archive member about to be extracted.
        dest_path: Staging directory.

    Returns:
        The member, with leading separators stripped from its name.

    Raises:
        ExtractionError: If the member would land outside the staging dir.
    """
    dest = Path(dest_path)
    rel = _member_path(member.name)
    target = dest / rel

    if not _inside(dest, target.parent):
        raise ExtractionError(
            f"Refusing to extract {member.name}: parent resolves outside {dest}"
        )
    if member.islnk() and not _inside(dest, dest / _member_path(member.linkname)):
        raise ExtractionError(
            f"Refusing to extract {member.name}: hardlink target outside {dest}"
        )

    if rel.parts and os.path.lexists(target):
        if not (member.isdir() and _is_real_dir(target)):
            _remove_path(target)

    if member.islnk():
        return member.replace(
            name=rel.as_posix(),
            linkname=_member_path(member.linkname).as_posix(),
            deep=False,
        )
    return member.replace(name=rel.as_posix(), deep=False)


def _apply_whiteouts(
    members: list[tarfile.TarInfo], staging_dir: Path
) -> list[tarfile.TarInfo]:
    """Apply a layer's whiteouts to the layers below it.

    Returns:
        The members that are regular entries (whiteout markers removed).
    """
    entries: list[tarfile.TarInfo] = []

    for member in members:
        rel = _member_path(member.name)
        basename = rel.name

        if not basename.startswith(WHITEOUT_PREFIX):
            entries.append(member)
            continue

        parent = staging_dir / rel.parent
        if not _is_real_dir(parent) or not _inside(staging_dir, parent):
            # Nothing below to hide
            continue

        if basename == OPAQUE_WHITEOUT:
            logger.debug("Opaque whiteout: clearing %s", parent)
            for child in parent.iterdir():
                _remove_path(child)
        else:
            hidden = parent / basename[len(WHITEOUT_PREFIX) :]
            logger.debug("Whiteout: removing %s", hidden)
            _remove_path(hidden)

    return entries


def extract_layer(archive_path: Path, staging_dir: Path) -> None:
    """Unpack one layer archive over the staging directory.

    Args:
        archive_path: Path to the (optionally compressed) tar archive.
        staging_dir: Directory holding the layers below this one.

    Raises:
        ExtractionError: If the archive is missing, corrupt or unsafe.
    """
    if not archive_path.exists():
        raise ExtractionError(f"Layer archive {archive_path} not found")

    logger.debug("Extracting %s", archive_path.name)

    try:
        with tarfile.open(archive_path, "r:*") as tar:
            entries = _apply_whiteouts(tar.getmembers(), staging_dir)
            tar.extractall(
                staging_dir,
                members=entries,
                numeric_owner=True,
                filter=overlay_filter,
            )
    except tarfile.TarError as e:
        raise ExtractionError(f"Failed to extract {archive_path}: {e}") from e
    except OSError as e:
        raise ExtractionError(f"OS error extracting {archive_path}: {e}") from e


def stage_layers(
    layers: Sequence[Digest],
    layer_store: LayerStore,
    staging_dir: Path,
) -> int:
    """Decompress layers in order onto a staging directory.

    Args:
        layers: Layer digests in application order (bottom to top).
        layer_store: Store holding the compressed archives.
        staging_dir: Destination directory (created if needed).

    Returns:
        Total size in bytes of the staged regular files.

    Raises:
        ExtractionError: If any layer cannot be extracted.
    """
    staging_dir.mkdir(parents=True, exist_ok=True)

    for index, digest in enumerate(layers, start=1):
        logger.info("Staging layer %d/%d: %s", index, len(layers), digest)
        extract_layer(layer_store.path_for(digest), staging_dir)

    return staged_size(staging_dir)


def staged_size(directory: Path) -> int:
    """Sum the sizes of regular files below a directory.

    Symlinks are not followed.

    Args:
        directory: Directory to measure.

    Returns:
        Total size in bytes.
    """
    total = 0
    for root, _dirs, files in os.walk(directory):
        for name in files:
            st = os.lstat(os.path.join(root, name))
            if stat.S_ISREG(st.st_mode):
                total += st.st_size
    return total


__all__ = [
    "OPAQUE_WHITEOUT",
    "WHITEOUT_PREFIX",
    "extract_layer",
    "overlay_filter",
    "stage_layers",
    "staged_size",
]
