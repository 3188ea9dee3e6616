"""Compressed layer store.

This module handles:
- Mapping layer digests to archives under layers_compressed/
- Fetching only the layers that are not yet stored
- Removing archives when layers are pruned

Downloads land in a `.part` file that is renamed into place on success,
so an interrupted download is never mistaken for a stored layer.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from whaledrive.types import Digest

logger = logging.getLogger(__name__)

LAYER_SUFFIX = ".tgz"

# Callable that downloads one digest to the given path
LayerDownloader = Callable[[Digest, Path], object]


class LayerStore:
    """Digest-keyed store of compressed layer archives."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def path_for(self, digest: Digest) -> Path:
        """Return the archive path for a digest."""
        return self.root / f"{digest}{LAYER_SUFFIX}"

    def has(self, digest: Digest) -> bool:
        """Check if a layer archive is stored locally."""
        return self.path_for(digest).is_file()

    def missing(self, digests: Iterable[Digest]) -> list[Digest]:
        """Return the digests not yet stored, in order, without duplicates."""
        seen: set[Digest] = set()
        result: list[Digest] = []
        for digest in digests:
            if digest in seen:
                continue
            seen.add(digest)
            if not self.has(digest):
                result.append(digest)
        return result

    def _fetch_one(self, digest: Digest, download: LayerDownloader) -> Digest:
        dest = self.path_for(digest)
        part = dest.with_name(dest.name + ".part")
        try:
            download(digest, part)
            os.replace(part, dest)
        except BaseException:
            part.unlink(missing_ok=True)
            raise
        return digest

    def fetch_missing(
        self,
        digests: Iterable[Digest],
        download: LayerDownloader,
        max_workers: int = 4,
    ) -> list[Digest]:
        """Download every layer that is not stored yet.

        Layers have no ordering dependency while downloading, so they are
        fetched concurrently. The first failure is re-raised after the
        other downloads finish.

        Args:
            digests: Layer digests the image needs.
            download: Callable writing one digest's blob to a path.
            max_workers: Maximum concurrent downloads.

        Returns:
            Digests that were downloaded by this call.
        """
        todo = self.missing(digests)
        if not todo:
            logger.debug("All layers already stored")
            return []

        self.root.mkdir(parents=True, exist_ok=True)
        logger.info("Fetching %d missing layer(s)", len(todo))

        with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(todo)))) as pool:
            futures = [pool.submit(self._fetch_one, d, download) for d in todo]
            # result() re-raises the first failure in submission order
            return [future.result() for future in futures]

    def remove(self, digest: Digest) -> bool:
        """Delete a layer archive.

        Returns:
            True if an archive was removed, False if none existed.
        """
        path = self.path_for(digest)
        if not path.exists():
            return False
        logger.info("Removing layer archive %s", path)
        path.unlink()
        return True


__all__ = ["LAYER_SUFFIX", "LayerDownloader", "LayerStore"]
