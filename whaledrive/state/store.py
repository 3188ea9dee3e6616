"""Local state store.

This module handles:
- Loading the state document once per invocation
- Tag binding and image record lookups
- Image and layer bookkeeping for build/remove/prune
- Atomic write-back of the whole document

The document is small and always rewritten wholesale. It is persisted
once, when the invoked command completes normally (see open_state()).
No locking is done: concurrent processes sharing one base directory are
unsupported.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path

from pydantic import ValidationError

from whaledrive.errors import ImageNotFoundError, StateFormatError, StateReadError
from whaledrive.state.models import ApplicationState, ImageRecord, tag_key
from whaledrive.types import Digest, Platform

logger = logging.getLogger(__name__)


class StateStore:
    """In-memory view of the state document bound to its file path."""

    def __init__(self, path: Path, state: ApplicationState | None = None) -> None:
        self.path = path
        self.state = state if state is not None else ApplicationState()

    @classmethod
    def load(cls, path: Path) -> StateStore:
        """Load the state document from disk.

        A missing file yields an empty state.

        Args:
            path: Path to state.json.

        Returns:
            StateStore holding the loaded state.

        Raises:
            StateReadError: If the file exists but cannot be read.
            StateFormatError: If the file is not a valid state document.
        """
        if not path.exists():
            logger.debug("No state file at %s, starting empty", path)
            return cls(path)

        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as e:
            raise StateReadError(f"Failed to read state file {path}: {e}") from e

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StateFormatError(f"State file {path} is not valid JSON: {e}") from e

        try:
            state = ApplicationState.model_validate(data)
        except ValidationError as e:
            raise StateFormatError(f"State file {path} is malformed: {e}") from e

        logger.debug(
            "Loaded state: %d bindings, %d images, %d layers",
            len(state.tagged_images),
            len(state.images),
            len(state.layers),
        )
        return cls(path, state)

    # Lookups

    def lookup_digest(self, name: str, tag: str, platform: Platform) -> Digest | None:
        """Return the digest bound to name:tag on a platform, if any."""
        return self.state.tagged_images.get(tag_key(name, tag, platform))

    def lookup_image(
        self, name: str, tag: str, platform: Platform
    ) -> ImageRecord | None:
        """Return the image record bound to name:tag on a platform, if any."""
        digest = self.lookup_digest(name, tag, platform)
        if digest is None:
            return None
        return self.state.images.get(digest)

    def get_image(self, digest: Digest) -> ImageRecord | None:
        return self.state.images.get(digest)

    @property
    def images(self) -> dict[Digest, ImageRecord]:
        return self.state.images

    @property
    def layers(self) -> list[Digest]:
        return self.state.layers

    # Mutations

    def bind(self, name: str, tag: str, platform: Platform, digest: Digest) -> None:
        """Bind name:tag on a platform to a digest (idempotent upsert)."""
        self.state.tagged_images[tag_key(name, tag, platform)] = digest

    def unbind_digest(self, digest: Digest) -> list[str]:
        """Remove every tag binding pointing at a digest.

        Args:
            digest: Image digest.

        Returns:
            The removed binding keys.
        """
        keys = [k for k, v in self.state.tagged_images.items() if v == digest]
        for key in keys:
            del self.state.tagged_images[key]
        return keys

    def upsert_image(self, digest: Digest, record: ImageRecord) -> bool:
        """Insert an image record unless the digest is already known.

        Images are immutable, so the first writer wins.

        Returns:
            True if the record was inserted.
        """
        if digest in self.state.images:
            return False
        self.state.images[digest] = record
        return True

    def remove_image(self, digest: Digest) -> ImageRecord:
        """Remove an image record.

        Callers are responsible for removing dependent tag bindings.

        Raises:
            ImageNotFoundError: If no record exists for the digest.
        """
        try:
            return self.state.images.pop(digest)
        except KeyError:
            raise ImageNotFoundError(f"Image not found: {digest}") from None

    def add_layers(self, digests: Iterable[Digest]) -> None:
        """Add digests to the layer set, keeping insertion order."""
        known = set(self.state.layers)
        for digest in digests:
            if digest not in known:
                self.state.layers.append(digest)
                known.add(digest)

    def referenced_layers(self) -> set[Digest]:
        """Return every layer digest referenced by some image record."""
        referenced: set[Digest] = set()
        for record in self.state.images.values():
            referenced.update(record.layers)
        return referenced

    def unreferenced_layers(self) -> list[Digest]:
        """Return layer-set digests no image record references.

        Reachability is recomputed from all records on every call.
        """
        referenced = self.referenced_layers()
        return [d for d in self.state.layers if d not in referenced]

    def remove_layers(self, digests: Iterable[Digest]) -> None:
        """Drop digests from the layer set."""
        doomed = set(digests)
        self.state.layers = [d for d in self.state.layers if d not in doomed]

    # Persistence

    def persist(self) -> None:
        """Atomically write the whole state document.

        The document is written to a temporary file in the same directory
        and renamed over state.json.

        Raises:
            StateReadError: If the document cannot be written.
        """
        payload = self.state.model_dump_json(indent=2)

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.path.parent, prefix=".state-", suffix=".tmp"
            )
        except OSError as e:
            raise StateReadError(f"Failed to write state file {self.path}: {e}") from e

        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StateReadError(f"Failed to write state file {self.path}: {e}") from e

        logger.debug("Persisted state to %s", self.path)


@contextmanager
def open_state(path: Path) -> Iterator[StateStore]:
    """Load the state for one command and persist it on normal completion.

    If the body raises, nothing is written, so the document only ever
    reflects fully completed commands.

    Args:
        path: Path to state.json.

    Yields:
        The loaded StateStore.
    """
    store = StateStore.load(path)
    yield store
    store.persist()


__all__ = ["StateStore", "open_state"]
