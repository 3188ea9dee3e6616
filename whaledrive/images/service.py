"""Image service module.

This module provides the high-level image API:
- image_info(): Compare the remote image digest with local state
- build_image(): Main entry point - build with cache awareness
- list_images(): List locally stored images
- remove_image(): Remove an image, optionally pruning its layers
- prune(): Remove layers no image references

State is only mutated in memory here; the caller persists it once the
command has completed (see whaledrive.state.open_state).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from whaledrive.disk.assembler import assemble_disk_image
from whaledrive.errors import (
    BootloaderPathMissingError,
    ImageNotFoundError,
    LocalIOError,
    PlatformNotFoundError,
)
from whaledrive.images.models import (
    BuildImageResult,
    ImageInfoResult,
    ListImagesResult,
    PruneResult,
    RemoveImageResult,
)
from whaledrive.layers.store import LayerStore
from whaledrive.state.models import ImageRecord
from whaledrive.types import Digest, Platform

if TYPE_CHECKING:
    from whaledrive.config import Settings
    from whaledrive.registry.models import (
        ImageConfig,
        ImageManifest,
        ImageReference,
        ManifestList,
    )
    from whaledrive.state.store import StateStore

logger = logging.getLogger(__name__)

# Signature of assemble_disk_image: (layers, layer_store, bootloader_path,
# destination, *, tmp_dir) -> size
Assembler = Callable[..., int]


class RegistrySource(Protocol):
    """The registry operations the image service consumes."""

    def get_manifest_list(self, ref: ImageReference) -> ManifestList: ...

    def get_manifest(self, ref: ImageReference, digest: Digest) -> ImageManifest: ...

    def get_image_config(self, ref: ImageReference, digest: Digest) -> ImageConfig: ...

    def download_blob(self, ref: ImageReference, digest: Digest, dest: Path) -> int: ...


def resolve_manifest(
    registry: RegistrySource,
    ref: ImageReference,
    platform: Platform,
) -> ImageManifest:
    """Fetch the image manifest for a reference and platform.

    Args:
        registry: Registry to query.
        ref: Image reference.
        platform: Requested platform.

    Returns:
        The platform's image manifest.

    Raises:
        PlatformNotFoundError: If the manifest list has no such platform.
        ManifestError: If a manifest cannot be fetched.
    """
    manifests = registry.get_manifest_list(ref)
    descriptor = manifests.find(platform)
    if descriptor is None:
        raise PlatformNotFoundError(str(ref), platform.os, platform.architecture)
    return registry.get_manifest(ref, descriptor.digest)


def image_info(
    store: StateStore,
    registry: RegistrySource,
    ref: ImageReference,
    platform: Platform,
) -> ImageInfoResult:
    """Report the remote digest of an image and whether it is stored locally."""
    manifest = resolve_manifest(registry, ref, platform)
    remote_digest = manifest.config.digest
    stored_digest = store.lookup_digest(ref.name, ref.tag, platform)

    return ImageInfoResult(
        digest=remote_digest,
        downloaded=stored_digest is not None,
        is_latest=stored_digest == remote_digest,
    )


def build_image(
    store: StateStore,
    registry: RegistrySource,
    settings: Settings,
    ref: ImageReference,
    platform: Platform,
    outfile: Path | None = None,
    assembler: Assembler | None = None,
) -> BuildImageResult:
    """Build a disk image, reusing the cached one when it is current.

    When the locally bound digest equals the remote config digest, its
    record exists and no output path is requested, nothing is downloaded
    or assembled.
    Otherwise missing layers are fetched and the image is assembled. State
    is updated only after assembly succeeds.

    Args:
        store: Loaded local state.
        registry: Registry to fetch from.
        settings: Effective settings (paths, labels, concurrency).
        ref: Image reference.
        platform: Target platform.
        outfile: Optional explicit output path (forces a rebuild).
        assembler: Disk image assembler (default: assemble_disk_image).

    Returns:
        BuildImageResult with digest, size and image path.

    Raises:
        PlatformNotFoundError: If the image has no manifest for the platform.
        BootloaderPathMissingError: If the image config lacks the label.
        WhaledriveError: If any download or assembly step fails.
    """
    manifest = resolve_manifest(registry, ref, platform)
    digest = manifest.config.digest
    stored_digest = store.lookup_digest(ref.name, ref.tag, platform)

    record = store.get_image(digest) if stored_digest == digest else None
    if stored_digest == digest and record is None:
        logger.info("Binding for %s points at missing image %s; rebuilding", ref, digest)

    if record is not None and outfile is None:
        logger.info("Cache hit for %s (%s)", ref, digest)
        return BuildImageResult(
            digest=digest,
            size=record.size,
            downloaded=True,
            file_path=str(settings.image_path(digest)),
        )

    logger.info("Building %s for %s (%s)", ref, platform, digest)
    config = registry.get_image_config(ref, digest)
    bootloader_path = config.labels.get(settings.bootloader_label)
    if not bootloader_path:
        raise BootloaderPathMissingError(digest, settings.bootloader_label)

    layers = manifest.layer_digests
    layer_store = LayerStore(settings.layers_dir)
    fetched = layer_store.fetch_missing(
        layers,
        partial(registry.download_blob, ref),
        max_workers=settings.max_concurrent_downloads,
    )
    logger.info("Downloaded %d of %d layer(s)", len(fetched), len(layers))

    destination = outfile or settings.image_path(digest)
    assemble = assembler or assemble_disk_image
    size = assemble(
        layers,
        layer_store,
        bootloader_path,
        destination,
        tmp_dir=settings.tmp_dir,
    )

    store.upsert_image(
        digest,
        ImageRecord(
            platform=platform,
            name=ref.name,
            tag=ref.tag,
            layers=layers,
            size=size,
        ),
    )
    store.add_layers(layers)
    store.bind(ref.name, ref.tag, platform, digest)

    return BuildImageResult(
        digest=digest,
        size=size,
        downloaded=True,
        file_path=str(destination),
    )


def list_images(store: StateStore) -> ListImagesResult:
    """List every locally stored image record."""
    return ListImagesResult(images=dict(store.images))


def _prune_layers(store: StateStore, layer_store: LayerStore) -> list[Digest]:
    """Remove every stored layer that no image references.

    Raises:
        LocalIOError: If an archive cannot be deleted.
    """
    doomed = store.unreferenced_layers()
    for digest in doomed:
        try:
            layer_store.remove(digest)
        except OSError as e:
            raise LocalIOError(f"Failed to remove layer {digest}: {e}") from e
    store.remove_layers(doomed)
    if doomed:
        logger.info("Pruned %d layer(s)", len(doomed))
    return doomed


def remove_image(
    store: StateStore,
    settings: Settings,
    ref: ImageReference,
    platform: Platform,
    prune: bool = False,
) -> RemoveImageResult:
    """Remove an image record, its tag bindings and its default image file.

    Args:
        store: Loaded local state.
        settings: Effective settings.
        ref: Image reference.
        platform: Platform of the image.
        prune: Also remove layers no remaining image references.

    Returns:
        RemoveImageResult with the image digest and removed layers.

    Raises:
        ImageNotFoundError: If nothing is bound to the reference.
    """
    digest = store.lookup_digest(ref.name, ref.tag, platform)
    if digest is None:
        raise ImageNotFoundError(
            f"Digest not found for image {ref.name}:{ref.tag} ({platform})"
        )

    if store.get_image(digest) is not None:
        store.remove_image(digest)
    else:
        logger.info("No record for %s; removing dangling binding(s)", digest)
    removed_bindings = store.unbind_digest(digest)
    logger.info("Removed image %s and binding(s) %s", digest, removed_bindings)

    removed_layers: list[Digest] = []
    if prune:
        removed_layers = _prune_layers(store, LayerStore(settings.layers_dir))

    # Last, so a failed prune leaves the persisted record with its file
    try:
        settings.image_path(digest).unlink(missing_ok=True)
    except OSError as e:
        raise LocalIOError(f"Failed to remove image file for {digest}: {e}") from e

    return RemoveImageResult(digest=digest, removed_layers=removed_layers)


def prune(store: StateStore, settings: Settings) -> PruneResult:
    """Remove every stored layer no image references."""
    return PruneResult(layers=_prune_layers(store, LayerStore(settings.layers_dir)))


__all__ = [
    "Assembler",
    "RegistrySource",
    "build_image",
    "image_info",
    "list_images",
    "prune",
    "remove_image",
    "resolve_manifest",
]
