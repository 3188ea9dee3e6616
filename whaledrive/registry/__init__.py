"""Container registry access.

This module handles:
- Image reference parsing
- Registry document models (manifest list, image manifest, image config)
- The HTTP client used to fetch manifests, configs and layer blobs
"""

from whaledrive.registry.client import RegistryClient
from whaledrive.registry.models import (
    ImageConfig,
    ImageManifest,
    ImageReference,
    ManifestList,
)

__all__ = [
    "ImageConfig",
    "ImageManifest",
    "ImageReference",
    "ManifestList",
    "RegistryClient",
]
