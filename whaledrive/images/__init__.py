"""Image orchestration module.

This module handles:
- Cache-aware builds (remote digest vs. locally bound digest)
- Image info, listing, removal and layer pruning
- JSON result models for the CLI
"""

from whaledrive.images.models import (
    BuildImageResult,
    ImageInfoResult,
    ListImagesResult,
    PruneResult,
    RemoveImageResult,
)

__all__ = [
    "BuildImageResult",
    "ImageInfoResult",
    "ListImagesResult",
    "PruneResult",
    "RemoveImageResult",
]

# Lazy imports for submodules to avoid circular imports
# Access via whaledrive.images.service
