"""Layer handling module.

This module handles:
- The digest-keyed store of compressed layer archives
- Fetching only missing layers
- Ordered decompression with overlay and whiteout semantics
"""

from whaledrive.layers.decompress import stage_layers, staged_size
from whaledrive.layers.store import LayerStore

__all__ = ["LayerStore", "stage_layers", "staged_size"]
