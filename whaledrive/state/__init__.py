"""Local state module.

This module handles:
- The persisted state document (tag bindings, image records, layer set)
- Lookups and bookkeeping for build/remove/prune
- Loading once and persisting once per command
"""

from whaledrive.state.models import ApplicationState, ImageRecord, tag_key
from whaledrive.state.store import StateStore, open_state

__all__ = ["ApplicationState", "ImageRecord", "StateStore", "open_state", "tag_key"]
