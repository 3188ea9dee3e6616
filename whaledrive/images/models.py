"""Result models for image commands.

Field names are the stable JSON keys printed by the CLI.
"""

from pydantic import BaseModel, Field

from whaledrive.state.models import ImageRecord
from whaledrive.types import Digest


class ImageInfoResult(BaseModel):
    """Remote digest of an image and how it relates to local state."""

    digest: Digest = Field(description="Config digest of the remote image")
    downloaded: bool = Field(description="Whether any version is stored locally")
    is_latest: bool = Field(description="Whether the stored version is the remote one")


class BuildImageResult(BaseModel):
    """Outcome of a build."""

    digest: Digest
    size: int = Field(description="Size of the disk image in bytes")
    downloaded: bool
    file_path: str


class ListImagesResult(BaseModel):
    """All locally stored images keyed by digest."""

    images: dict[Digest, ImageRecord]


class RemoveImageResult(BaseModel):
    """Outcome of removing an image."""

    digest: Digest
    removed_layers: list[Digest]


class PruneResult(BaseModel):
    """Layers removed by a prune."""

    layers: list[Digest]


__all__ = [
    "BuildImageResult",
    "ImageInfoResult",
    "ListImagesResult",
    "PruneResult",
    "RemoveImageResult",
]
