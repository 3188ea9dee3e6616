"""Pydantic models for the persisted state document.

The document layout is:

    {
      "tagged_images": {"<name>:<tag>-<os>:<arch>": "<digest>"},
      "images": {"<digest>": {"platform": ..., "name": ..., "tag": ...,
                              "layers": [...], "size": ...}},
      "layers": ["<digest>", ...]
    }
"""

from pydantic import BaseModel, ConfigDict, Field

from whaledrive.types import Digest, Platform


def tag_key(name: str, tag: str, platform: Platform) -> str:
    """Compose the tag-binding key for a name, tag and platform.

    Args:
        name: Image name as given by the user (e.g. 'nginx').
        tag: Image tag (e.g. 'latest').
        platform: Target platform.

    Returns:
        Key of the form 'name:tag-os:architecture'.
    """
    return f"{name}:{tag}-{platform.os}:{platform.architecture}"


class ImageRecord(BaseModel):
    """A locally materialized image, keyed by its config digest.

    Records are immutable once created.

    Attributes:
        platform: Platform the image was built for.
        name: Image name.
        tag: Tag the image was first built from.
        layers: Layer digests in application order (bottom to top).
        size: Size of the assembled disk image in bytes.
    """

    model_config = ConfigDict(frozen=True)

    platform: Platform
    name: str
    tag: str
    layers: list[Digest]
    size: int = Field(ge=0)


class ApplicationState(BaseModel):
    """The whole persisted state document."""

    model_config = ConfigDict(extra="forbid")

    tagged_images: dict[str, Digest] = Field(default_factory=dict)
    images: dict[Digest, ImageRecord] = Field(default_factory=dict)
    layers: list[Digest] = Field(default_factory=list)


__all__ = ["ApplicationState", "ImageRecord", "tag_key"]
