"""Models for registry documents and image references.

Only the fields whaledrive consumes are modelled; everything else in the
registry JSON is ignored.
"""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field

from whaledrive.errors import InvalidReferenceError
from whaledrive.types import Digest, Platform

DEFAULT_TAG = "latest"
DEFAULT_NAMESPACE = "library"

# Accepted media types for a multi-platform manifest list
MANIFEST_LIST_MEDIA_TYPES = (
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.index.v1+json",
)

# Accepted media types for a single-platform image manifest
IMAGE_MANIFEST_MEDIA_TYPES = (
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.v2+json",
)

_NAME_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
_NAME_PATTERN = re.compile(rf"^{_NAME_COMPONENT}(?:/{_NAME_COMPONENT})*$")
_TAG_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.\-]{0,127}$")


class ImageReference(BaseModel):
    """A parsed `[namespace/]name[:tag]` image reference.

    Attributes:
        name: Image name as given by the user (used in tag bindings).
        tag: Image tag.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    tag: str = DEFAULT_TAG

    @classmethod
    def parse(cls, reference: str) -> ImageReference:
        """Parse an image reference string.

        Args:
            reference: Reference like 'nginx', 'nginx:1.27' or 'org/app:v1'.

        Returns:
            ImageReference with the tag defaulted to 'latest'.

        Raises:
            InvalidReferenceError: If the reference is malformed.
        """
        name, sep, tag = reference.strip().rpartition(":")
        if not sep or "/" in tag:
            name, tag = reference.strip(), DEFAULT_TAG

        if not _NAME_PATTERN.match(name) or not _TAG_PATTERN.match(tag):
            raise InvalidReferenceError(reference)

        return cls(name=name, tag=tag)

    @property
    def repository(self) -> str:
        """Repository path on the registry (official images live in library/)."""
        if "/" in self.name:
            return self.name
        return f"{DEFAULT_NAMESPACE}/{self.name}"

    def __str__(self) -> str:
        return f"{self.name}:{self.tag}"


class ManifestDescriptor(BaseModel):
    """An entry of a manifest list pointing at one platform's manifest."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    media_type: str | None = Field(default=None, alias="mediaType")
    digest: Digest
    size: int | None = None
    platform: Platform | None = None


class ManifestList(BaseModel):
    """A manifest list / OCI image index."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    schema_version: int | None = Field(default=None, alias="schemaVersion")
    media_type: str | None = Field(default=None, alias="mediaType")
    manifests: list[ManifestDescriptor] = Field(default_factory=list)

    def find(self, platform: Platform) -> ManifestDescriptor | None:
        """Return the first manifest matching a platform, if any."""
        for manifest in self.manifests:
            if manifest.platform == platform:
                return manifest
        return None


class Descriptor(BaseModel):
    """A content descriptor (config or layer) inside an image manifest."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    media_type: str | None = Field(default=None, alias="mediaType")
    digest: Digest
    size: int | None = None


class ImageManifest(BaseModel):
    """A single-platform OCI image manifest."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    schema_version: int | None = Field(default=None, alias="schemaVersion")
    media_type: str | None = Field(default=None, alias="mediaType")
    config: Descriptor
    layers: list[Descriptor] = Field(default_factory=list)
    annotations: dict[str, str] = Field(default_factory=dict)

    @property
    def layer_digests(self) -> list[Digest]:
        """Layer digests in application order (bottom to top)."""
        return [layer.digest for layer in self.layers]


class ContainerConfig(BaseModel):
    """The runtime `config` section of an image configuration."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    labels: dict[str, str] | None = Field(default=None, alias="Labels")


class ImageConfig(BaseModel):
    """An image configuration blob."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    architecture: str | None = None
    os: str | None = None
    config: ContainerConfig | None = None

    @property
    def labels(self) -> dict[str, str]:
        if self.config is None or self.config.labels is None:
            return {}
        return self.config.labels


__all__ = [
    "ContainerConfig",
    "DEFAULT_NAMESPACE",
    "DEFAULT_TAG",
    "Descriptor",
    "IMAGE_MANIFEST_MEDIA_TYPES",
    "ImageConfig",
    "ImageManifest",
    "ImageReference",
    "MANIFEST_LIST_MEDIA_TYPES",
    "ManifestDescriptor",
    "ManifestList",
]
