"""Shared type definitions for whaledrive.

This module contains models and type aliases shared across subpackages
to avoid circular imports.
"""

from pydantic import BaseModel, ConfigDict

# Content-address of a blob, e.g. "sha256:4a1c...". Compared by equality only.
Digest = str

DEFAULT_OS = "linux"
DEFAULT_ARCHITECTURE = "amd64"


class Platform(BaseModel):
    """Operating system and CPU architecture an image targets.

    Two platforms are equal when both fields are equal; extra fields found
    in registry documents (variant, os.version) are ignored.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    architecture: str
    os: str

    def __str__(self) -> str:
        return f"{self.os}/{self.architecture}"


__all__ = ["DEFAULT_ARCHITECTURE", "DEFAULT_OS", "Digest", "Platform"]
