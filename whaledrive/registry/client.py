"""Registry client.

This module handles:
- Anonymous bearer-token auth against the registry token service
- Manifest list and image manifest retrieval
- Image configuration retrieval
- Streaming blob downloads with digest verification

The client is synchronous; layer downloads are parallelised by the
layer store using a thread pool sharing one httpx.Client.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from pathlib import Path
from typing import Any

import httpx
from pydantic import ValidationError

from whaledrive.errors import (
    AuthenticationError,
    BlobDownloadError,
    DigestMismatchError,
    ManifestError,
)
from whaledrive.registry.models import (
    IMAGE_MANIFEST_MEDIA_TYPES,
    MANIFEST_LIST_MEDIA_TYPES,
    ImageConfig,
    ImageManifest,
    ImageReference,
    ManifestList,
)
from whaledrive.types import Digest

logger = logging.getLogger(__name__)

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB


def _describe_http_error(e: httpx.HTTPError, url: str) -> str:
    """Render an httpx error the same way for every request kind."""
    if isinstance(e, httpx.HTTPStatusError):
        return f"HTTP error for {url}: {e.response.status_code} {e.response.reason_phrase}"
    if isinstance(e, httpx.TimeoutException):
        return f"Timeout requesting {url}"
    return f"Network error requesting {url}: {e}"


class RegistryClient:
    """Registry API v2 client with anonymous token auth."""

    def __init__(
        self,
        registry_url: str,
        auth_url: str,
        auth_service: str,
        timeout: float = 3600,
        client: httpx.Client | None = None,
    ) -> None:
        """Initialize the registry client.

        Args:
            registry_url: Registry base URL (e.g. https://registry-1.docker.io).
            auth_url: Token service base URL (e.g. https://auth.docker.io).
            auth_service: Service name requested from the token service.
            timeout: Request timeout in seconds.
            client: Optional preconfigured httpx client.
        """
        self.registry_url = registry_url.rstrip("/")
        self.auth_url = auth_url.rstrip("/")
        self.auth_service = auth_service
        self.timeout = timeout
        self._client = client or httpx.Client(follow_redirects=True, timeout=timeout)
        self._owns_client = client is None
        self._tokens: dict[str, str] = {}
        self._tokens_lock = threading.Lock()

    def __enter__(self) -> RegistryClient:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            self._client.close()

    def authenticate(self, repository: str) -> str:
        """Obtain (and cache) a pull token for a repository.

        Args:
            repository: Repository path, e.g. 'library/nginx'.

        Returns:
            Bearer token string.

        Raises:
            AuthenticationError: If the token service rejects the request.
        """
        with self._tokens_lock:
            cached = self._tokens.get(repository)
        if cached is not None:
            return cached

        url = f"{self.auth_url}/token"
        params = {
            "service": self.auth_service,
            "scope": f"repository:{repository}:pull",
        }
        logger.debug("Requesting token for %s", repository)

        try:
            response = self._client.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            raise AuthenticationError(_describe_http_error(e, url)) from e
        except ValueError as e:
            raise AuthenticationError(f"Invalid token response from {url}") from e

        token = payload.get("token") or payload.get("access_token")
        if not token:
            raise AuthenticationError(f"Token service returned no token for {repository}")

        with self._tokens_lock:
            self._tokens[repository] = token
        return token

    def _get(
        self,
        ref: ImageReference,
        path: str,
        accept: tuple[str, ...] | None = None,
    ) -> httpx.Response:
        token = self.authenticate(ref.repository)
        headers = {"Authorization": f"Bearer {token}"}
        if accept:
            headers["Accept"] = ", ".join(accept)
        url = f"{self.registry_url}/v2/{ref.repository}/{path}"
        response = self._client.get(url, headers=headers, timeout=self.timeout)
        response.raise_for_status()
        return response

    def _get_manifest_json(
        self, ref: ImageReference, reference: str, accept: tuple[str, ...]
    ) -> dict[str, Any]:
        url = f"{self.registry_url}/v2/{ref.repository}/manifests/{reference}"
        try:
            response = self._get(ref, f"manifests/{reference}", accept=accept)
            payload = response.json()
        except httpx.HTTPError as e:
            raise ManifestError(_describe_http_error(e, url)) from e
        except ValueError as e:
            raise ManifestError(f"Invalid manifest JSON from {url}") from e

        if not isinstance(payload, dict):
            raise ManifestError(f"Unexpected manifest document from {url}")
        errors = payload.get("errors")
        if errors:
            raise ManifestError(f"Error getting manifests: {errors[0].get('message')}")
        return payload

    def get_manifest_list(self, ref: ImageReference) -> ManifestList:
        """Fetch the manifest list for an image tag.

        Raises:
            ManifestError: If the request fails or the document is invalid.
        """
        logger.info("Fetching manifest list for %s", ref)
        payload = self._get_manifest_json(ref, ref.tag, MANIFEST_LIST_MEDIA_TYPES)
        if "manifests" not in payload:
            raise ManifestError(f"{ref} has no manifest list (single-platform image)")
        try:
            return ManifestList.model_validate(payload)
        except ValidationError as e:
            raise ManifestError(f"Malformed manifest list for {ref}: {e}") from e

    def get_manifest(self, ref: ImageReference, digest: Digest) -> ImageManifest:
        """Fetch the image manifest with the given digest.

        Raises:
            ManifestError: If the request fails or the document is invalid.
        """
        logger.info("Fetching manifest %s for %s", digest, ref)
        payload = self._get_manifest_json(ref, digest, IMAGE_MANIFEST_MEDIA_TYPES)
        try:
            return ImageManifest.model_validate(payload)
        except ValidationError as e:
            raise ManifestError(f"Malformed manifest {digest}: {e}") from e

    def get_image_config(self, ref: ImageReference, digest: Digest) -> ImageConfig:
        """Fetch and parse an image configuration blob.

        Raises:
            BlobDownloadError: If the request fails or the document is invalid.
        """
        url = f"{self.registry_url}/v2/{ref.repository}/blobs/{digest}"
        logger.info("Fetching image config %s", digest)
        try:
            response = self._get(ref, f"blobs/{digest}")
            return ImageConfig.model_validate(response.json())
        except httpx.HTTPError as e:
            raise BlobDownloadError(_describe_http_error(e, url)) from e
        except (ValueError, ValidationError) as e:
            raise BlobDownloadError(f"Invalid image config {digest}: {e}") from e

    def download_blob(self, ref: ImageReference, digest: Digest, dest: Path) -> int:
        """Stream a blob to a file, verifying sha256 digests.

        Args:
            ref: Image the blob belongs to.
            digest: Blob digest.
            dest: Destination file path.

        Returns:
            Number of bytes written.

        Raises:
            BlobDownloadError: If the download fails.
            DigestMismatchError: If the content does not match a sha256 digest.
        """
        token = self.authenticate(ref.repository)
        url = f"{self.registry_url}/v2/{ref.repository}/blobs/{digest}"
        headers = {"Authorization": f"Bearer {token}"}
        logger.info("Downloading %s to %s", digest, dest)

        algorithm, _, expected = digest.partition(":")
        hasher = hashlib.sha256() if algorithm == "sha256" else None
        total_bytes = 0

        try:
            with self._client.stream(
                "GET", url, headers=headers, timeout=self.timeout
            ) as response:
                response.raise_for_status()
                dest.parent.mkdir(parents=True, exist_ok=True)
                with dest.open("wb") as f:
                    for chunk in response.iter_bytes(DOWNLOAD_CHUNK_SIZE):
                        f.write(chunk)
                        total_bytes += len(chunk)
                        if hasher is not None:
                            hasher.update(chunk)
        except httpx.HTTPError as e:
            dest.unlink(missing_ok=True)
            raise BlobDownloadError(_describe_http_error(e, url)) from e
        except OSError as e:
            dest.unlink(missing_ok=True)
            raise BlobDownloadError(f"Failed to write {dest}: {e}") from e

        if hasher is not None and hasher.hexdigest() != expected.lower():
            dest.unlink(missing_ok=True)
            raise DigestMismatchError(digest, f"sha256:{hasher.hexdigest()}")

        logger.info("Downloaded %s (%d bytes)", digest, total_bytes)
        return total_bytes


__all__ = ["DOWNLOAD_CHUNK_SIZE", "RegistryClient"]
