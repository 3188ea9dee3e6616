"""Error taxonomy for whaledrive.

Every error raised by the package derives from WhaledriveError and carries
a stable ``code`` for structured handling. The five families are:

- InputError: malformed user input (image references, platforms)
- RemoteError: registry failures (auth, manifests, blobs, labels)
- StateError: local state document and record lookups
- ResourceError: host tool failures, carrying captured command output
- LocalIOError: local file copies and archive extraction
"""

from __future__ import annotations


class WhaledriveError(Exception):
    """Base exception for all whaledrive errors."""

    def __init__(self, message: str, code: str = "whaledrive_error") -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.teardown_errors: list[Exception] = []

    def add_teardown_error(self, error: Exception) -> None:
        """Record a cleanup failure that happened while handling this error.

        Args:
            error: The exception raised by the cleanup step.
        """
        self.teardown_errors.append(error)
        self.add_note(f"teardown failed: {error}")


# Input errors


class InputError(WhaledriveError):
    """Raised when user input is malformed."""

    def __init__(self, message: str, code: str = "input_error") -> None:
        super().__init__(message, code=code)


class InvalidReferenceError(InputError):
    """Raised when an image reference cannot be parsed."""

    def __init__(self, reference: str) -> None:
        super().__init__(
            f"Invalid image reference: {reference!r}", code="invalid_reference"
        )
        self.reference = reference


# Remote errors


class RemoteError(WhaledriveError):
    """Raised when the registry cannot satisfy a request."""

    def __init__(self, message: str, code: str = "remote_error") -> None:
        super().__init__(message, code=code)


class AuthenticationError(RemoteError):
    """Raised when a registry token cannot be obtained."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="auth_error")


class ManifestError(RemoteError):
    """Raised when a manifest or manifest list cannot be retrieved."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="manifest_error")


class PlatformNotFoundError(RemoteError):
    """Raised when no manifest matches the requested platform."""

    def __init__(self, reference: str, os: str, architecture: str) -> None:
        super().__init__(
            f"Manifest not found for platform {os}/{architecture} in {reference}",
            code="platform_not_found",
        )
        self.reference = reference
        self.os = os
        self.architecture = architecture


class BlobDownloadError(RemoteError):
    """Raised when a blob (layer or config) cannot be downloaded."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="blob_download_error")


class DigestMismatchError(RemoteError):
    """Raised when downloaded content does not hash to its digest."""

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(
            f"Digest mismatch: expected {expected}, got {actual}",
            code="digest_mismatch",
        )
        self.expected = expected
        self.actual = actual


class BootloaderPathMissingError(RemoteError):
    """Raised when the image configuration lacks the bootloader label."""

    def __init__(self, digest: str, label: str) -> None:
        super().__init__(
            f"Image configuration {digest} has no '{label}' label",
            code="bootloader_path_missing",
        )
        self.digest = digest
        self.label = label


# State errors


class StateError(WhaledriveError):
    """Raised for local state failures."""

    def __init__(self, message: str, code: str = "state_error") -> None:
        super().__init__(message, code=code)


class StateReadError(StateError):
    """Raised when the state document cannot be read or written."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="state_io_error")


class StateFormatError(StateError):
    """Raised when the state document is malformed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="state_format_error")


class ImageNotFoundError(StateError):
    """Raised when an image record or tag binding does not exist."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="image_not_found")


# Resource errors


class ResourceError(WhaledriveError):
    """Raised when a host resource operation fails.

    Attributes:
        stdout: Captured standard output of the failing command.
        stderr: Captured standard error of the failing command.
    """

    def __init__(
        self,
        message: str,
        code: str = "resource_error",
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message, code=code)
        self.stdout = stdout
        self.stderr = stderr


class CommandNotFoundError(ResourceError):
    """Raised when required host tools are missing."""

    def __init__(self, missing: list[str]) -> None:
        super().__init__(
            f"Required commands not found: {', '.join(missing)}",
            code="command_not_found",
        )
        self.missing = missing


class CommandFailedError(ResourceError):
    """Raised when a host command exits with a non-zero status."""

    def __init__(
        self,
        args: list[str],
        returncode: int | None,
        stdout: str = "",
        stderr: str = "",
        code: str = "command_failed",
    ) -> None:
        command = " ".join(args)
        super().__init__(
            f"Command '{command}' failed with exit code {returncode}. "
            f"STDOUT: {stdout.strip()}; STDERR: {stderr.strip()}",
            code=code,
            stdout=stdout,
            stderr=stderr,
        )
        self.args_list = args
        self.returncode = returncode


class AllocationError(CommandFailedError):
    """Raised when the raw image file cannot be created."""


class PartitionError(CommandFailedError):
    """Raised when the partition table cannot be written or read."""


class LoopDeviceError(CommandFailedError):
    """Raised when a loop device cannot be attached or detached."""


class FormatError(CommandFailedError):
    """Raised when the filesystem cannot be created."""


class MountError(CommandFailedError):
    """Raised when the filesystem cannot be mounted or unmounted."""


class BootloaderError(ResourceError):
    """Raised when the bootloader cannot be extracted or burned."""

    def __init__(self, message: str, stdout: str = "", stderr: str = "") -> None:
        super().__init__(message, code="bootloader_error", stdout=stdout, stderr=stderr)


# Local I/O errors


class LocalIOError(WhaledriveError):
    """Raised when a local copy or extraction fails."""

    def __init__(self, message: str, code: str = "io_error") -> None:
        super().__init__(message, code=code)


class CopyError(LocalIOError):
    """Raised when staged content cannot be copied into the image."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="copy_error")


class ExtractionError(LocalIOError):
    """Raised when a layer archive cannot be extracted."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="extraction_error")


class EmptyImageError(LocalIOError):
    """Raised when the staged root filesystem has no content."""

    def __init__(self) -> None:
        super().__init__("Image size must be greater than 0", code="empty_image")


__all__ = [
    "AllocationError",
    "AuthenticationError",
    "BlobDownloadError",
    "BootloaderError",
    "BootloaderPathMissingError",
    "CommandFailedError",
    "CommandNotFoundError",
    "CopyError",
    "DigestMismatchError",
    "EmptyImageError",
    "ExtractionError",
    "FormatError",
    "ImageNotFoundError",
    "InputError",
    "InvalidReferenceError",
    "LocalIOError",
    "LoopDeviceError",
    "ManifestError",
    "MountError",
    "PartitionError",
    "PlatformNotFoundError",
    "RemoteError",
    "ResourceError",
    "StateError",
    "StateFormatError",
    "StateReadError",
    "WhaledriveError",
]
