"""
Platform client error classes.

Provides a clear taxonomy of errors that can occur while talking to the
platform API and while transferring artifact or package content. HTTP status
codes and transport failures are mapped onto this hierarchy in one place
(the REST adapter) so callers never inspect error message text.
"""
from __future__ import annotations

from typing import Optional


class PlatformError(Exception):
    """Base class for all platform client errors."""
    pass


class ClientError(PlatformError):
    """
    Transport-level failure (DNS, connect, timeout, connection reset).

    Always fatal to the current operation; the underlying cause is chained.
    """

    def __init__(self, path: str, cause: BaseException):
        super().__init__(f"while connecting to platform at {path} - {cause}")
        self.path = path
        self.cause = cause


class ApiError(PlatformError):
    """
    Non-2xx HTTP response.

    Carries the status code and the raw response body text so the user sees
    what the server actually said.
    """

    def __init__(self, path: str, status_code: int, body: str = ""):
        message = body.strip() if body and body.strip() else f"{status_code}: request to {path} failed"
        super().__init__(message)
        self.path = path
        self.status_code = status_code
        self.body = body


class ResourceNotFoundError(ApiError):
    """HTTP 404 Not Found."""

    def __init__(self, path: str, body: str = ""):
        super().__init__(path, 404, body or f"Resource not found: {path}")


class UnauthorizedError(ApiError):
    """HTTP 401 Unauthorized (missing or expired access token)."""

    def __init__(self, path: str, body: str = ""):
        super().__init__(path, 401, body or "Unauthorized access")


class AlreadyExistsError(ApiError):
    """
    Server reports that the target resource already exists.

    Raised when:
    - HTTP 409 Conflict
    - Any error response whose body says the resource was "already created"
    """
    pass


class UploadOffsetError(PlatformError):
    """
    The server's ``Upload-Offset`` header is missing or not a decimal integer.

    ``missing`` distinguishes an absent header from an unparsable one.
    """

    def __init__(self, message: str, *, value: Optional[str] = None, missing: bool = False):
        super().__init__(message)
        self.value = value
        self.missing = missing


class ProtocolError(PlatformError):
    """Server response lacks a field the transfer protocol requires."""

    def __init__(self, step: str, message: str):
        super().__init__(f"{step}: {message}")
        self.step = step


class MaxRetriesError(PlatformError):
    """Layer pull made no progress for more than the allowed number of retries."""

    def __init__(self, ref: str, retries: int, offset: int):
        super().__init__(f"max retries ({retries}) which got 0 bytes happened for {ref} at offset {offset}")
        self.ref = ref
        self.retries = retries
        self.offset = offset


class DigestMismatchError(PlatformError):
    """Pulled content does not hash to its declared digest."""

    def __init__(self, message: str, expected: str | None = None, actual: str | None = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class TransferCancelled(PlatformError):
    """Transfer aborted by a cancel signal (e.g. user interrupt)."""
    pass


class PackageExistsError(PlatformError):
    """Package tag already exists on the server and --force was not given."""

    def __init__(self, tag: str):
        super().__init__(f"tag: {tag} already created, use --force to overwrite")
        self.tag = tag


class TransferError(PlatformError):
    """Push or pull of a single blob failed; wraps the cause with diagnostics."""

    def __init__(self, message: str, *, digest: str = "", size: int = -1):
        super().__init__(message)
        self.digest = digest
        self.size = size


class ImageTooLargeError(PlatformError):
    """Local daemon image is above the size that can be pushed directly."""
    pass


__all__ = [
    "PlatformError",
    "ClientError",
    "ApiError",
    "ResourceNotFoundError",
    "UnauthorizedError",
    "AlreadyExistsError",
    "UploadOffsetError",
    "ProtocolError",
    "MaxRetriesError",
    "DigestMismatchError",
    "TransferCancelled",
    "PackageExistsError",
    "TransferError",
    "ImageTooLargeError",
]
