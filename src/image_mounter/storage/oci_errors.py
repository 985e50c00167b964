"""
OCI registry error classes.

Provides a clear taxonomy of errors that can occur during registry operations.
These errors are mapped from HTTP status codes and client exceptions so the
sync engine sees a consistent error interface regardless of the transport.
"""
from __future__ import annotations


class OciError(Exception):
    """Base class for all OCI registry errors."""
    pass


class OciAuthError(OciError):
    """
    Authentication or authorization error.

    Raised when:
    - HTTP 401 Unauthorized (invalid or missing credentials)
    - HTTP 403 Forbidden (insufficient permissions)
    """
    pass


class OciNotFound(OciError):
    """
    Resource not found in registry.

    Raised when:
    - HTTP 404 Not Found (manifest, blob, or repository doesn't exist)
    - No manifest in an image index matches the requested platform
    """
    pass


class OciDigestMismatch(OciError):
    """
    Content digest validation failed.

    Raised when a downloaded manifest does not hash to the digest it was
    requested by.
    """

    def __init__(self, message: str, expected: str | None = None, actual: str | None = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class OciUnsupportedMediaType(OciError):
    """
    Media type not supported by the client.

    Raised when:
    - Registry returns an unknown manifest format
    - A layer uses a compression the exporter cannot decode
    """
    pass


class OciRateLimited(OciError):
    """
    Rate limit exceeded.

    Raised when:
    - HTTP 429 Too Many Requests
    """
    pass


__all__ = [
    "OciError",
    "OciAuthError",
    "OciNotFound",
    "OciDigestMismatch",
    "OciUnsupportedMediaType",
    "OciRateLimited",
]
