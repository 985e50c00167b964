"""
Error classes for image synchronization.

Every failure of a single sync attempt is reported as a MountError subclass so
the mirror fallback loop can treat them uniformly as "try the next candidate".
The only terminal error is AllMirrorsExhausted.
"""
from __future__ import annotations

from typing import List, Sequence, Tuple


class MountError(Exception):
    """Base class for all image mount errors."""
    pass


class ResolutionFailure(MountError):
    """Raised when the mirror list for an image name cannot be resolved."""
    pass


class DigestLookupFailure(MountError):
    """Raised when the remote digest of an image cannot be obtained."""
    pass


class CacheReadFailure(MountError):
    """
    Raised when a digest marker exists but cannot be read.

    A permissions or corruption issue must surface rather than being
    treated as a stale cache.
    """
    pass


class InvalidateFailure(MountError):
    """Raised when an outdated cache directory cannot be removed."""
    pass


class PrepareFailure(MountError):
    """Raised when the filesystem destination directory cannot be created."""
    pass


class PullFailure(MountError):
    """Raised when a pullable image handle cannot be obtained."""
    pass


class StreamFailure(MountError):
    """
    Raised when exporting or extracting the image stream fails.

    Carries every error raised by the producer and the consumer, not just
    the first one.
    """

    def __init__(self, message: str, errors: Sequence[BaseException]):
        super().__init__(message)
        self.errors: List[BaseException] = list(errors)


class CancelledBeforeCommit(MountError):
    """Raised when the call was cancelled before the digest marker was written."""
    pass


class DigestMismatchFailure(MountError):
    """
    Raised when the pulled image does not match the digest looked up before the pull.
    """

    def __init__(self, message: str, expected: str, actual: str):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class MarkerWriteFailure(MountError):
    """Raised when the digest marker cannot be written."""
    pass


class AllMirrorsExhausted(MountError):
    """
    Raised when every candidate name for an image failed to sync.

    Attributes:
        image_name: The name originally requested
        failures: (candidate, error) pairs in the order they were tried
    """

    def __init__(self, image_name: str, failures: Sequence[Tuple[str, BaseException]]):
        self.image_name = image_name
        self.failures: List[Tuple[str, BaseException]] = list(failures)
        if self.failures:
            details = "; ".join(f"{name}: {err}" for name, err in self.failures)
            message = f"all mirrors tried for {image_name!r}: {details}"
        else:
            message = f"all mirrors tried for {image_name!r}: no candidates"
        super().__init__(message)


__all__ = [
    "MountError",
    "ResolutionFailure",
    "DigestLookupFailure",
    "CacheReadFailure",
    "InvalidateFailure",
    "PrepareFailure",
    "PullFailure",
    "StreamFailure",
    "CancelledBeforeCommit",
    "DigestMismatchFailure",
    "MarkerWriteFailure",
    "AllMirrorsExhausted",
]
