"""
Call context carrying cancellation and an optional deadline.

A CallContext is handed down through a mount call so that blocking work
(registry requests, pipe reads and writes) can notice that the caller gave up
and fail promptly instead of hanging.
"""
from __future__ import annotations

import threading
import time
from typing import Optional

__all__ = ["CallContext", "ContextError", "ContextCancelled", "DeadlineExceeded"]


class ContextError(Exception):
    """Base class for context termination errors."""
    pass


class ContextCancelled(ContextError):
    """Raised when the context was cancelled explicitly."""
    pass


class DeadlineExceeded(ContextError):
    """Raised when the context deadline passed."""
    pass


class CallContext:
    """
    Cancellation token with an optional monotonic deadline.

    Thread-safe: cancel() may be called from any thread while workers poll
    err() or wait().
    """

    def __init__(self, timeout: Optional[float] = None):
        """
        Args:
            timeout: Seconds until the context expires (None for no deadline)
        """
        self._cancelled = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    @classmethod
    def background(cls) -> CallContext:
        """Context that is never cancelled unless cancel() is called."""
        return cls()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def deadline(self) -> Optional[float]:
        return self._deadline

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None when there is no deadline."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def err(self) -> Optional[ContextError]:
        """Return the termination error, or None while the context is live."""
        if self._cancelled.is_set():
            return ContextCancelled("context cancelled")
        if self._deadline is not None and time.monotonic() >= self._deadline:
            return DeadlineExceeded("context deadline exceeded")
        return None

    def raise_if_done(self) -> None:
        error = self.err()
        if error is not None:
            raise error

    def wait(self, timeout: float) -> bool:
        """
        Sleep up to `timeout` seconds or until the context is cancelled.

        Returns:
            True if the context is done when the wait ends
        """
        remaining = self.remaining()
        if remaining is not None:
            timeout = min(timeout, remaining)
        self._cancelled.wait(timeout)
        return self.err() is not None
