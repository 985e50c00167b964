"""
Bounded in-memory pipe joining an exporting producer and an extracting consumer.

The producer writes the image's tar stream into `StreamPipe.writer` while the
consumer reads it from `StreamPipe.reader` in another thread. At most
`max_chunks` chunks are buffered, so the producer blocks when the consumer
falls behind and the full image is never held in memory.

Closing either end promptly unblocks the other:
- writer.close(error) lets the reader drain what is buffered, then raise
- reader.close() makes any pending or future write raise ClosedPipeError
Every blocking wait also polls the CallContext so cancellation unblocks both.
"""
from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Callable, Deque, List, Optional

from .context import CallContext

__all__ = ["StreamPipe", "PipeReader", "PipeWriter", "ClosedPipeError", "run_streaming", "CHUNK_SIZE"]

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024  # 1 MiB
_POLL_INTERVAL = 0.05


class ClosedPipeError(BrokenPipeError):
    """Raised on a read or write against a closed pipe end."""
    pass


class StreamPipe:
    """
    Single-producer single-consumer byte pipe with a bounded chunk queue.
    """

    def __init__(self, max_chunks: int = 16, ctx: Optional[CallContext] = None):
        if max_chunks < 1:
            raise ValueError(f"max_chunks must be at least 1, got {max_chunks}")
        self._max_chunks = max_chunks
        self._ctx = ctx or CallContext.background()
        self._chunks: Deque[bytes] = deque()
        self._pending = memoryview(b"")
        self._cond = threading.Condition()
        self._writer_closed = False
        self._writer_error: Optional[BaseException] = None
        self._reader_closed = False
        self.reader = PipeReader(self)
        self.writer = PipeWriter(self)

    def _wait(self) -> None:
        """Wait for a state change; raise if the context is done. Caller holds the lock."""
        self._ctx.raise_if_done()
        self._cond.wait(_POLL_INTERVAL)
        self._ctx.raise_if_done()

    def _write(self, data: bytes) -> int:
        if not data:
            return 0
        chunk = bytes(data)
        with self._cond:
            while True:
                if self._reader_closed:
                    raise ClosedPipeError("write on pipe whose reader is closed")
                if self._writer_closed:
                    raise ClosedPipeError("write on closed pipe")
                if len(self._chunks) < self._max_chunks:
                    break
                self._wait()
            self._chunks.append(chunk)
            self._cond.notify_all()
        return len(chunk)

    def _read(self, size: int) -> bytes:
        with self._cond:
            while True:
                if self._reader_closed:
                    raise ClosedPipeError("read on closed pipe")
                if len(self._pending):
                    break
                if self._chunks:
                    self._pending = memoryview(self._chunks.popleft())
                    self._cond.notify_all()
                    break
                if self._writer_closed:
                    if self._writer_error is not None:
                        raise ClosedPipeError(
                            f"writer closed with error: {self._writer_error}"
                        ) from self._writer_error
                    return b""
                self._wait()

            out = self._pending[:size]
            self._pending = self._pending[size:]
            return bytes(out)

    def _close_writer(self, error: Optional[BaseException]) -> None:
        with self._cond:
            if not self._writer_closed:
                self._writer_closed = True
                self._writer_error = error
            self._cond.notify_all()

    def _close_reader(self) -> None:
        with self._cond:
            self._reader_closed = True
            self._chunks.clear()
            self._pending = memoryview(b"")
            self._cond.notify_all()


class PipeWriter:
    """Write end of a StreamPipe. File-like enough for tarfile and shutil."""

    def __init__(self, pipe: StreamPipe):
        self._pipe = pipe

    def write(self, data: bytes) -> int:
        return self._pipe._write(data)

    def flush(self) -> None:
        pass

    def close(self, error: Optional[BaseException] = None) -> None:
        """Close the write end; the reader sees EOF, or `error` if given."""
        self._pipe._close_writer(error)


class PipeReader:
    """Read end of a StreamPipe."""

    def __init__(self, pipe: StreamPipe):
        self._pipe = pipe

    def read(self, size: int = -1) -> bytes:
        """
        Read up to `size` bytes, blocking until data or EOF is available.

        A negative size reads until EOF.
        """
        if size is None or size < 0:
            parts = []
            while True:
                chunk = self._pipe._read(CHUNK_SIZE)
                if not chunk:
                    return b"".join(parts)
                parts.append(chunk)
        if size == 0:
            return b""
        return self._pipe._read(size)

    def readable(self) -> bool:
        return True

    def close(self) -> None:
        self._pipe._close_reader()


def run_streaming(
    produce: Callable[[PipeWriter], None],
    consume: Callable[[PipeReader], None],
    *,
    ctx: CallContext,
    max_chunks: int = 16,
) -> List[BaseException]:
    """
    Run `produce` and `consume` concurrently, joined through a StreamPipe.

    Each side closes its own end when it returns or raises, so a failure on
    one side unblocks the other. Waits for both sides to finish.

    Args:
        produce: Writes the stream into the writer
        consume: Reads the stream from the reader
        ctx: Call context polled by blocking pipe operations
        max_chunks: Pipe capacity in chunks

    Returns:
        Every exception raised by either side (producer first), empty on success
    """
    pipe = StreamPipe(max_chunks=max_chunks, ctx=ctx)

    def _producer() -> None:
        try:
            produce(pipe.writer)
        except Exception as e:
            pipe.writer.close(e)
            raise
        pipe.writer.close()

    def _consumer() -> None:
        try:
            consume(pipe.reader)
        finally:
            pipe.reader.close()

    with ThreadPoolExecutor(max_workers=2, thread_name_prefix="image-stream") as pool:
        futures = [pool.submit(_producer), pool.submit(_consumer)]
        wait(futures)

    errors = [f.exception() for f in futures]
    return [e for e in errors if e is not None]
