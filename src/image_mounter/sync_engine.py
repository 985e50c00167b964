"""
Streaming sync of one image name to the local cache.

The sync engine checks the remote digest against the cached marker and, when
the cache is not fresh, re-extracts the image by running the registry export
and the tar extraction concurrently over a bounded pipe. The digest marker is
committed only after both sides succeed and the call was not cancelled.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .cache_store import CacheStore
from .context import CallContext
from .errors import (
    CancelledBeforeCommit,
    DigestLookupFailure,
    DigestMismatchFailure,
    PrepareFailure,
    PullFailure,
    StreamFailure,
)
from .runtime_types import (
    ArchiveExtractor,
    Ownership,
    RegistryClient,
    SyncConfig,
    digests_equivalent,
)
from .streaming import PipeReader, PipeWriter, run_streaming

__all__ = ["SyncEngine"]

logger = logging.getLogger(__name__)


class SyncEngine:
    """
    Synchronizes a single image name into a CacheStore.

    Not safe to run concurrently for the same image name; callers must
    serialize syncs per name.
    """

    def __init__(
        self,
        cache: CacheStore,
        registry: RegistryClient,
        extractor: ArchiveExtractor,
        *,
        pipe_chunks: int = 16,
        ownership: Optional[Ownership] = None,
    ):
        """
        Args:
            cache: Cache store owning the on-disk entries
            registry: Registry client used for digest, pull and export
            extractor: Archive extractor consuming the export stream
            pipe_chunks: Capacity of the export/extract pipe in chunks
            ownership: Ownership applied to extracted files (defaults to the
                identity of the running process)
        """
        self.cache = cache
        self.registry = registry
        self.extractor = extractor
        self.pipe_chunks = pipe_chunks
        self._ownership = ownership

    def sync(self, ctx: CallContext, name: str, config: SyncConfig) -> Path:
        """
        Make the cache entry for `name` current and return its filesystem path.

        Args:
            ctx: Call context; cancellation before the marker commit aborts it
            name: Image name
            config: Per-call sync configuration

        Returns:
            Path of the extracted filesystem root

        Raises:
            DigestLookupFailure: If the remote or pulled digest cannot be obtained
            CacheReadFailure: If the existing marker cannot be read
            InvalidateFailure: If the outdated entry cannot be removed
            PrepareFailure: If `name` is not a safe cache path or the destination
                cannot be created
            PullFailure: If the image cannot be pulled
            StreamFailure: If export and/or extraction failed
            CancelledBeforeCommit: If the context ended before the commit
            DigestMismatchFailure: If the pulled image differs from the looked-up digest
            MarkerWriteFailure: If the marker cannot be written
        """
        try:
            self.cache.entry_path(name)
        except ValueError as e:
            raise PrepareFailure(f"could not map {name} to a cache entry: {e}") from e

        logger.debug(f"Getting digest for {name}")
        try:
            remote_digest = self.registry.digest(name, config, ctx)
        except Exception as e:
            raise DigestLookupFailure(f"could not get the digest for {name}: {e}") from e

        freshness = self.cache.check_freshness(name, remote_digest)
        if freshness.is_fresh:
            logger.info(f"Local and remote digests for {name} are identical; skipping pull")
            return freshness.path

        if freshness.state == "stale":
            logger.info(f"Local and remote digests for {name} differ; pulling image")
        else:
            logger.info(f"No local copy of {name}; pulling image")

        self.cache.invalidate(name)
        dest = self.cache.prepare_destination(name)

        logger.debug(f"Pulling {name}")
        try:
            handle = self.registry.pull(name, config, ctx)
        except Exception as e:
            raise PullFailure(f"could not pull {name}: {e}") from e

        ownership = self._ownership or Ownership.current()

        def produce(writer: PipeWriter) -> None:
            logger.debug(f"Starting to export {name}")
            self.registry.export(handle, writer, ctx)
            logger.debug(f"Done exporting {name}")

        def consume(reader: PipeReader) -> None:
            self.extractor.extract(reader, str(dest), ownership)
            logger.debug(f"Done writing {name} to {dest}")

        errors = run_streaming(produce, consume, ctx=ctx, max_chunks=self.pipe_chunks)
        if errors:
            details = "; ".join(f"{type(e).__name__}: {e}" for e in errors)
            raise StreamFailure(
                f"got one or more errors while writing {name}: {details}", errors
            ) from errors[0]

        ctx_error = ctx.err()
        if ctx_error is not None:
            raise CancelledBeforeCommit(f"not writing digest file for {name}: {ctx_error}") from ctx_error

        logger.debug(f"Image {name} written to {dest}")

        try:
            local_digest = self.registry.handle_digest(handle)
        except Exception as e:
            raise DigestLookupFailure(f"could not get the digest of the pulled image {name}: {e}") from e

        if not digests_equivalent(local_digest, remote_digest):
            raise DigestMismatchFailure(
                f"pulled image {name} has digest {local_digest}, expected {remote_digest}",
                expected=remote_digest,
                actual=local_digest,
            )

        self.cache.commit(name, local_digest)
        return dest
