"""
Streaming tar extraction.

Materializes a tar byte stream as a directory tree without seeking, so it can
consume the export stream directly from the pipe.
"""
from __future__ import annotations

import logging
import os
import tarfile
from typing import Optional

from .runtime_types import ByteStream, Ownership

__all__ = ["TarExtractor"]

logger = logging.getLogger(__name__)

_DRAIN_SIZE = 64 * 1024


class _PrefixedReader:
    """Replays an already-read prefix before continuing with the underlying stream."""

    def __init__(self, prefix: bytes, stream: ByteStream):
        self._prefix = prefix
        self._stream = stream

    def read(self, size: int = -1) -> bytes:
        if self._prefix:
            if size is None or size < 0:
                out, self._prefix = self._prefix, b""
                return out + self._stream.read()
            out, self._prefix = self._prefix[:size], self._prefix[size:]
            return out
        return self._stream.read(size)


class TarExtractor:
    """
    ArchiveExtractor backed by the standard library tarfile module.

    Every member is rewritten to the supplied ownership before extraction.
    Members are extracted with the "tar" filter, which refuses absolute paths
    and entries escaping the destination directory. Device nodes are skipped
    unless running as root.
    """

    def __init__(self, *, skip_devices: Optional[bool] = None):
        if skip_devices is None:
            skip_devices = os.geteuid() != 0
        self.skip_devices = skip_devices

    def extract(self, stream: ByteStream, dest: str, ownership: Ownership) -> None:
        """
        Extract the tar stream into `dest`.

        An empty stream is a valid, empty archive.

        Raises:
            tarfile.TarError: If the stream is malformed or a member is refused
            OSError: If a write fails
        """
        first = stream.read(tarfile.BLOCKSIZE)
        if not first:
            logger.debug(f"Empty archive stream; nothing to extract into {dest}")
            return

        reader = _PrefixedReader(first, stream)
        directories = []
        count = 0
        with tarfile.open(fileobj=reader, mode="r|*") as tar:
            for member in tar:
                if (member.ischr() or member.isblk()) and self.skip_devices:
                    logger.debug(f"Skipping device node {member.name}")
                    continue
                member = tarfile.tar_filter(member, dest)
                member.uid = ownership.uid
                member.gid = ownership.gid
                member.uname = ""
                member.gname = ""
                # Directory modes are applied last so read-only directories
                # can still receive their children.
                is_dir = member.isdir()
                if is_dir:
                    directories.append(member)
                tar.extract(member, path=dest, set_attrs=not is_dir,
                            numeric_owner=True, filter="fully_trusted")
                count += 1

        for member in sorted(directories, key=lambda m: m.name, reverse=True):
            self._apply_dir_attrs(os.path.join(dest, member.name), member)

        # tarfile stops at the end-of-archive marker; consume the record
        # padding so the producer never writes into a closed pipe.
        while stream.read(_DRAIN_SIZE):
            pass

        logger.debug(f"Extracted {count} entries into {dest}")

    @staticmethod
    def _apply_dir_attrs(path: str, member: tarfile.TarInfo) -> None:
        if os.geteuid() == 0:
            os.lchown(path, member.uid, member.gid)
        if member.mode is not None:
            os.chmod(path, member.mode)
        if member.mtime is not None:
            os.utime(path, (member.mtime, member.mtime))
