"""
On-disk cache of extracted images.

Layout per image name, under the configured base directory:

    <base>/<imageName>/digest   raw digest of the last successful extraction
    <base>/<imageName>/fs/      extracted filesystem root

Invariant: if the digest marker exists and is readable, `fs/` is a complete
extraction of the image with that digest. The marker is only written after a
successful extraction, and the whole entry is removed before any new
extraction starts, so a crash at any point leaves the entry Absent or Stale,
never falsely Fresh.

Concurrent syncs of the same image name are not serialized here; callers
must hold a per-name lock if they can race.
"""
from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional

from .errors import (
    CacheReadFailure,
    InvalidateFailure,
    MarkerWriteFailure,
    PrepareFailure,
)
from .path_safety import safe_image_relpath
from .runtime_types import digests_equivalent

__all__ = ["CacheStore", "Freshness", "DIGEST_FILE", "FS_DIR"]

logger = logging.getLogger(__name__)

DIGEST_FILE = "digest"
FS_DIR = "fs"

State = Literal["fresh", "stale", "absent"]


@dataclass(frozen=True)
class Freshness:
    """Result of comparing a cache entry against a remote digest."""
    state: State
    path: Optional[Path] = None

    @classmethod
    def fresh(cls, path: Path) -> Freshness:
        return cls("fresh", path)

    @classmethod
    def stale(cls) -> Freshness:
        return cls("stale")

    @classmethod
    def absent(cls) -> Freshness:
        return cls("absent")

    @property
    def is_fresh(self) -> bool:
        return self.state == "fresh"


class CacheStore:
    """
    Owns the per-image cache directories under a base directory.
    """

    def __init__(self, base_dir: str | os.PathLike):
        self.base_dir = Path(base_dir)

    def entry_path(self, name: str) -> Path:
        return self.base_dir / safe_image_relpath(name)

    def marker_path(self, name: str) -> Path:
        return self.entry_path(name) / DIGEST_FILE

    def fs_path(self, name: str) -> Path:
        return self.entry_path(name) / FS_DIR

    def read_marker(self, name: str) -> Optional[str]:
        """
        Read the digest marker for `name`.

        Returns:
            Marker contents, or None if the marker does not exist

        Raises:
            CacheReadFailure: If the marker exists but cannot be read
        """
        path = self.marker_path(name)
        try:
            return path.read_bytes().decode("utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            raise CacheReadFailure(f"could not open the digest file {path}: {e}") from e

    def check_freshness(self, name: str, remote_digest: str) -> Freshness:
        """
        Compare the cached marker for `name` with the remote digest.

        Never mutates the cache directory.

        Args:
            name: Image name
            remote_digest: Digest currently served by the registry

        Returns:
            Freshness.fresh(fs path) when the marker matches, Freshness.stale()
            when it differs, Freshness.absent() when there is no marker

        Raises:
            CacheReadFailure: If the marker exists but cannot be read
        """
        local = self.read_marker(name)
        if local is None:
            logger.debug(f"No digest marker for {name}")
            return Freshness.absent()

        logger.debug(f"Comparing digests for {name}: local={local} remote={remote_digest}")
        if digests_equivalent(local, remote_digest):
            return Freshness.fresh(self.fs_path(name))
        return Freshness.stale()

    def invalidate(self, name: str) -> None:
        """
        Recursively remove the entire cache directory for `name`.

        Idempotent when the directory does not exist.

        Raises:
            InvalidateFailure: If the directory could not be removed
        """
        path = self.entry_path(name)
        logger.info(f"Cleaning up image directory {path}")
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise InvalidateFailure(f"could not cleanup {path}: {e}") from e

        if os.path.lexists(path):
            raise InvalidateFailure(f"could not cleanup {path}: directory still present")

    def prepare_destination(self, name: str) -> Path:
        """
        Create the filesystem directory for `name` with mode 0755.

        Returns:
            Path of the (empty) filesystem directory

        Raises:
            PrepareFailure: If the directory could not be created
        """
        path = self.fs_path(name)
        try:
            path.mkdir(mode=0o755, parents=True, exist_ok=True)
        except OSError as e:
            raise PrepareFailure(f"could not create the filesystem directory {path}: {e}") from e
        return path

    def commit(self, name: str, digest: str) -> None:
        """
        Write the digest marker for `name`.

        Must only be called once the filesystem directory holds a complete
        extraction of the image with `digest`. The marker is written to a
        temp file and renamed into place so it is never observed truncated.

        Raises:
            MarkerWriteFailure: If the marker could not be written
        """
        target = self.marker_path(name)
        logger.debug(f"Writing digest {digest} to {target}")

        temp_path = None
        try:
            fd, temp_path = tempfile.mkstemp(prefix=".digest.tmp.", dir=target.parent)
            with os.fdopen(fd, "wb") as f:
                f.write(digest.encode("utf-8"))
                f.flush()
                os.fsync(f.fileno())
            os.chmod(temp_path, 0o644)
            os.replace(temp_path, target)
            temp_path = None
        except OSError as e:
            raise MarkerWriteFailure(f"could not write the digest file at {target}: {e}") from e
        finally:
            if temp_path is not None:
                try:
                    os.unlink(temp_path)
                except FileNotFoundError:
                    pass
