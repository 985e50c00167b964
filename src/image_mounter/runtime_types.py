"""
Runtime types for the image mounter.

These types define the interface between the sync engine and the capabilities
it consumes (registry access, archive extraction, mirror resolution), enabling
dependency injection of production adapters or in-memory fakes.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import IO, List, Optional, Protocol, Tuple, runtime_checkable

from .context import CallContext

__all__ = [
    "SyncConfig",
    "Ownership",
    "LayerDescriptor",
    "ImageHandle",
    "ByteSink",
    "ByteStream",
    "RegistryClient",
    "ArchiveExtractor",
    "MirrorResolver",
    "digests_equivalent",
]

# Readable side of the export stream (file-like with read(n))
ByteStream = IO[bytes]


@dataclass(frozen=True)
class SyncConfig:
    """
    Per-call parameters supplied by the caller.

    insecure_pull: skip TLS verification and allow plain HTTP registries
    platform: os/arch[/variant] picked out of multi-arch image indexes
    """
    insecure_pull: bool = False
    platform: str = "linux/amd64"

    @classmethod
    def from_settings(cls, settings) -> SyncConfig:
        return cls(insecure_pull=settings.insecure_pull, platform=settings.platform)


@dataclass(frozen=True)
class Ownership:
    """File ownership applied to every extracted entry."""
    uid: int
    gid: int

    @classmethod
    def current(cls) -> Ownership:
        """Identity of the running process."""
        return cls(uid=os.getuid(), gid=os.getgid())


@dataclass(frozen=True)
class LayerDescriptor:
    digest: str
    media_type: str
    size: int = 0


@dataclass(frozen=True)
class ImageHandle:
    """
    A pulled image, ready to be exported.

    reference: image name the handle was pulled from
    digest: digest the reference resolved to at pull time (index digest for
        multi-arch images, manifest digest otherwise)
    manifest_digest: digest of the platform image manifest
    layers: layer descriptors, lowest layer first
    insecure: whether the handle was pulled with TLS verification skipped
    """
    reference: str
    digest: str
    manifest_digest: str
    layers: Tuple[LayerDescriptor, ...] = field(default_factory=tuple)
    insecure: bool = False


class ByteSink(Protocol):
    """Writable side of the export stream."""

    def write(self, data: bytes) -> int:
        ...


@runtime_checkable
class RegistryClient(Protocol):
    """
    Registry access used by the sync engine.

    Implementations raise their own errors; the sync engine classifies them
    by the step that failed.
    """

    def digest(self, name: str, config: SyncConfig, ctx: CallContext) -> str:
        """Return the current content digest of `name` at the registry."""
        ...

    def pull(self, name: str, config: SyncConfig, ctx: CallContext) -> ImageHandle:
        """Resolve `name` to a pullable image handle."""
        ...

    def export(self, handle: ImageHandle, sink: ByteSink, ctx: CallContext) -> None:
        """
        Write the merged filesystem of `handle` as a tar stream into `sink`.

        Must not buffer the whole image; bytes are written as they are read
        from the registry.
        """
        ...

    def handle_digest(self, handle: ImageHandle) -> str:
        """Digest identifying the content of a pulled handle."""
        ...


@runtime_checkable
class ArchiveExtractor(Protocol):
    """Materializes a tar byte stream as a directory tree."""

    def extract(self, stream: ByteStream, dest: str, ownership: Ownership) -> None:
        """
        Raises:
            tarfile.TarError: If the stream is malformed
            OSError: If a write fails
        """
        ...


@runtime_checkable
class MirrorResolver(Protocol):
    """Resolves every equivalent name for an image, in the order to try them."""

    def get_all_references(self, name: str) -> List[str]:
        ...


def digests_equivalent(a: Optional[str], b: Optional[str]) -> bool:
    """
    Compare two digests by content rather than by string representation.

    Algorithm and hex parts are compared case-insensitively and surrounding
    whitespace is ignored. Digests without an algorithm never match.

    Examples:
        >>> digests_equivalent("sha256:ABC", " sha256:abc\\n")
        True
        >>> digests_equivalent("sha256:abc", "sha512:abc")
        False
    """
    if not a or not b:
        return False
    a_algo, sep_a, a_hex = a.strip().partition(":")
    b_algo, sep_b, b_hex = b.strip().partition(":")
    if not sep_a or not sep_b or not a_hex or not b_hex:
        return False
    return a_algo.lower() == b_algo.lower() and a_hex.lower() == b_hex.lower()
