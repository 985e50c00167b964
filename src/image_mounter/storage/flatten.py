"""
Layer flattening for image export.

Merges an image's layer tarballs into a single tar stream holding the final
filesystem, the way a container runtime would see it. Layers are read from
the top-most down, so the first occurrence of a path wins and lower copies
are skipped. OCI whiteouts are applied and never emitted:

- `.wh.<name>` deletes `<name>` (and everything below it) from lower layers
- `.wh..wh..opq` hides every lower-layer entry of its directory

Hardlinks are resolved against their own layer. When an upper layer deleted or
replaced the link target, the first surviving link is written as a regular
file with the target's content and later links to the same target point at it.

Only the layer currently being read is open, and file contents are copied
member by member, so memory use does not grow with image size. Shadowed file
contents are spooled to disk while their layer is read.
"""
from __future__ import annotations

import hashlib
import logging
import posixpath
import shutil
import tarfile
import tempfile
from contextlib import AbstractContextManager
from typing import Callable, Dict, Iterable, Iterator, Optional, Sequence, Set, Tuple

import zstandard as zstd

from ..context import CallContext
from ..runtime_types import ByteSink, ByteStream, LayerDescriptor
from .oci_errors import OciDigestMismatch, OciUnsupportedMediaType
from .oci_media_types import LAYER_COMPRESSION, OPAQUE_WHITEOUT, WHITEOUT_PREFIX

__all__ = ["flatten_layers", "IteratorReader", "VerifyingReader", "LayerOpener"]

logger = logging.getLogger(__name__)

LayerOpener = Callable[[LayerDescriptor], AbstractContextManager]

_READ_SIZE = 64 * 1024
_SPOOL_MAX = 1024 * 1024

# Values recorded for paths already claimed by an upper layer
_WHITEOUT = "whiteout"
_DIR = "dir"
_OTHER = "other"


class IteratorReader:
    """
    File-like reader over an iterator of byte chunks.

    Checks the call context between chunks so a cancelled call stops
    downloading promptly.
    """

    def __init__(self, chunks: Iterable[bytes], ctx: Optional[CallContext] = None):
        self._chunks: Iterator[bytes] = iter(chunks)
        self._buffer = b""
        self._eof = False
        self._ctx = ctx

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            parts = [self._buffer]
            self._buffer = b""
            while not self._eof:
                parts.append(self._next_chunk())
            return b"".join(parts)

        while len(self._buffer) < size and not self._eof:
            self._buffer += self._next_chunk()
        out, self._buffer = self._buffer[:size], self._buffer[size:]
        return out

    def _next_chunk(self) -> bytes:
        if self._ctx is not None:
            self._ctx.raise_if_done()
        try:
            return next(self._chunks)
        except StopIteration:
            self._eof = True
            return b""


class VerifyingReader:
    """
    Pass-through reader that hashes everything read and checks it against a digest.

    Only sha256 digests are verified; other algorithms pass through unchecked.
    """

    def __init__(self, raw: ByteStream, digest: str):
        self._raw = raw
        self._digest = digest
        algo, _, self._expected = digest.partition(":")
        self._hash = hashlib.sha256() if algo == "sha256" else None

    def read(self, size: int = -1) -> bytes:
        data = self._raw.read(size)
        if self._hash is not None and data:
            self._hash.update(data)
        return data

    def verify(self) -> None:
        """
        Drain any unread bytes and compare the hash with the expected digest.

        Raises:
            OciDigestMismatch: If the content does not match
        """
        while self.read(_READ_SIZE):
            pass
        if self._hash is None:
            return
        actual = self._hash.hexdigest()
        if actual != self._expected.lower():
            raise OciDigestMismatch(
                f"Layer digest mismatch: expected {self._digest}, got sha256:{actual}",
                expected=self._digest,
                actual=f"sha256:{actual}",
            )


def _normalize(name: str) -> str:
    name = posixpath.normpath("/" + name).lstrip("/")
    return name or "."


def _ancestors(name: str) -> Iterator[str]:
    parent = posixpath.dirname(name)
    while parent:
        yield parent
        parent = posixpath.dirname(parent)


def _is_hidden(name: str, seen: Dict[str, str], opaque: Set[str]) -> bool:
    """True when an upper layer deleted, replaced or opaqued an ancestor of `name`."""
    if "." in opaque and name != ".":
        return True
    for parent in _ancestors(name):
        if parent in opaque:
            return True
        kind = seen.get(parent)
        if kind is not None and kind != _DIR:
            return True
    return False


class _LayerLinks:
    """
    Hardlink bookkeeping for the layer currently being flattened.

    Contents of shadowed regular files are appended to one spool (spilling to
    disk past `_SPOOL_MAX`) so a later link in the layer can still reach them.
    """

    def __init__(self):
        self.shadowed: Dict[str, Tuple[tarfile.TarInfo, int]] = {}
        self.relinked: Dict[str, str] = {}
        self._spool: Optional[tempfile.SpooledTemporaryFile] = None

    def keep_shadowed(self, tar: tarfile.TarFile, member: tarfile.TarInfo, name: str) -> None:
        if self._spool is None:
            self._spool = tempfile.SpooledTemporaryFile(max_size=_SPOOL_MAX)
        self._spool.seek(0, 2)
        self.shadowed[name] = (member, self._spool.tell())
        shutil.copyfileobj(tar.extractfile(member), self._spool, _READ_SIZE)

    def open_shadowed(self, name: str) -> Tuple[tarfile.TarInfo, tempfile.SpooledTemporaryFile]:
        """Return the TarInfo of shadowed file `name` and the spool positioned at its content."""
        info, offset = self.shadowed[name]
        self._spool.seek(offset)
        return info, self._spool

    def close(self) -> None:
        if self._spool is not None:
            self._spool.close()
            self._spool = None
        self.shadowed.clear()


def _open_layer_tar(raw: ByteStream, media_type: str) -> tarfile.TarFile:
    compression = LAYER_COMPRESSION.get(media_type)
    if compression is None:
        raise OciUnsupportedMediaType(f"Unsupported layer media type: {media_type}")
    if compression == "gzip":
        return tarfile.open(fileobj=raw, mode="r|gz")
    if compression == "zstd":
        reader = zstd.ZstdDecompressor().stream_reader(raw, read_size=_READ_SIZE)
        return tarfile.open(fileobj=reader, mode="r|")
    return tarfile.open(fileobj=raw, mode="r|")


def flatten_layers(
    layers: Sequence[LayerDescriptor],
    open_layer: LayerOpener,
    sink: ByteSink,
    ctx: Optional[CallContext] = None,
) -> None:
    """
    Write the merged filesystem of `layers` to `sink` as one tar stream.

    Args:
        layers: Layer descriptors, lowest layer first
        open_layer: Returns a context manager yielding the raw (compressed)
            layer blob as a readable stream
        sink: Destination of the tar stream
        ctx: Optional call context checked between members

    Raises:
        OciUnsupportedMediaType: If a layer compression is unknown
        OciDigestMismatch: If a layer blob does not match its digest
        tarfile.TarError: If a layer is not a valid tarball
    """
    seen: Dict[str, str] = {}
    opaque: Set[str] = set()

    with tarfile.open(fileobj=sink, mode="w|", format=tarfile.PAX_FORMAT) as out:
        for layer in reversed(layers):
            logger.debug(f"Flattening layer {layer.digest} ({layer.media_type})")
            layer_opaque: Set[str] = set()
            links = _LayerLinks()

            try:
                with open_layer(layer) as raw:
                    verifying = VerifyingReader(raw, layer.digest)
                    with _open_layer_tar(verifying, layer.media_type) as tar:
                        for member in tar:
                            if ctx is not None:
                                ctx.raise_if_done()
                            _merge_member(out, tar, member, seen, opaque, layer_opaque, links)
                    verifying.verify()
            finally:
                links.close()

            # Opaque markers only hide content from layers below this one.
            opaque |= layer_opaque


def _merge_member(
    out: tarfile.TarFile,
    tar: tarfile.TarFile,
    member: tarfile.TarInfo,
    seen: Dict[str, str],
    opaque: Set[str],
    layer_opaque: Set[str],
    links: _LayerLinks,
) -> None:
    name = _normalize(member.name)
    dirname, basename = posixpath.split(name)

    if basename == OPAQUE_WHITEOUT:
        layer_opaque.add(dirname or ".")
        return

    if basename.startswith(WHITEOUT_PREFIX):
        target = posixpath.join(dirname, basename[len(WHITEOUT_PREFIX):])
        if target not in seen and not _is_hidden(target, seen, opaque):
            seen[target] = _WHITEOUT
        return

    if name in seen or _is_hidden(name, seen, opaque):
        if member.isreg():
            links.keep_shadowed(tar, member, name)
        return

    seen[name] = _DIR if member.isdir() else _OTHER
    _rename(member, name)

    if member.islnk():
        _add_hardlink(out, member, links)
    elif member.isreg():
        out.addfile(member, tar.extractfile(member))
    else:
        out.addfile(member)


def _rename(member: tarfile.TarInfo, name: str, linkname: Optional[str] = None) -> None:
    # pax path headers would override the new names when the stream is read back
    member.pax_headers.pop("path", None)
    member.name = name
    if member.islnk() or member.issym():
        member.pax_headers.pop("linkpath", None)
        if linkname is not None:
            member.linkname = linkname
        elif member.islnk():
            member.linkname = _normalize(member.linkname)


def _add_hardlink(out: tarfile.TarFile, member: tarfile.TarInfo, links: _LayerLinks) -> None:
    target = member.linkname
    if target in links.relinked:
        _rename(member, member.name, links.relinked[target])
        out.addfile(member)
        return

    if target not in links.shadowed:
        out.addfile(member)
        return

    info, spool = links.open_shadowed(target)
    regular = tarfile.TarInfo(member.name)
    regular.size = info.size
    regular.mode = info.mode
    regular.mtime = info.mtime
    regular.uid, regular.gid = info.uid, info.gid
    regular.uname, regular.gname = info.uname, info.gname
    out.addfile(regular, spool)
    links.relinked[target] = member.name
