"""
Image reference parsing.

Provides consistent parsing and validation of container image names
("registry/repository:tag" or "registry/repository@digest") for the
registry adapters and the mirror resolver.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

__all__ = ["ImageRef", "parse_image_ref", "DOCKER_HUB", "DOCKER_HUB_API"]

DOCKER_HUB = "docker.io"
DOCKER_HUB_API = "registry-1.docker.io"
DEFAULT_TAG = "latest"

_REPO_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
_REPO_RE = re.compile(rf"^{_REPO_COMPONENT}(?:/{_REPO_COMPONENT})*$")
_TAG_RE = re.compile(r"^[\w][\w.-]{0,127}$")
_DIGEST_RE = re.compile(r"^[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[a-zA-Z0-9=_-]{32,}$")


@dataclass(frozen=True)
class ImageRef:
    """
    Parsed components of an image name.

    Attributes:
        registry: Registry host[:port] as written ("docker.io" for short names)
        repository: Repository path ("library/alpine")
        tag: Tag, or None when the reference is by digest
        digest: Digest, or None when the reference is by tag
        original: Original name for error messages
    """
    registry: str
    repository: str
    tag: Optional[str]
    digest: Optional[str]
    original: str

    @property
    def reference(self) -> str:
        """Tag or digest used in /v2/<repo>/manifests/<reference>."""
        return self.digest or self.tag or DEFAULT_TAG

    @property
    def api_host(self) -> str:
        """Host actually contacted for the registry API."""
        return DOCKER_HUB_API if self.registry == DOCKER_HUB else self.registry

    @property
    def is_digest(self) -> bool:
        return self.digest is not None

    def with_location(self, location: str) -> str:
        """
        Rewrite this reference onto another registry location.

        Args:
            location: "host[:port]/path" replacing "registry/repository"

        Returns:
            Full image name at the new location, keeping the tag or digest
        """
        if self.digest:
            return f"{location}@{self.digest}"
        return f"{location}:{self.tag or DEFAULT_TAG}"

    @property
    def location(self) -> str:
        """registry/repository without tag or digest."""
        return f"{self.registry}/{self.repository}"

    def __str__(self) -> str:
        return self.with_location(self.location)


def _looks_like_registry(component: str) -> bool:
    return "." in component or ":" in component or component == "localhost"


def parse_image_ref(name: str) -> ImageRef:
    """
    Parse and validate an image name.

    Short Docker Hub names are expanded: "alpine" becomes
    "docker.io/library/alpine:latest".

    Args:
        name: Image name to parse

    Returns:
        ImageRef with validated components

    Raises:
        ValueError: If the name is empty or malformed

    Examples:
        >>> parse_image_ref("quay.io/org/app:v1")
        ImageRef(registry='quay.io', repository='org/app', tag='v1', digest=None, ...)

        >>> parse_image_ref("localhost:5000/app@sha256:" + "a" * 64).digest
        'sha256:aaaa...'
    """
    if not name or name.strip() != name:
        raise ValueError(f"Invalid image name: {name!r}")

    remainder = name
    digest = None
    if "@" in remainder:
        remainder, digest = remainder.split("@", 1)
        if not _DIGEST_RE.match(digest):
            raise ValueError(f"Invalid digest in image name: {name}")

    tag = None
    last_slash = remainder.rfind("/")
    last_colon = remainder.rfind(":")
    if last_colon > last_slash:
        remainder, tag = remainder[:last_colon], remainder[last_colon + 1:]
        if not _TAG_RE.match(tag):
            raise ValueError(f"Invalid tag in image name: {name}")

    first, sep, rest = remainder.partition("/")
    if sep and _looks_like_registry(first):
        registry, repository = first, rest
        if registry == "index.docker.io":
            registry = DOCKER_HUB
    else:
        registry, repository = DOCKER_HUB, remainder

    if registry == DOCKER_HUB and "/" not in repository:
        repository = f"library/{repository}"

    if not repository or not _REPO_RE.match(repository):
        raise ValueError(f"Invalid repository in image name: {name}")

    if tag is None and digest is None:
        tag = DEFAULT_TAG

    return ImageRef(registry=registry, repository=repository, tag=tag, digest=digest, original=name)
