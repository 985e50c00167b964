"""
Path safety utilities for the image mounter.

Image names become directory paths under the cache base directory. This module
validates them so a crafted name can never point outside the base directory.
"""
from __future__ import annotations

from pathlib import PurePosixPath


def safe_image_relpath(name: str) -> str:
    """
    Validate an image name for use as a relative cache path.

    This function enforces the following safety rules:
    - No empty strings or "." (prevents base directory access)
    - No absolute paths (starting with '/')
    - No parent or current directory references ('..' or '.' components)
    - No backslashes or NUL bytes

    The name is returned unchanged so the on-disk layout stays
    `<base>/<imageName>/...` exactly as the name was given.

    Args:
        name: Image name such as "quay.io/org/repo:tag"

    Returns:
        The validated image name

    Raises:
        ValueError: If the name violates safety rules

    Examples:
        >>> safe_image_relpath("quay.io/org/repo:v1")
        'quay.io/org/repo:v1'

        >>> safe_image_relpath("../etc:latest")
        ValueError: unsafe image name: ../etc:latest
    """
    if not name or name.strip() != name:
        raise ValueError(f"unsafe image name: {name!r}")
    if "\\" in name or "\x00" in name:
        raise ValueError(f"unsafe image name: {name!r}")
    if name.startswith("/") or name.endswith("/") or "//" in name:
        raise ValueError(f"unsafe image name: {name!r}")
    parts = PurePosixPath(name).parts
    if not parts or any(p in (".", "..") for p in name.split("/")):
        raise ValueError(f"unsafe image name: {name!r}")
    return name
