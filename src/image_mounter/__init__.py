"""
Image mounter: sync container images from a registry to local disk.

Checks a cached extraction against the registry digest, re-extracts by
streaming the image's merged filesystem straight into a tar extractor when it
is out of date, and falls back across mirrors until one succeeds.
"""
from __future__ import annotations

from .context import CallContext
from .errors import AllMirrorsExhausted, MountError
from .mounter import RemoteImageMounter, create_mounter, mount_image
from .runtime_types import SyncConfig
from .settings import Settings, create_settings_from_env

__all__ = [
    "CallContext",
    "AllMirrorsExhausted",
    "MountError",
    "RemoteImageMounter",
    "create_mounter",
    "mount_image",
    "SyncConfig",
    "Settings",
    "create_settings_from_env",
]
