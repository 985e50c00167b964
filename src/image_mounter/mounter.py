"""
Image mounter entry point.

This module implements mount_image(): resolve every mirror of an image name
and sync them one at a time until one produces a usable filesystem.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Tuple

from .cache_store import CacheStore
from .context import CallContext
from .errors import AllMirrorsExhausted, MountError, ResolutionFailure
from .extract import TarExtractor
from .mirrors import RegistriesConfResolver
from .runtime_types import MirrorResolver, SyncConfig
from .settings import Settings
from .sync_engine import SyncEngine

__all__ = ["RemoteImageMounter", "create_mounter", "mount_image"]

logger = logging.getLogger(__name__)


class RemoteImageMounter:
    """
    Mirror fallback over a SyncEngine.

    Candidates are tried sequentially in the resolver's order; the first
    success wins and the remaining candidates are never contacted.
    """

    def __init__(self, resolver: MirrorResolver, engine: SyncEngine):
        self.resolver = resolver
        self.engine = engine

    def mount_image(self, ctx: CallContext, image_name: str, config: SyncConfig) -> Path:
        """
        Pull and extract `image_name` (or one of its mirrors) and return the filesystem path.

        Args:
            ctx: Call context
            image_name: Image name requested by the caller
            config: Per-call sync configuration

        Returns:
            Path of the extracted filesystem root of the first candidate that synced

        Raises:
            ResolutionFailure: If the mirror list cannot be resolved
            AllMirrorsExhausted: If every candidate failed
        """
        try:
            candidates = self.resolver.get_all_references(image_name)
        except Exception as e:
            raise ResolutionFailure(f"could not resolve all mirrored names for {image_name!r}: {e}") from e

        failures: List[Tuple[str, BaseException]] = []
        for candidate in candidates:
            if ctx.err() is not None:
                logger.warning(f"Stopping mirror fallback for {image_name}: {ctx.err()}")
                break

            logger.info(f"Pulling and mounting image {candidate}")
            try:
                fs_dir = self.engine.sync(ctx, candidate, config)
            except MountError as e:
                logger.warning(f"Could not pull and mount image {candidate}: {e}")
                failures.append((candidate, e))
                continue

            logger.info(f"Image {candidate} pulled and mounted successfully in {fs_dir}")
            return fs_dir

        raise AllMirrorsExhausted(image_name, failures)


def create_mounter(settings: Settings, *, resolver: Optional[MirrorResolver] = None) -> RemoteImageMounter:
    """
    Build a RemoteImageMounter wired to the production adapters.

    Args:
        settings: Settings providing the base directory, registries.conf and HTTP options
        resolver: Optional resolver overriding the registries.conf resolver
    """
    from .storage.registry_http import DockerAuth, RegistryHTTP

    registry = RegistryHTTP(
        DockerAuth(settings.docker_config_path),
        timeout=settings.http_timeout_s,
    )
    engine = SyncEngine(
        CacheStore(settings.base_dir),
        registry,
        TarExtractor(),
        pipe_chunks=settings.pipe_chunks,
    )
    return RemoteImageMounter(resolver or RegistriesConfResolver(settings.registries_conf), engine)


def mount_image(
    ctx: CallContext,
    image_name: str,
    config: Optional[SyncConfig] = None,
    *,
    mounter: Optional[RemoteImageMounter] = None,
    settings: Optional[Settings] = None,
) -> Path:
    """
    Mount an image and return the path of its extracted filesystem.

    Examples:
        >>> path = mount_image(CallContext(timeout=300), "quay.io/org/kmod:v1")

        >>> # Inject a mounter built from fakes (e.g., for testing)
        >>> path = mount_image(ctx, "app:v1", SyncConfig(), mounter=fake_mounter)
    """
    if settings is None and (mounter is None or config is None):
        from .settings import create_settings_from_env
        settings = create_settings_from_env()

    if config is None:
        config = SyncConfig.from_settings(settings)

    if mounter is None:
        mounter = create_mounter(settings)

    return mounter.mount_image(ctx, image_name, config)
