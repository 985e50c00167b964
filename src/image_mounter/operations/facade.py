"""
Operations Facade - Application service layer.

Provides a clean interface between the CLI and the mounter, centralizing
command orchestration and per-call policy while keeping CLI commands thin
and testable.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from ..cache_store import CacheStore
from ..context import CallContext
from ..mounter import RemoteImageMounter, create_mounter
from ..runtime_types import MirrorResolver, RegistryClient, SyncConfig
from ..settings import Settings


@dataclass(frozen=True)
class OpsConfig:
    """
    Configuration for Operations facade.

    Per-invocation overrides of the environment settings. None means
    "use the value from Settings".
    """
    insecure: Optional[bool] = None     # Skip TLS verification / allow HTTP
    platform: Optional[str] = None      # os/arch[/variant] for multi-arch images
    timeout: Optional[float] = None     # Overall deadline in seconds


class Operations:
    """
    Application service facade for CLI operations.

    One method per CLI verb. Dependencies are injected so tests can pass
    fakes; anything not injected is built from settings on first use.
    Exceptions bubble up for central mapping in run_and_exit.
    """

    def __init__(self, config: OpsConfig, mounter: Optional[RemoteImageMounter] = None,
                 registry: Optional[RegistryClient] = None,
                 resolver: Optional[MirrorResolver] = None,
                 settings: Optional[Settings] = None):
        """
        Initialize Operations facade.

        Args:
            config: Per-invocation overrides
            mounter: Mounter used by mount (if None, built from settings)
            registry: Registry client used by digest (if None, built from settings)
            resolver: Mirror resolver used by mirrors (if None, built from settings)
            settings: Optional settings (if None, loaded from environment)
        """
        self.cfg = config

        if settings is None:
            from ..settings import create_settings_from_env
            settings = create_settings_from_env()
        self.settings = settings

        self._mounter = mounter
        self._registry = registry
        self._resolver = resolver

    def _sync_config(self) -> SyncConfig:
        base = SyncConfig.from_settings(self.settings)
        return SyncConfig(
            insecure_pull=base.insecure_pull if self.cfg.insecure is None else self.cfg.insecure,
            platform=self.cfg.platform or base.platform,
        )

    def _ctx(self) -> CallContext:
        return CallContext(timeout=self.cfg.timeout)

    @property
    def resolver(self) -> MirrorResolver:
        if self._resolver is None:
            from ..mirrors import RegistriesConfResolver
            self._resolver = RegistriesConfResolver(self.settings.registries_conf)
        return self._resolver

    @property
    def registry(self) -> RegistryClient:
        if self._registry is None:
            from ..storage.registry_http import DockerAuth, RegistryHTTP
            self._registry = RegistryHTTP(
                DockerAuth(self.settings.docker_config_path),
                timeout=self.settings.http_timeout_s,
            )
        return self._registry

    @property
    def mounter(self) -> RemoteImageMounter:
        if self._mounter is None:
            self._mounter = create_mounter(self.settings, resolver=self._resolver)
        return self._mounter

    def mount(self, image_name: str) -> Path:
        """
        Mount an image (falling back across mirrors) and return its filesystem path.

        Raises:
            ResolutionFailure: If the mirror list cannot be resolved
            AllMirrorsExhausted: If every candidate failed
        """
        return self.mounter.mount_image(self._ctx(), image_name, self._sync_config())

    def digest(self, image_name: str) -> str:
        """Return the registry digest of `image_name` without pulling it."""
        return self.registry.digest(image_name, self._sync_config(), self._ctx())

    def mirrors(self, image_name: str) -> List[str]:
        """Return the candidate names for `image_name` in the order mount tries them."""
        return self.resolver.get_all_references(image_name)

    def status(self, image_name: str) -> Tuple[Optional[str], Path]:
        """
        Report the cache state of an image.

        Returns:
            Tuple of (cached digest or None, filesystem path of the entry)

        Raises:
            ValueError: If the image name is not a safe cache path
            CacheReadFailure: If the marker exists but cannot be read
        """
        cache = CacheStore(self.settings.base_dir)
        return cache.read_marker(image_name), cache.fs_path(image_name)
