"""
CLI Context for managing application dependencies.

Holds the settings for one CLI invocation and lazily builds the adapters
commands need, so a command that only reads the cache never opens an HTTP
client.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional

from .mirrors import RegistriesConfResolver
from .mounter import RemoteImageMounter, create_mounter
from .settings import Settings, create_settings_from_env
from .storage.registry_http import DockerAuth, RegistryHTTP


@dataclass
class CLIContext:
    """
    Shared context for CLI commands.

    Manages application-level dependencies (settings, registry, resolver,
    mounter) that are initialized once and shared across a CLI command
    execution.
    """
    settings: Settings
    _registry: Optional[RegistryHTTP] = None
    _resolver: Optional[RegistriesConfResolver] = None
    _mounter: Optional[RemoteImageMounter] = None

    @classmethod
    def from_env(cls, base_dir: Optional[str] = None) -> CLIContext:
        """
        Create CLI context from environment variables.

        Args:
            base_dir: Optional override of IMAGE_MOUNTER_BASE_DIR

        Returns:
            CLIContext with settings loaded from environment
        """
        settings = create_settings_from_env()
        if base_dir:
            settings = replace(settings, base_dir=base_dir)
        return cls(settings=settings)

    @property
    def registry(self) -> RegistryHTTP:
        """Get or create the registry client (lazy initialization)."""
        if self._registry is None:
            self._registry = RegistryHTTP(
                DockerAuth(self.settings.docker_config_path),
                timeout=self.settings.http_timeout_s,
            )
        return self._registry

    @property
    def resolver(self) -> RegistriesConfResolver:
        if self._resolver is None:
            self._resolver = RegistriesConfResolver(self.settings.registries_conf)
        return self._resolver

    @property
    def mounter(self) -> RemoteImageMounter:
        """
        Get or create the mounter (lazy initialization).

        The mounter shares this context's resolver so `mirrors` and `mount`
        agree on the candidate list.
        """
        if self._mounter is None:
            self._mounter = create_mounter(self.settings, resolver=self.resolver)
        return self._mounter
