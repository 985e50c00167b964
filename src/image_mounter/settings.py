"""
Settings and configuration for the image mounter.

Centralizes configuration values and provides validation with fail-fast behavior.
Loads settings from environment variables at construction time.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

__all__ = ["Settings", "create_settings_from_env", "DEFAULT_BASE_DIR", "DEFAULT_REGISTRIES_CONF"]

DEFAULT_BASE_DIR = "/var/lib/image-mounter"
DEFAULT_REGISTRIES_CONF = "/etc/containers/registries.conf"
DEFAULT_PLATFORM = "linux/amd64"

_PLATFORM_RE = re.compile(r"^[a-z0-9]+/[a-z0-9_]+(?:/[a-z0-9]+)?$")


@dataclass(frozen=True)
class Settings:
    """
    Configuration settings for the image mounter.

    Cache Settings:
        base_dir: Directory under which one cache entry per image name is kept

    Registry Settings:
        registries_conf: Path to containers-registries.conf used for mirrors
        platform: Platform selected from multi-arch image indexes (os/arch[/variant])
        insecure_pull: Skip TLS verification and allow plain HTTP
        http_timeout_s: HTTP request timeout in seconds
        docker_config: Directory holding the Docker config.json with credentials

    Streaming Settings:
        pipe_chunks: Number of chunks buffered between export and extraction
    """
    base_dir: str = DEFAULT_BASE_DIR
    registries_conf: str = DEFAULT_REGISTRIES_CONF
    platform: str = DEFAULT_PLATFORM
    insecure_pull: bool = False
    http_timeout_s: float = 30.0
    docker_config: Optional[str] = None
    pipe_chunks: int = 16

    def __post_init__(self):
        """Validate settings on construction."""
        if not self.base_dir:
            raise ValueError("base_dir is required")

        if not os.path.isabs(self.base_dir):
            raise ValueError(f"base_dir must be an absolute path, got {self.base_dir}")

        if not _PLATFORM_RE.match(self.platform):
            raise ValueError(f"Invalid platform format: {self.platform}. Expected os/arch[/variant]")

        if self.http_timeout_s <= 0:
            raise ValueError(f"http_timeout_s must be positive, got {self.http_timeout_s}")

        if self.pipe_chunks < 1:
            raise ValueError(f"pipe_chunks must be at least 1, got {self.pipe_chunks}")

    @property
    def docker_config_path(self) -> Path:
        """Location of the Docker config.json holding registry credentials."""
        if self.docker_config:
            return Path(self.docker_config) / "config.json"
        return Path.home() / ".docker" / "config.json"


def create_settings_from_env() -> Settings:
    """
    Load settings from environment variables.

    Environment Variables:
        - IMAGE_MOUNTER_BASE_DIR (default: /var/lib/image-mounter)
        - IMAGE_MOUNTER_REGISTRIES_CONF (default: /etc/containers/registries.conf)
        - IMAGE_MOUNTER_PLATFORM (default: linux/amd64)
        - IMAGE_MOUNTER_INSECURE_PULL (default: false)
        - IMAGE_MOUNTER_HTTP_TIMEOUT (default: 30.0)
        - IMAGE_MOUNTER_PIPE_CHUNKS (default: 16)
        - DOCKER_CONFIG (optional)

    Returns:
        Settings object with validated configuration

    Raises:
        ValueError: If configuration is invalid

    Note:
        Creates a fresh Settings instance every time (no caching).
        This ensures test isolation and eliminates global state.
    """
    def str_to_bool(value: str) -> bool:
        return value.lower() in ('true', '1', 'yes', 'on')

    def get_float(key: str, default: float) -> float:
        value = os.getenv(key)
        return float(value) if value else default

    def get_int(key: str, default: int) -> int:
        value = os.getenv(key)
        return int(value) if value else default

    return Settings(
        base_dir=os.getenv("IMAGE_MOUNTER_BASE_DIR") or DEFAULT_BASE_DIR,
        registries_conf=os.getenv("IMAGE_MOUNTER_REGISTRIES_CONF") or DEFAULT_REGISTRIES_CONF,
        platform=os.getenv("IMAGE_MOUNTER_PLATFORM") or DEFAULT_PLATFORM,
        insecure_pull=str_to_bool(os.getenv("IMAGE_MOUNTER_INSECURE_PULL", "false")),
        http_timeout_s=get_float("IMAGE_MOUNTER_HTTP_TIMEOUT", 30.0),
        docker_config=os.getenv("DOCKER_CONFIG") or None,
        pipe_chunks=get_int("IMAGE_MOUNTER_PIPE_CHUNKS", 16),
    )
