"""
Mirror resolution.

Turns one image name into the ordered list of equivalent names to try. The
production resolver reads containers-registries.conf(5) (TOML, version 2):

    [[registry]]
    prefix = "quay.io/org"
    location = "quay.io/org"
    blocked = false

    [[registry.mirror]]
    location = "mirror.internal:5000/org"
    pull-from-mirror = "all"        # or "digest-only" / "tag-only"

Mirrors come first, in file order, followed by the primary location.
"""
from __future__ import annotations

import logging
import tomllib
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from .storage.image_ref import ImageRef, parse_image_ref

__all__ = ["RegistriesConfResolver", "StaticMirrorResolver"]

logger = logging.getLogger(__name__)

_PULL_FROM_MIRROR = ("all", "digest-only", "tag-only")


class StaticMirrorResolver:
    """
    Resolver backed by an explicit mapping of name to candidates.

    Names missing from the mapping resolve to themselves.
    """

    def __init__(self, mapping: Optional[Mapping[str, Sequence[str]]] = None):
        self._mapping: Dict[str, List[str]] = {k: list(v) for k, v in (mapping or {}).items()}

    def get_all_references(self, name: str) -> List[str]:
        return list(self._mapping.get(name, [name]))


class RegistriesConfResolver:
    """
    Resolver reading mirror configuration from a registries.conf file.

    The file is read on every call so configuration changes are picked up
    without restarting. A missing file means no mirrors are configured.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def get_all_references(self, name: str) -> List[str]:
        """
        Return every equivalent name for `name`, mirrors first.

        Raises:
            ValueError: If the name or the configuration file is malformed,
                or every source for the name is blocked
        """
        ref = parse_image_ref(name)
        registries = self._load()

        entry = _find_registry(registries, ref.location)
        if entry is None:
            return [name]

        prefix = _entry_prefix(entry)
        if prefix.startswith("*."):
            # Wildcard entries match on host only; mirrors replace the host.
            suffix = ref.location[len(ref.registry):]
            location = ref.registry
        else:
            suffix = _match_suffix(prefix, ref.location)
            location = entry.get("location") or prefix

        candidates: List[str] = []
        digest_only = bool(entry.get("mirror-by-digest-only", False))
        for mirror in entry.get("mirror", []):
            mirror_location = mirror.get("location")
            if not mirror_location:
                raise ValueError(f"{self.path}: mirror without location for prefix {prefix!r}")
            if not _mirror_applies(mirror, ref, digest_only):
                continue
            candidates.append(ref.with_location(mirror_location + suffix))

        if entry.get("blocked", False):
            logger.debug(f"Registry {prefix} is blocked; skipping primary location for {name}")
        else:
            primary = location + suffix
            if primary == ref.location:
                candidates.append(name)
            else:
                candidates.append(ref.with_location(primary))

        if not candidates:
            raise ValueError(f"No usable source for {name}: registry {prefix!r} is blocked")

        logger.debug(f"Resolved {name} to {candidates}")
        return candidates

    def _load(self) -> List[dict]:
        try:
            with open(self.path, "rb") as f:
                config = tomllib.load(f)
        except FileNotFoundError:
            logger.debug(f"{self.path} does not exist; no mirrors configured")
            return []
        except tomllib.TOMLDecodeError as e:
            raise ValueError(f"Invalid registries configuration {self.path}: {e}") from e

        registries = config.get("registry", [])
        if not isinstance(registries, list):
            raise ValueError(f"Invalid registries configuration {self.path}: [[registry]] must be a table array")
        return registries


def _entry_prefix(entry: dict) -> str:
    prefix = entry.get("prefix") or entry.get("location")
    if not prefix:
        raise ValueError("registry entry needs a prefix or a location")
    return prefix.rstrip("/")


def _match_suffix(prefix: str, location: str) -> Optional[str]:
    """Part of `location` after `prefix`, or None when the prefix does not match."""
    if location == prefix:
        return ""
    if location.startswith(prefix + "/"):
        return location[len(prefix):]
    return None


def _matches(prefix: str, location: str) -> bool:
    if prefix.startswith("*."):
        host = location.split("/", 1)[0]
        return host.endswith(prefix[1:])
    return _match_suffix(prefix, location) is not None


def _find_registry(registries: List[dict], location: str) -> Optional[dict]:
    """Registry entry with the longest prefix matching `location`."""
    best = None
    best_len = -1
    for entry in registries:
        prefix = _entry_prefix(entry)
        if _matches(prefix, location) and len(prefix) > best_len:
            best, best_len = entry, len(prefix)
    return best


def _mirror_applies(mirror: dict, ref: ImageRef, digest_only: bool) -> bool:
    mode = mirror.get("pull-from-mirror", "all")
    if mode not in _PULL_FROM_MIRROR:
        raise ValueError(f"Invalid pull-from-mirror value: {mode!r}")
    if digest_only or mode == "digest-only":
        return ref.is_digest
    if mode == "tag-only":
        return not ref.is_digest
    return True
