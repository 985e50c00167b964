"""
Registry HTTP Client for the OCI Distribution API.

Provides the production RegistryClient: digest lookup, manifest resolution
(including platform selection from image indexes) and streaming export of an
image's merged filesystem. Implements the Docker Registry v2 auth flow with
Bearer token support and Docker config credentials.
"""
from __future__ import annotations

import base64
import contextlib
import hashlib
import json
import logging
import re
import time
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..context import CallContext
from ..runtime_types import ByteSink, ImageHandle, LayerDescriptor, SyncConfig
from .flatten import IteratorReader, flatten_layers
from .image_ref import ImageRef, parse_image_ref
from .oci_errors import (
    OciAuthError,
    OciDigestMismatch,
    OciError,
    OciNotFound,
    OciRateLimited,
    OciUnsupportedMediaType,
)
from .oci_media_types import (
    ACCEPTED_MANIFEST_TYPES,
    IMAGE_MANIFEST_TYPES,
    INDEX_MANIFEST_TYPES,
)

__all__ = ["DockerAuth", "RegistryHTTP"]

logger = logging.getLogger(__name__)

USER_AGENT = "image-mounter/0.1.0"
_BLOB_CHUNK = 256 * 1024


class DockerAuth:
    """Handle Docker Registry authentication from config files."""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = config_path or Path.home() / ".docker" / "config.json"
        self._config_cache: Optional[dict] = None
        self._config_mtime: Optional[float] = None

    def get_credentials(self, registry: str) -> Optional[Tuple[str, str]]:
        """
        Get credentials for registry from Docker config.

        Returns: (username, password) or None if not found
        """
        config = self._load_config()
        if not config:
            return None

        auths = config.get("auths", {})

        candidates = [registry, f"https://{registry}", f"http://{registry}"]
        if registry in ("docker.io", "registry-1.docker.io"):
            candidates.append("https://index.docker.io/v1/")

        auth_entry = None
        for key in candidates:
            if key in auths:
                auth_entry = auths[key]
                break
        if auth_entry is None:
            return None

        # Handle base64 encoded auth field
        if "auth" in auth_entry:
            try:
                decoded = base64.b64decode(auth_entry["auth"]).decode()
            except (ValueError, UnicodeDecodeError) as e:
                logger.debug(f"Ignoring malformed auth entry for {registry}: {e}")
            else:
                if ":" in decoded:
                    username, password = decoded.split(":", 1)
                    return (username, password)

        if "username" in auth_entry and "password" in auth_entry:
            return (auth_entry["username"], auth_entry["password"])

        return None

    def _load_config(self) -> Optional[dict]:
        """Load Docker config with caching and mtime checking."""
        if not self.config_path.exists():
            return None

        try:
            current_mtime = self.config_path.stat().st_mtime

            if (self._config_cache is not None and
                    self._config_mtime is not None and
                    current_mtime == self._config_mtime):
                return self._config_cache

            with open(self.config_path, 'r') as f:
                config = json.load(f)

            self._config_cache = config
            self._config_mtime = current_mtime
            return config

        except (OSError, json.JSONDecodeError) as e:
            logger.debug(f"Failed to read Docker config {self.config_path}: {e}")
            return None


class RegistryHTTP:
    """
    HTTP client for OCI Distribution API operations.

    One instance serves any number of registries; clients are kept per TLS
    mode and tokens are cached per registry/service/scope.
    """

    def __init__(self, auth: Optional[DockerAuth] = None, *, timeout: float = 30.0,
                 transport: Optional[httpx.BaseTransport] = None):
        """
        Initialize registry HTTP client.

        Args:
            auth: Docker auth handler (defaults to standard Docker config)
            timeout: Read/write timeout in seconds for each request
            transport: Optional httpx transport (used by tests)
        """
        self.auth = auth or DockerAuth()
        self.timeout = timeout
        self._transport = transport
        self._clients: Dict[bool, httpx.Client] = {}

        # Token cache: {registry/service/scope: (authorization header, expiry_timestamp)}
        self._token_cache: Dict[str, Tuple[str, float]] = {}

    # -- RegistryClient ---------------------------------------------------

    def digest(self, name: str, config: SyncConfig, ctx: CallContext) -> str:
        """
        Get the manifest digest of `name` without downloading content.

        Falls back to GET and hashing the manifest when the registry omits
        the Docker-Content-Digest header.

        Raises:
            ValueError: If the image name is malformed
            OciError: For registry errors
        """
        ref = parse_image_ref(name)
        self._warn_insecure(ref, config)
        path = f"/v2/{ref.repository}/manifests/{ref.reference}"
        headers = {"Accept": ", ".join(ACCEPTED_MANIFEST_TYPES)}

        response = self._request("HEAD", ref, path, config.insecure_pull, ctx, headers=headers)
        digest = response.headers.get("Docker-Content-Digest")
        if digest:
            return digest

        logger.debug(f"No Docker-Content-Digest header for {name}; hashing manifest")
        response = self._request("GET", ref, path, config.insecure_pull, ctx, headers=headers)
        return f"sha256:{hashlib.sha256(response.content).hexdigest()}"

    def pull(self, name: str, config: SyncConfig, ctx: CallContext) -> ImageHandle:
        """
        Resolve `name` to an image handle for the configured platform.

        Raises:
            OciNotFound: If the image or a matching platform is missing
            OciUnsupportedMediaType: If the manifest type is not an image or index
            OciDigestMismatch: If a manifest does not hash to its digest
            OciError: For other registry errors
        """
        ref = parse_image_ref(name)
        self._warn_insecure(ref, config)

        top_digest, media_type, manifest = self._get_manifest(ref, ref.reference, config.insecure_pull, ctx)
        manifest_digest = top_digest

        if media_type in INDEX_MANIFEST_TYPES:
            child = _select_platform(manifest, config.platform, name)
            manifest_digest, media_type, manifest = self._get_manifest(
                ref, child, config.insecure_pull, ctx
            )

        if media_type not in IMAGE_MANIFEST_TYPES:
            raise OciUnsupportedMediaType(
                f"Unsupported manifest media type for {name}: {media_type}. "
                f"Expected one of: {', '.join(ACCEPTED_MANIFEST_TYPES)}"
            )

        layers = tuple(
            LayerDescriptor(digest=layer["digest"], media_type=layer["mediaType"], size=layer.get("size", 0))
            for layer in manifest.get("layers", [])
        )
        logger.debug(f"Pulled {name}: manifest {manifest_digest}, {len(layers)} layers")

        return ImageHandle(
            reference=name,
            digest=top_digest,
            manifest_digest=manifest_digest,
            layers=layers,
            insecure=config.insecure_pull,
        )

    def export(self, handle: ImageHandle, sink: ByteSink, ctx: CallContext) -> None:
        """Stream the flattened filesystem of `handle` into `sink`."""
        ref = parse_image_ref(handle.reference)

        @contextlib.contextmanager
        def open_layer(layer: LayerDescriptor) -> Iterator[IteratorReader]:
            path = f"/v2/{ref.repository}/blobs/{layer.digest}"
            with self._stream("GET", ref, path, handle.insecure, ctx) as response:
                yield IteratorReader(response.iter_bytes(_BLOB_CHUNK), ctx)

        logger.debug(f"Exporting {handle.reference} ({len(handle.layers)} layers)")
        flatten_layers(handle.layers, open_layer, sink, ctx)

    def handle_digest(self, handle: ImageHandle) -> str:
        return handle.digest

    # -- manifests --------------------------------------------------------

    def _get_manifest(self, ref: ImageRef, reference: str, insecure: bool,
                      ctx: CallContext) -> Tuple[str, str, dict]:
        """
        GET a manifest and verify it against its digest.

        Returns:
            (digest, media_type, parsed manifest)
        """
        path = f"/v2/{ref.repository}/manifests/{reference}"
        headers = {"Accept": ", ".join(ACCEPTED_MANIFEST_TYPES)}
        response = self._request("GET", ref, path, insecure, ctx, headers=headers)

        body = response.content
        computed = f"sha256:{hashlib.sha256(body).hexdigest()}"
        digest = response.headers.get("Docker-Content-Digest") or computed
        expected = reference if reference.startswith("sha256:") else digest
        if expected.startswith("sha256:") and expected != computed:
            raise OciDigestMismatch(
                f"Manifest digest mismatch for {ref.original}: expected {expected}, got {computed}",
                expected=expected,
                actual=computed,
            )

        try:
            manifest = json.loads(body)
        except json.JSONDecodeError as e:
            raise OciUnsupportedMediaType(f"Invalid JSON in manifest for {ref.original}: {e}") from e

        content_type = response.headers.get("Content-Type", "").split(";")[0].strip()
        media_type = manifest.get("mediaType") or content_type
        return digest, media_type, manifest

    # -- transport --------------------------------------------------------

    def _client(self, insecure: bool) -> httpx.Client:
        if insecure not in self._clients:
            self._clients[insecure] = httpx.Client(
                timeout=httpx.Timeout(self.timeout, connect=5.0),
                follow_redirects=True,
                verify=not insecure,
                headers={"User-Agent": USER_AGENT},
                transport=self._transport,
            )
        return self._clients[insecure]

    @staticmethod
    def _base_urls(ref: ImageRef, insecure: bool) -> List[str]:
        host = ref.api_host
        if insecure:
            return [f"https://{host}", f"http://{host}"]
        return [f"https://{host}"]

    def _warn_insecure(self, ref: ImageRef, config: SyncConfig) -> None:
        if config.insecure_pull:
            logger.warning(f"Pulling {ref.original} without TLS verification")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((httpx.ConnectTimeout, httpx.ReadTimeout)),
        reraise=True,
    )
    def _send(self, method: str, ref: ImageRef, path: str, insecure: bool, ctx: CallContext,
              headers: Optional[dict] = None, stream: bool = False) -> httpx.Response:
        """
        Send a request with transparent token auth, trying plain HTTP last when insecure.

        Handles 401 responses by:
        1. Parsing WWW-Authenticate for Bearer realm/service/scope or Basic
        2. Looking up credentials in Docker config
        3. Exchanging credentials for a Bearer token (cached per scope)
        4. Retrying the original request with an Authorization header
        """
        client = self._client(insecure)
        base_urls = self._base_urls(ref, insecure)
        last_error: Optional[Exception] = None

        for base_url in base_urls:
            ctx.raise_if_done()
            request_headers = dict(headers or {})
            cached = self._cached_authorization(ref)
            if cached:
                request_headers["Authorization"] = cached

            timeout = self._request_timeout(ctx)
            try:
                request = client.build_request(method, base_url + path, headers=request_headers, timeout=timeout)
                response = client.send(request, stream=stream)

                if response.status_code == 401:
                    authorization = self._authorize(client, ref, response.headers.get("WWW-Authenticate", ""))
                    if authorization:
                        response.close()
                        request_headers["Authorization"] = authorization
                        request = client.build_request(method, base_url + path, headers=request_headers,
                                                       timeout=timeout)
                        response = client.send(request, stream=stream)
                return response
            except httpx.ConnectError as e:
                logger.debug(f"Connection to {base_url} failed: {e}")
                last_error = e

        raise last_error

    def _request(self, method: str, ref: ImageRef, path: str, insecure: bool, ctx: CallContext,
                 headers: Optional[dict] = None) -> httpx.Response:
        try:
            response = self._send(method, ref, path, insecure, ctx, headers=headers)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            raise _map_status_error(e, f"{ref.original} {path}") from e
        except httpx.RequestError as e:
            raise OciError(f"Network error for {ref.original}: {e}") from e

    @contextlib.contextmanager
    def _stream(self, method: str, ref: ImageRef, path: str, insecure: bool,
                ctx: CallContext) -> Iterator[httpx.Response]:
        try:
            response = self._send(method, ref, path, insecure, ctx, stream=True)
        except httpx.RequestError as e:
            raise OciError(f"Network error for {ref.original}: {e}") from e

        try:
            try:
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise _map_status_error(e, f"{ref.original} {path}") from e
            try:
                yield response
            except httpx.RequestError as e:
                raise OciError(f"Network error streaming {path} for {ref.original}: {e}") from e
        finally:
            response.close()

    def _request_timeout(self, ctx: CallContext) -> httpx.Timeout:
        remaining = ctx.remaining()
        timeout = self.timeout if remaining is None else max(0.001, min(self.timeout, remaining))
        return httpx.Timeout(timeout, connect=min(5.0, timeout))

    # -- auth -------------------------------------------------------------

    def _cached_authorization(self, ref: ImageRef) -> Optional[str]:
        prefix = f"{ref.api_host}|"
        now = time.time()
        for key, (header, expiry) in self._token_cache.items():
            if key.startswith(prefix) and now < expiry - 30 and f"repository:{ref.repository}:" in key:
                return header
        return None

    def _authorize(self, client: httpx.Client, ref: ImageRef, www_authenticate: str) -> Optional[str]:
        """
        Build an Authorization header value from a WWW-Authenticate challenge.
        """
        creds = self.auth.get_credentials(ref.registry)

        if www_authenticate.lower().startswith("basic"):
            if not creds:
                return None
            token = base64.b64encode(f"{creds[0]}:{creds[1]}".encode()).decode()
            return f"Basic {token}"

        if not www_authenticate.startswith("Bearer "):
            return None

        params = {m.group(1): m.group(2) for m in re.finditer(r'(\w+)="([^"]*)"', www_authenticate)}
        realm = params.get("realm")
        service = params.get("service")
        scope = params.get("scope") or f"repository:{ref.repository}:pull"
        if not realm:
            return None

        cache_key = f"{ref.api_host}|{service or ''}|{scope}"
        cached = self._token_cache.get(cache_key)
        if cached and time.time() < cached[1] - 30:
            return cached[0]

        query = {"scope": scope}
        if service:
            query["service"] = service

        try:
            auth_response = client.get(realm, params=query, auth=creds if creds else None)
            auth_response.raise_for_status()
            token_data = auth_response.json()
        except (httpx.HTTPError, json.JSONDecodeError) as e:
            logger.debug(f"Token exchange with {realm} failed: {e}")
            return None

        token = token_data.get("token") or token_data.get("access_token")
        if not token:
            return None

        expires_in = token_data.get("expires_in", 3600)
        header = f"Bearer {token}"
        self._token_cache[cache_key] = (header, time.time() + expires_in)
        return header

    def close(self):
        """Close HTTP clients."""
        for client in self._clients.values():
            client.close()
        self._clients.clear()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def _map_status_error(e: httpx.HTTPStatusError, what: str) -> OciError:
    status = e.response.status_code
    if status == 404:
        return OciNotFound(f"Not found: {what}")
    if status in (401, 403):
        return OciAuthError(f"Authentication failed for {what}")
    if status == 429:
        return OciRateLimited(f"Rate limited: {what}")
    return OciError(f"Registry error {status} for {what}")


def _select_platform(index: dict, platform: str, name: str) -> str:
    """
    Pick the manifest digest matching `platform` ("os/arch[/variant]") from an index.

    Raises:
        OciNotFound: If no entry matches
    """
    parts = platform.split("/")
    want_os, want_arch = parts[0], parts[1]
    want_variant = parts[2] if len(parts) > 2 else None

    for entry in index.get("manifests", []):
        plat = entry.get("platform") or {}
        if plat.get("os") != want_os or plat.get("architecture") != want_arch:
            continue
        if want_variant is not None and plat.get("variant") not in (None, want_variant):
            continue
        return entry["digest"]

    raise OciNotFound(f"No manifest for platform {platform} in index for {name}")
