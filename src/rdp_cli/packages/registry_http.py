"""
Registry HTTP Client for the OCI Distribution API.

Reads images from a remote registry so they can be pushed to the platform
without going through a local Docker daemon. Handles the Docker Registry v2
bearer-token auth flow with credentials from the Docker config file.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import re
import time
from pathlib import Path
from typing import BinaryIO, Dict, Optional, Tuple
from urllib.parse import urljoin

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import ApiError, ClientError, DigestMismatchError, ResourceNotFoundError, UnauthorizedError
from ..models import DOCKER_MANIFEST_LIST, DOCKER_MANIFEST_V2, OCI_INDEX_V1, OCI_MANIFEST_V1

__all__ = ["DockerAuth", "RegistryHTTP", "ACCEPTED_MANIFEST_TYPES", "registry_base_url"]

logger = logging.getLogger(__name__)

# Manifest media types we accept (in order of preference)
ACCEPTED_MANIFEST_TYPES = [
    DOCKER_MANIFEST_V2,
    OCI_MANIFEST_V1,
    DOCKER_MANIFEST_LIST,
    OCI_INDEX_V1,
]

# Docker Hub is addressed as docker.io but served from a different host
_DOCKER_HUB_ALIASES = {"docker.io", "index.docker.io", "registry-1.docker.io"}
_DOCKER_HUB_HOST = "registry-1.docker.io"


def registry_base_url(registry: str, insecure: bool = False) -> str:
    """Base URL for *registry*; plain http for insecure and localhost registries."""
    if registry.startswith("http://") or registry.startswith("https://"):
        return registry
    if registry in _DOCKER_HUB_ALIASES:
        return f"https://{_DOCKER_HUB_HOST}"
    host = registry.split(":", 1)[0]
    if insecure or host in ("localhost", "127.0.0.1"):
        return f"http://{registry}"
    return f"https://{registry}"


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
        candidates = [registry, f"https://{registry}", registry.replace("https://", "").replace("http://", "")]
        if registry in _DOCKER_HUB_ALIASES:
            candidates.append("https://index.docker.io/v1/")

        auth_entry = next((auths[key] for key in candidates if key in auths), None)
        if auth_entry is None:
            return None

        # base64 "user:password" auth field
        if "auth" in auth_entry:
            try:
                decoded = base64.b64decode(auth_entry["auth"]).decode()
            except (binascii.Error, UnicodeDecodeError) as e:
                logger.warning(f"ignoring malformed auth entry for {registry}: {e}")
            else:
                if ":" in decoded:
                    username, password = decoded.split(":", 1)
                    return username, password

        if "username" in auth_entry and "password" in auth_entry:
            return auth_entry["username"], auth_entry["password"]

        return None

    def _load_config(self) -> Optional[dict]:
        """Load Docker config with caching and mtime checking."""
        if not self.config_path.exists():
            return None

        try:
            current_mtime = self.config_path.stat().st_mtime
            if self._config_cache is not None and current_mtime == self._config_mtime:
                return self._config_cache

            with open(self.config_path, "r") as f:
                config = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"cannot read docker config {self.config_path}: {e}")
            return None

        self._config_cache = config
        self._config_mtime = current_mtime
        return config


class RegistryHTTP:
    """
    HTTP client for OCI Distribution API reads.

    Implements the Docker Registry v2 auth flow with Bearer token support
    and retries on timeouts.
    """

    def __init__(self, registry: str, auth: Optional[DockerAuth] = None, insecure: bool = False,
                 transport: Optional[httpx.BaseTransport] = None):
        """
        Initialize registry HTTP client.

        Args:
            registry: Registry hostname (e.g., "localhost:5000", "ghcr.io")
            auth: Docker auth handler (defaults to standard Docker config)
            insecure: Allow HTTP and skip TLS verification
            transport: Optional httpx transport (tests)
        """
        self.registry = registry
        self.auth = auth or DockerAuth()
        self.base_url = registry_base_url(registry, insecure)

        self.client = httpx.Client(
            timeout=httpx.Timeout(connect=5.0, read=60.0, write=30.0, pool=5.0),
            follow_redirects=True,
            verify=not insecure,
            headers={"User-Agent": "rdp-cli/0.1.0"},
            transport=transport,
        )

        # Token cache: {service/scope: (token, expiry_timestamp)}
        self._token_cache: Dict[str, Tuple[str, float]] = {}

    def repository_path(self, repository: str) -> str:
        """Docker Hub keeps official images under ``library/``."""
        if self.registry in _DOCKER_HUB_ALIASES and "/" not in repository:
            return f"library/{repository}"
        return repository

    def get_manifest(self, repository: str, ref: str) -> Tuple[bytes, str]:
        """
        GET a manifest by tag or digest.

        Returns:
            (raw manifest bytes, media type)

        Raises:
            ResourceNotFoundError: If the manifest does not exist
            UnauthorizedError: If authentication fails
            ApiError, ClientError: For other registry errors
        """
        path = f"/v2/{self.repository_path(repository)}/manifests/{ref}"
        response = self._request("GET", path, headers={"Accept": ", ".join(ACCEPTED_MANIFEST_TYPES)})
        media_type = response.headers.get("Content-Type", "").split(";")[0].strip()
        if not media_type or media_type == "application/json":
            try:
                media_type = json.loads(response.content).get("mediaType", "")
            except (json.JSONDecodeError, AttributeError):
                media_type = ""
        return response.content, media_type

    def get_blob_bytes(self, repository: str, digest: str) -> bytes:
        """
        Fetch a blob by digest into memory (configs).

        Raises:
            DigestMismatchError: If the content does not match *digest*
        """
        path = f"/v2/{self.repository_path(repository)}/blobs/{digest}"
        data = self._request("GET", path).content
        actual = f"sha256:{hashlib.sha256(data).hexdigest()}"
        if actual != digest:
            raise DigestMismatchError(f"blob {digest} fetched with digest {actual}", expected=digest, actual=actual)
        return data

    def download_blob(self, repository: str, digest: str, out: BinaryIO) -> int:
        """
        Stream a blob into *out*, verifying its digest.

        Returns:
            Bytes written
        """
        path = f"/v2/{self.repository_path(repository)}/blobs/{digest}"
        url = urljoin(self.base_url, path)
        hasher = hashlib.sha256()
        written = 0
        headers = self._auth_headers(url)
        try:
            with self.client.stream("GET", url, headers=headers) as response:
                if response.status_code >= 300:
                    response.read()
                    raise self._error(path, response)
                for block in response.iter_bytes():
                    out.write(block)
                    hasher.update(block)
                    written += len(block)
        except httpx.TransportError as e:
            raise ClientError(url, e) from e

        actual = f"sha256:{hasher.hexdigest()}"
        if actual != digest:
            raise DigestMismatchError(f"blob {digest} fetched with digest {actual}", expected=digest, actual=actual)
        logger.debug(f"downloaded blob {digest} ({written} bytes) from {self.registry}")
        return written

    def _auth_headers(self, url: str) -> Dict[str, str]:
        # probe with HEAD so a streamed GET starts out authenticated
        response = self._request("HEAD", url, raise_errors=False)
        auth = response.request.headers.get("Authorization")
        return {"Authorization": auth} if auth else {}

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(httpx.TimeoutException),
        reraise=True,
    )
    def _send(self, method: str, url: str, headers: Dict[str, str]) -> httpx.Response:
        return self.client.request(method, url, headers=headers)

    def _request(self, method: str, path: str, headers: Optional[dict] = None,
                 raise_errors: bool = True) -> httpx.Response:
        """
        Make HTTP request with transparent Bearer token auth flow.

        Handles 401 responses by:
        1. Parsing WWW-Authenticate header for Bearer realm/service/scope
        2. Looking up credentials in Docker config
        3. Exchanging credentials for a Bearer token
        4. Retrying original request with Authorization header
        """
        url = urljoin(self.base_url, path)
        request_headers = dict(headers or {})

        try:
            response = self._send(method, url, request_headers)
            if response.status_code == 401:
                auth_header = response.headers.get("WWW-Authenticate", "")
                if auth_header.startswith("Bearer "):
                    token = self._handle_bearer_auth(auth_header)
                    if token:
                        request_headers["Authorization"] = f"Bearer {token}"
                        response = self._send(method, url, request_headers)
        except httpx.TransportError as e:
            raise ClientError(url, e) from e

        if raise_errors and response.status_code >= 300:
            raise self._error(path, response)
        return response

    @staticmethod
    def _error(path: str, response: httpx.Response) -> ApiError:
        if response.status_code == 404:
            return ResourceNotFoundError(path, response.text)
        if response.status_code in (401, 403):
            return UnauthorizedError(path, response.text)
        return ApiError(path, response.status_code, response.text)

    def _handle_bearer_auth(self, www_authenticate: str) -> Optional[str]:
        """
        Handle Bearer token authentication flow.

        Parses WWW-Authenticate header, gets credentials, exchanges for token.
        Anonymous token requests are made when no credentials are configured.
        """
        # Format: Bearer realm="...",service="...",scope="..."
        bearer_params = dict(re.findall(r'(\w+)="([^"]*)"', www_authenticate))

        realm = bearer_params.get("realm")
        service = bearer_params.get("service")
        scope = bearer_params.get("scope")
        if not realm:
            return None

        cache_key = f"{service or ''}:{scope or ''}"
        if cache_key in self._token_cache:
            token, expiry = self._token_cache[cache_key]
            if time.time() < expiry - 30:  # 30s buffer before expiry
                return token

        params = {k: v for k, v in (("service", service), ("scope", scope)) if v}
        creds = self.auth.get_credentials(self.registry)

        try:
            auth_response = self.client.get(realm, auth=creds, params=params)
        except httpx.TransportError as e:
            raise ClientError(realm, e) from e
        if auth_response.status_code >= 300:
            logger.warning(f"token exchange with {realm} failed: {auth_response.status_code}")
            return None

        token_data = auth_response.json()
        token = token_data.get("token") or token_data.get("access_token")
        if token:
            expires_in = token_data.get("expires_in", 3600)
            self._token_cache[cache_key] = (token, time.time() + expires_in)
        return token

    def close(self):
        """Close HTTP client."""
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
