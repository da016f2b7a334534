"""
Settings and configuration for the research-data platform CLI.

Centralizes configuration values and provides validation with fail-fast behavior.
Loads settings from environment variables when a command starts.
"""
from __future__ import annotations

import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

__all__ = ["Settings", "create_settings_from_env", "DEFAULT_CHUNK_SIZE"]

# Artifact content is split into fragments of this size unless told otherwise
DEFAULT_CHUNK_SIZE = 10_000_000


def default_layer_dir() -> str:
    return str(Path(tempfile.gettempdir()) / "rdp-cli" / "layers")


@dataclass(frozen=True)
class Settings:
    """
    Configuration settings for the platform client.

    API Settings:
        api_url: Base URL of the platform API (required)
        access_token: Bearer token sent with every request
        http_timeout_s: HTTP request timeout in seconds
        http_retry: Number of retries for GET and HEAD requests (0=no retry)
        insecure: Skip TLS certificate verification (local/dev deployments)

    Transfer Settings:
        chunk_size: Artifact upload fragment size in bytes (-1 disables chunking)
        layer_dir: Directory holding partially pulled package layers
        stall_retries: Zero-progress layer requests tolerated before giving up
        stall_delay_s: Pause between zero-progress layer requests
    """
    # API settings
    api_url: str
    access_token: Optional[str] = None
    http_timeout_s: float = 30.0
    http_retry: int = 2
    insecure: bool = False

    # Transfer settings
    chunk_size: int = DEFAULT_CHUNK_SIZE
    layer_dir: str = ""
    stall_retries: int = 4
    stall_delay_s: float = 10.0

    def __post_init__(self):
        """Validate settings on construction."""
        if not self.api_url:
            raise ValueError("api_url is required")

        url_pattern = r"^https?://[a-zA-Z0-9.-]+(?::[0-9]+)?(?:/.*)?$"
        if not re.match(url_pattern, self.api_url):
            raise ValueError(f"Invalid api_url format: {self.api_url}. Expected http(s)://host[:port][/path]")

        if self.http_timeout_s <= 0:
            raise ValueError(f"http_timeout_s must be positive, got {self.http_timeout_s}")

        if self.http_retry < 0:
            raise ValueError(f"http_retry must be non-negative, got {self.http_retry}")

        # any negative size means a single request, 0 is meaningless
        if self.chunk_size == 0:
            raise ValueError("chunk_size must be positive, or negative for no chunking, got 0")

        if self.stall_retries < 0:
            raise ValueError(f"stall_retries must be non-negative, got {self.stall_retries}")

        if self.stall_delay_s < 0:
            raise ValueError(f"stall_delay_s must be non-negative, got {self.stall_delay_s}")

        if not self.layer_dir:
            # frozen dataclass, so bypass __setattr__ for the computed default
            object.__setattr__(self, "layer_dir", default_layer_dir())

    @property
    def base_url(self) -> str:
        """API URL without a trailing slash."""
        return self.api_url.rstrip("/")


def create_settings_from_env() -> Settings:
    """
    Load settings from environment variables.

    Environment Variables:
        - RDP_URL (required)
        - RDP_ACCESS_TOKEN (optional)
        - RDP_HTTP_TIMEOUT (default: 30.0)
        - RDP_HTTP_RETRY (default: 2)
        - RDP_INSECURE (default: false)
        - RDP_CHUNK_SIZE (default: 10000000)
        - RDP_LAYER_DIR (default: <tmp>/rdp-cli/layers)
        - RDP_STALL_RETRIES (default: 4)
        - RDP_STALL_DELAY (default: 10.0)

    Returns:
        Settings object with validated configuration

    Raises:
        ValueError: If configuration is invalid or required values missing

    Note:
        Creates a fresh Settings instance every time (no caching).
    """
    def str_to_bool(value: str) -> bool:
        return value.lower() in ('true', '1', 'yes', 'on')

    def get_float(key: str, default: float) -> float:
        value = os.getenv(key)
        return float(value) if value else default

    def get_int(key: str, default: int) -> int:
        value = os.getenv(key)
        return int(value) if value else default

    api_url = os.getenv("RDP_URL")
    if not api_url:
        raise ValueError("RDP_URL environment variable is required")

    return Settings(
        api_url=api_url,
        access_token=os.getenv("RDP_ACCESS_TOKEN") or None,
        http_timeout_s=get_float("RDP_HTTP_TIMEOUT", 30.0),
        http_retry=get_int("RDP_HTTP_RETRY", 2),
        insecure=str_to_bool(os.getenv("RDP_INSECURE", "false")),
        chunk_size=get_int("RDP_CHUNK_SIZE", DEFAULT_CHUNK_SIZE),
        layer_dir=os.getenv("RDP_LAYER_DIR", ""),
        stall_retries=get_int("RDP_STALL_RETRIES", 4),
        stall_delay_s=get_float("RDP_STALL_DELAY", 10.0),
    )
