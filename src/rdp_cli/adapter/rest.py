"""
REST adapter for the platform API.

Thin HTTP layer the rest of the client is built on. It knows how to reach the
deployment, attach credentials, retry idempotent reads,
and turn error responses into the typed errors from ``rdp_cli.errors``. It
does not know anything about artifacts or packages.
"""
from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, Optional, TypeVar, Union

import httpx
from tenacity import (
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from ..errors import (
    AlreadyExistsError,
    ApiError,
    ClientError,
    ResourceNotFoundError,
    UnauthorizedError,
)
from ..settings import Settings
from .payload import Payload

__all__ = ["RestAdapter", "Body", "error_for_response", "RETRYABLE_STATUS_CODES", "IDEMPOTENT_METHODS"]

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Request bodies: nothing, an in-memory buffer, or a byte iterator with a known length
Body = Union[None, bytes, Iterable[bytes]]

RETRYABLE_STATUS_CODES = frozenset({408, 410, 425})

# Writes are never replayed: a lost reply may hide a write the server kept
IDEMPOTENT_METHODS = frozenset({"GET", "HEAD"})

# Servers signal a duplicate push in the error text rather than with a status
_ALREADY_CREATED_MARKER = "already created"


def error_for_response(path: str, status_code: int, body: str) -> ApiError:
    """
    Map an error response onto the error hierarchy.

    Args:
        path: Request path (for diagnostics)
        status_code: HTTP status code (>= 300)
        body: Response body text

    Returns:
        The most specific ApiError subclass for the response
    """
    if status_code == 404:
        return ResourceNotFoundError(path, body)
    if status_code == 401:
        return UnauthorizedError(path, body)
    if status_code == 409 or _ALREADY_CREATED_MARKER in body:
        return AlreadyExistsError(path, status_code, body)
    return ApiError(path, status_code, body)


def _is_retryable_status(response: httpx.Response) -> bool:
    return response.status_code >= 500 or response.status_code in RETRYABLE_STATUS_CODES


class RestAdapter:
    """
    HTTP client for the platform REST API.

    GET and HEAD requests are retried with exponential backoff on transport
    errors and retryable statuses. Every write (POST, PUT, PATCH, DELETE) is
    sent exactly once and its failure is fatal to the operation; a failed
    chunk upload is resumed by the caller from the server-reported offset.
    """

    def __init__(self, settings: Settings, transport: Optional[httpx.BaseTransport] = None,
                 retry_wait=None):
        """
        Initialize REST adapter.

        Args:
            settings: Client settings (URL, token, timeouts, retry count)
            transport: Optional httpx transport (tests inject a MockTransport)
            retry_wait: Optional tenacity wait strategy overriding the backoff
        """
        self.settings = settings
        self._retry_wait = retry_wait or wait_exponential(multiplier=0.2, min=0.2, max=10)

        headers = {"Cache-Control": "no-cache", "User-Agent": "rdp-cli/0.1.0"}
        if settings.access_token:
            headers["Authorization"] = f"Bearer {settings.access_token}"

        self.client = httpx.Client(
            base_url=settings.base_url,
            timeout=httpx.Timeout(settings.http_timeout_s, connect=5.0),
            follow_redirects=True,
            verify=not settings.insecure,
            headers=headers,
            transport=transport,
        )

    # Verbs

    def head(self, path: str, headers: Optional[Dict[str, str]] = None) -> Payload:
        return self.connect("HEAD", path, headers=headers)

    def get(self, path: str, headers: Optional[Dict[str, str]] = None) -> Payload:
        return self.connect("GET", path, headers=headers)

    def post(self, path: str, body: Body = None, length: int = -1,
             headers: Optional[Dict[str, str]] = None) -> Payload:
        return self.connect("POST", path, body=body, length=length, headers=headers)

    def put(self, path: str, body: Body = None, length: int = -1,
            headers: Optional[Dict[str, str]] = None) -> Payload:
        return self.connect("PUT", path, body=body, length=length, headers=headers)

    def patch(self, path: str, body: Body = None, length: int = -1,
              headers: Optional[Dict[str, str]] = None) -> Payload:
        return self.connect("PATCH", path, body=body, length=length, headers=headers)

    def delete(self, path: str) -> Payload:
        return self.connect("DELETE", path)

    def get_with_handler(self, path: str, handler: Callable[[httpx.Response], T],
                         headers: Optional[Dict[str, str]] = None) -> T:
        """
        Stream a GET response into *handler* without buffering it.

        The handler receives the raw response regardless of status and is
        responsible for status handling; its return value is passed through.

        Raises:
            ClientError: On transport failure
        """
        logger.debug(f"calling api GET {path} (streaming)")
        try:
            with self.client.stream("GET", path, headers=headers) as response:
                logger.debug(f"streaming reply {response.status_code} for {path}")
                return handler(response)
        except httpx.TransportError as e:
            logger.warning(f"HTTP request failed: GET {path}: {e}")
            raise ClientError(path, e) from e

    # Plumbing

    def connect(self, method: str, path: str, *, body: Body = None, length: int = -1,
                headers: Optional[Dict[str, str]] = None) -> Payload:
        """
        Issue one API call and return its buffered payload.

        Args:
            method: HTTP method
            path: Path relative to the API URL, query string included
            body: Request body
            length: Body length in bytes (-1 if unknown); sent as Content-Length
            headers: Extra request headers

        Raises:
            ClientError: On transport failure
            ApiError: (or a subclass) on a non-2xx response
        """
        request_headers = self._build_headers(body, length, headers)

        def send() -> httpx.Response:
            logger.debug(f"calling api {method} {path}")
            return self.client.request(method, path, content=body, headers=request_headers)

        try:
            if method in IDEMPOTENT_METHODS and self.settings.http_retry > 0:
                response = self._retrying()(send)
            else:
                response = send()
        except httpx.TransportError as e:
            logger.warning(f"HTTP request failed: {method} {path}: {e}")
            raise ClientError(path, e) from e

        logger.debug(f"reply {response.status_code} for {method} {path} ({len(response.content)} bytes)")
        if response.status_code >= 300:
            logger.warning(f"HTTP response {response.status_code} for {method} {path}")
            raise error_for_response(path, response.status_code, response.text)
        return Payload.from_response(response)

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.settings.http_retry + 1),
            wait=self._retry_wait,
            retry=retry_if_exception_type(httpx.TransportError) | retry_if_result(_is_retryable_status),
            before_sleep=lambda state: logger.warning(
                f"retrying request (attempt {state.attempt_number} of {self.settings.http_retry + 1})"
            ),
            # hand back the last response (or re-raise the last error) once attempts run out
            retry_error_callback=lambda state: state.outcome.result(),
        )

    @staticmethod
    def _build_headers(body: Body, length: int, headers: Optional[Dict[str, str]]) -> Dict[str, str]:
        request_headers = dict(headers or {})
        has_body = length > 0 or (isinstance(body, (bytes, bytearray)) and len(body) > 0)
        if has_body:
            request_headers.setdefault("Content-Type", "application/json")
        if length >= 0 and body is not None and not isinstance(body, (bytes, bytearray)):
            request_headers["Content-Length"] = str(length)
        return request_headers

    def get_path(self, url: str) -> str:
        """
        Strip the deployment URL from an absolute URL returned by the API.

        Raises:
            ValueError: If *url* does not belong to this deployment
        """
        base = self.settings.base_url
        if url.startswith(base):
            return url[len(base):] or "/"
        raise ValueError(f"url '{url}' is not for this deployment '{base}'")

    def close(self):
        """Close HTTP client."""
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
