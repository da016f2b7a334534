"""
Response payload wrapper.

A Payload is the fully-read body of a successful API call together with its
status code and headers. Transfer code reads protocol headers such as
``Upload-Offset`` from it, and command code decodes the body into models.
"""
from __future__ import annotations

import json
from typing import Any, Mapping, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel

M = TypeVar("M", bound=BaseModel)

__all__ = ["Payload"]


class Payload:
    """Buffered API response."""

    def __init__(self, status_code: int, headers: Optional[Mapping[str, str]] = None, content: bytes = b""):
        self.status_code = status_code
        self.headers = httpx.Headers(headers or {})
        self.content = content

    @classmethod
    def from_response(cls, response: httpx.Response) -> Payload:
        return cls(response.status_code, response.headers, response.content)

    def header(self, key: str) -> str:
        """Header value, or empty string when absent (case-insensitive lookup)."""
        return self.headers.get(key, "")

    def is_empty(self) -> bool:
        return not self.content

    def as_bytes(self) -> bytes:
        return self.content

    def as_json(self) -> Any:
        """
        Decode the body as JSON.

        Returns:
            Decoded value, or None for an empty body

        Raises:
            ValueError: If the body is not valid JSON
        """
        if not self.content:
            return None
        try:
            return json.loads(self.content)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in response body: {e}") from e

    def as_type(self, model: Type[M]) -> M:
        """Validate the JSON body into *model*; an empty body validates as ``{}``."""
        data = self.as_json()
        return model.model_validate(data if data is not None else {})

    def __repr__(self) -> str:
        return f"Payload(status_code={self.status_code}, length={len(self.content)})"
