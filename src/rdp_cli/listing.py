"""
Shared list-request helper.

Every list endpoint on the platform accepts the same paging, filtering and
ordering query parameters; ``build_list_path`` encodes them onto a base path.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

__all__ = ["ListRequest", "build_list_path"]


@dataclass(frozen=True)
class ListRequest:
    """
    Paging and filter options for a list call.

    Attributes:
        limit: Maximum number of records per page (0 = server default)
        page: Opaque page token returned by a previous list call
        filter: Server-side filter expression
        order_by: Field to order by
        order_desc: Reverse ordering
        at_time: Return records as they were at this time
    """
    limit: int = 0
    page: Optional[str] = None
    filter: Optional[str] = None
    order_by: Optional[str] = None
    order_desc: bool = False
    at_time: Optional[datetime] = None

    def __post_init__(self):
        if self.limit < 0:
            raise ValueError(f"limit must be non-negative, got {self.limit}")


def _rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat(timespec="seconds").replace("+00:00", "Z")


def build_list_path(req: ListRequest, base_path: str) -> str:
    """
    Add list query parameters to *base_path*.

    Query parameters already present on *base_path* are kept; parameters set
    on *req* override them.

    Args:
        req: List options
        base_path: API path, e.g. ``/1/artifacts``

    Returns:
        Path with encoded query string
    """
    parts = urlsplit(base_path)
    query = dict(parse_qsl(parts.query))

    if req.limit > 0:
        query["limit"] = str(req.limit)
    if req.page is not None:
        query["page"] = req.page
    if req.filter is not None:
        query["filter"] = req.filter
    if req.order_by is not None:
        query["order-by"] = req.order_by
    if req.order_desc:
        query["order-desc"] = "true"
    if req.at_time is not None:
        query["at-time"] = _rfc3339(req.at_time)

    # sorted so equal requests produce equal paths
    encoded = urlencode(sorted(query.items()))
    return urlunsplit(("", "", parts.path, encoded, ""))
