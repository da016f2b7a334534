"""
Artifact records and resumable content upload.

Artifact content is uploaded with a TUS-style protocol: the record is created
first, then the content is PATCHed to the record's content URL in fixed-size
fragments, each carrying the byte offset it starts at. An interrupted upload
is resumed by asking the server (HEAD) how many bytes it already holds and
continuing from there. Nothing is retried in-process; resuming is re-running
the upload against the server-reported offset.

Records can also carry schema-tagged JSON metadata and belong to named
collections; both live under the record path.
"""
from __future__ import annotations

import base64
import json
import logging
import mimetypes
import re
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Dict, Optional
from urllib.parse import quote

import httpx

from .adapter import RestAdapter, error_for_response
from .errors import ProtocolError, TransferError, UploadOffsetError
from .listing import ListRequest, build_list_path
from .models import ArtifactList, ArtifactRecord
from .settings import DEFAULT_CHUNK_SIZE
from .transfer import LimitedReader, NullProgress, ProgressFactory, ProgressReader, read_full, skip_to_offset

__all__ = [
    "ARTIFACTS_PATH",
    "CreateArtifactRequest",
    "UploadOptions",
    "UploadResult",
    "artifact_path",
    "list_artifacts",
    "read_artifact",
    "create_artifact",
    "content_path",
    "upload_artifact",
    "parse_upload_offset",
    "probe_upload_offset",
    "resume_upload",
    "download_artifact",
    "guess_content_type",
    "add_artifact_metadata",
    "add_artifact_to_collection",
    "remove_artifact_from_collection",
]

logger = logging.getLogger(__name__)

ARTIFACTS_PATH = "/1/artifacts"
TUS_VERSION = "1.0.0"
OFFSET_CONTENT_TYPE = "application/offset+octet-stream"

_DECIMAL = re.compile(r"^[0-9]+$")

# Suffixes the mimetypes registry does not know about
_EXTRA_CONTENT_TYPES = {".nc": "application/netcdf"}


@dataclass(frozen=True)
class CreateArtifactRequest:
    """
    Attributes of a new artifact record.

    Attributes:
        name: Human friendly name (sent base64 encoded)
        collection: Collection to add the artifact to
        policy: Access policy URN
        meta: Extra key/value metadata sent as TUS ``Upload-Metadata``
    """
    name: Optional[str] = None
    collection: Optional[str] = None
    policy: Optional[str] = None
    meta: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class UploadOptions:
    """
    Per-invocation upload options.

    Attributes:
        chunk_size: Fragment size in bytes; any negative value sends everything in one request
        progress: Factory for the progress sink
    """
    chunk_size: int = DEFAULT_CHUNK_SIZE
    progress: ProgressFactory = NullProgress

    def __post_init__(self):
        if self.chunk_size == 0:
            raise ValueError("chunk_size must be positive, or negative for no chunking, got 0")


@dataclass(frozen=True)
class UploadResult:
    """
    Outcome of an upload or resume.

    Attributes:
        path: Content path the bytes were sent to
        start_offset: Offset the transfer started at
        offset: Offset reached when the transfer finished
        requests: Number of PATCH requests issued
        already_complete: True when a resume found nothing left to send
    """
    path: str
    start_offset: int
    offset: int
    requests: int
    already_complete: bool = False

    @property
    def bytes_sent(self) -> int:
        return self.offset - self.start_offset


def artifact_path(artifact_id: Optional[str] = None) -> str:
    return f"{ARTIFACTS_PATH}/{artifact_id}" if artifact_id else ARTIFACTS_PATH


def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def guess_content_type(filename: str) -> Optional[str]:
    """Best-effort content type from a file name; None when unknown."""
    for suffix, content_type in _EXTRA_CONTENT_TYPES.items():
        if filename.endswith(suffix):
            return content_type
    content_type, _ = mimetypes.guess_type(filename)
    return content_type


# Records

def list_artifacts(adapter: RestAdapter, req: ListRequest) -> ArtifactList:
    """List one page of artifacts."""
    return adapter.get(build_list_path(req, ARTIFACTS_PATH)).as_type(ArtifactList)


def read_artifact(adapter: RestAdapter, artifact_id: str) -> ArtifactRecord:
    """Fetch an artifact record, including upload status and content link."""
    return adapter.get(artifact_path(artifact_id)).as_type(ArtifactRecord)


def create_artifact(adapter: RestAdapter, req: CreateArtifactRequest, content_type: str,
                    size: int) -> ArtifactRecord:
    """
    Create an artifact record without content.

    The declared type and size travel in ``X-Content-*`` headers; the content
    itself is uploaded afterwards to the record's ``data.self`` URL.

    Args:
        adapter: REST adapter
        req: Record attributes
        content_type: MIME type of the content to come
        size: Content size in bytes (-1 if unknown)

    Returns:
        The created record
    """
    if not content_type:
        raise ValueError("content type is required")

    headers = {
        "X-Content-Type": content_type,
        "X-Content-Length": str(size),
    }
    if req.name:
        headers["X-Name"] = _b64(req.name)
    if req.collection:
        headers["X-Collection"] = req.collection
    if req.policy:
        headers["X-Policy"] = req.policy
    if req.meta:
        headers["Upload-Metadata"] = ",".join(f"{k} {_b64(v)}" for k, v in sorted(req.meta.items()))

    record = adapter.post(ARTIFACTS_PATH, headers=headers).as_type(ArtifactRecord)
    logger.info(f"created artifact {record.id}")
    return record


def content_path(adapter: RestAdapter, record: ArtifactRecord, step: str = "read artifact") -> str:
    """
    API path of the record's content endpoint.

    Raises:
        ProtocolError: If the record carries no content link
    """
    if record.data is None or not record.data.self_:
        raise ProtocolError(step, f"artifact '{record.id}' has no content link")
    return adapter.get_path(record.data.self_)


# Upload

def _chunk_headers(offset: int) -> Dict[str, str]:
    return {
        "Content-Type": OFFSET_CONTENT_TYPE,
        "Upload-Offset": str(offset),
        "Tus-Resumable": TUS_VERSION,
    }


def upload_artifact(adapter: RestAdapter, stream: BinaryIO, size: int, path: str, *,
                    offset: int = 0, options: Optional[UploadOptions] = None) -> UploadResult:
    """
    Upload content from *stream* to *path*, starting at *offset*.

    The stream is first advanced to *offset*. Each fragment is one PATCH of
    at most ``chunk_size`` bytes; the running offset advances by the bytes
    actually consumed from the stream. A size below zero switches to a
    deferred-length upload that declares the total once the stream ends.

    Args:
        adapter: REST adapter
        stream: Content source, positioned at byte 0 of the content
        size: Total content size (-1 if unknown)
        path: Content path from the artifact record
        offset: Bytes the server already holds
        options: Chunking and progress options

    Returns:
        UploadResult describing what was sent

    Raises:
        ClientError, ApiError: On the first failed PATCH; the caller resumes
        UploadOffsetError: If a deferred-length reply has a bad ``Upload-Offset``
        TransferError: If the stream ends before *size* bytes
    """
    options = options or UploadOptions()
    if offset < 0:
        raise ValueError(f"offset must be non-negative, got {offset}")
    if size >= 0 and offset > size:
        raise ValueError(f"offset {offset} is beyond content size {size}")

    skip_to_offset(stream, offset)

    if size < 0:
        return _upload_unknown_size(adapter, stream, path, offset, options)

    remaining = size - offset
    frag_size = remaining if options.chunk_size < 0 else options.chunk_size
    requests = 0

    with options.progress("... uploading file", remaining) as progress:
        source = ProgressReader(stream, progress)
        while remaining > 0:
            psize = min(remaining, frag_size)
            off = size - remaining
            chunk = LimitedReader(source, psize)
            adapter.patch(path, body=chunk, length=psize, headers=_chunk_headers(off))
            requests += 1
            if chunk.consumed == 0:
                raise TransferError(f"content ended at offset {off}, expected {size} bytes", size=size)
            remaining -= chunk.consumed
            logger.info(f"sent {chunk.consumed} bytes at offset {off} to {path}")

    return UploadResult(path=path, start_offset=offset, offset=size - remaining, requests=requests)


def _upload_unknown_size(adapter: RestAdapter, stream: BinaryIO, path: str, offset: int,
                         options: UploadOptions) -> UploadResult:
    # a fragment buffer is needed even when chunking is off
    frag_size = options.chunk_size if options.chunk_size > 0 else DEFAULT_CHUNK_SIZE
    off = offset
    requests = 0

    with options.progress("... uploading stream", None) as progress:
        source = ProgressReader(stream, progress)
        while True:
            headers = _chunk_headers(off)
            data = read_full(source, frag_size)
            if not data:
                # end of stream: declare the final length
                headers["Upload-Length"] = str(off)
                adapter.patch(path, body=None, length=0, headers=headers)
                requests += 1
                logger.info(f"declared length {off} for {path}")
                break

            headers["Upload-Defer-Length"] = "1"
            payload = adapter.patch(path, body=data, length=len(data), headers=headers)
            requests += 1
            expected = off + len(data)
            new_offset = parse_upload_offset(payload.header("Upload-Offset"))
            if new_offset != expected:
                raise UploadOffsetError(
                    f"unexpected 'Upload-Offset', expected {expected} but got {new_offset}",
                    value=str(new_offset),
                )
            off = new_offset
            logger.info(f"sent {len(data)} bytes at offset {expected - len(data)} to {path}")

    return UploadResult(path=path, start_offset=offset, offset=off, requests=requests)


# Resume

def parse_upload_offset(value: Optional[str]) -> int:
    """
    Parse an ``Upload-Offset`` header value.

    Raises:
        UploadOffsetError: ``missing=True`` for an absent header, otherwise
            carrying the value that is not a decimal integer
    """
    if value is None or value == "":
        raise UploadOffsetError("missing 'Upload-Offset' header", missing=True)
    if not _DECIMAL.match(value.strip()):
        raise UploadOffsetError(f"problems parsing 'Upload-Offset' in return header '{value}'", value=value)
    return int(value)


def probe_upload_offset(adapter: RestAdapter, path: str) -> int:
    """Ask the server how many bytes of the content it already holds."""
    payload = adapter.head(path, headers={"Tus-Resumable": TUS_VERSION})
    offset = parse_upload_offset(payload.header("Upload-Offset"))
    logger.debug(f"server holds {offset} bytes of {path}")
    return offset


def resume_upload(adapter: RestAdapter, artifact_id: str, stream: BinaryIO, size: int,
                  options: Optional[UploadOptions] = None) -> UploadResult:
    """
    Continue an interrupted upload from the server-reported offset.

    Returns an ``already_complete`` result without sending anything when the
    server already holds at least *size* bytes.
    """
    path = content_path(adapter, read_artifact(adapter, artifact_id))
    offset = probe_upload_offset(adapter, path)

    if size > 0 and offset >= size:
        logger.info(f"artifact '{artifact_id}' already fully uploaded")
        return UploadResult(path=path, start_offset=offset, offset=offset, requests=0, already_complete=True)

    return upload_artifact(adapter, stream, size, path, offset=offset, options=options)


# Download

def download_artifact(adapter: RestAdapter, artifact_id: str, out: BinaryIO,
                      progress: ProgressFactory = NullProgress) -> int:
    """
    Stream the artifact's content into *out*.

    Returns:
        Number of bytes written
    """
    path = content_path(adapter, read_artifact(adapter, artifact_id))

    def handler(response: httpx.Response) -> int:
        if response.status_code >= 300:
            response.read()
            raise error_for_response(path, response.status_code, response.text)
        length = response.headers.get("Content-Length")
        total = int(length) if length and length.isdigit() else None
        written = 0
        with progress("... downloading file", total) as sink:
            for block in response.iter_bytes():
                out.write(block)
                written += len(block)
                sink.advance(len(block))
        return written

    written = adapter.get_with_handler(path, handler)
    logger.info(f"downloaded {written} bytes of artifact '{artifact_id}'")
    return written


# Metadata and collections

_ASPECT_LABELS = {"metadata": "schema", "collections": "collection"}


def _aspect_path(artifact_id: str, kind: str, name: str) -> str:
    if not name:
        raise ValueError(f"{_ASPECT_LABELS[kind]} name is required")
    return f"{artifact_path(artifact_id)}/.{kind}/{quote(name, safe='')}"


def add_artifact_metadata(adapter: RestAdapter, artifact_id: str, schema: str, meta: bytes) -> Any:
    """
    Attach a metadata record to an artifact under *schema*.

    The record must be a JSON document; it is sent as is.

    Returns:
        The decoded reply, or None when the server sends no body

    Raises:
        ValueError: If *meta* is not valid JSON
    """
    path = _aspect_path(artifact_id, "metadata", schema)
    try:
        json.loads(meta)
    except ValueError as e:
        raise ValueError(f"metadata for schema '{schema}' is not valid JSON: {e}") from e

    payload = adapter.put(path, body=meta, headers={"Content-Type": "application/json"})
    logger.info(f"added '{schema}' metadata to artifact '{artifact_id}'")
    return payload.as_json()


def add_artifact_to_collection(adapter: RestAdapter, artifact_id: str, collection: str) -> Any:
    """Add an artifact to a named collection."""
    payload = adapter.put(_aspect_path(artifact_id, "collections", collection))
    logger.info(f"added artifact '{artifact_id}' to collection '{collection}'")
    return payload.as_json()


def remove_artifact_from_collection(adapter: RestAdapter, artifact_id: str, collection: str) -> None:
    adapter.delete(_aspect_path(artifact_id, "collections", collection))
    logger.info(f"removed artifact '{artifact_id}' from collection '{collection}'")
