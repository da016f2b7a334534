"""
Package push: content-addressed blob upload to the platform.

An image is pushed as its layers, then its config, then its manifest. Config
and manifest go up in a single POST each. A layer is first probed with an
empty POST; the server either reports the blob as already mounted (nothing
more to send) or hands out an opaque ``location`` token. The layer is then
sent in fixed-size PATCH chunks, each response handing back the location for
the next chunk, and finally committed with an empty PUT.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional
from urllib.parse import urlencode

from ..adapter import RestAdapter
from ..errors import AlreadyExistsError, ApiError, ClientError, PackageExistsError, ProtocolError, TransferError
from ..models import PatchResponse, PushResponse, sha256_digest, short_digest
from ..transfer import NullProgress, ProgressFactory, read_full
from .sources import ImageSource, LayerBlob
from .tags import ImageTag

__all__ = [
    "PACKAGES_PATH",
    "LAYER_CHUNK_SIZE",
    "BlobState",
    "BlobPushResult",
    "PushOptions",
    "PushResult",
    "package_path",
    "push_config",
    "push_layer",
    "push_manifest",
    "push_package",
]

logger = logging.getLogger(__name__)

PACKAGES_PATH = "/1/packages"
LAYER_CHUNK_SIZE = 10 * 1024 * 1024

MANIFEST_MEDIA_TYPE = "manifest"


class BlobState(str, Enum):
    """Lifecycle of one blob during a push."""
    NOT_STARTED = "not-started"
    UPLOADING = "uploading"
    MOUNTED = "mounted"
    COMMITTED = "committed"


@dataclass
class BlobPushResult:
    digest: str
    size: int
    media_type: str
    state: BlobState = BlobState.NOT_STARTED
    chunks: int = 0


@dataclass(frozen=True)
class PushOptions:
    """
    Per-invocation push options.

    Attributes:
        force: Overwrite an existing tag
        chunk_size: Layer PATCH size in bytes
        progress: Factory for per-layer progress sinks
    """
    force: bool = False
    chunk_size: int = LAYER_CHUNK_SIZE
    progress: ProgressFactory = NullProgress

    def __post_init__(self):
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")


@dataclass
class PushResult:
    tag: str
    manifest_digest: str = ""
    blobs: List[BlobPushResult] = field(default_factory=list)

    @property
    def mounted(self) -> List[BlobPushResult]:
        return [b for b in self.blobs if b.state is BlobState.MOUNTED]

    @property
    def committed(self) -> List[BlobPushResult]:
        return [b for b in self.blobs if b.state is BlobState.COMMITTED]


def package_path(endpoint: str, **params) -> str:
    """Package service path with encoded query parameters (booleans as true/false)."""
    query = {k: (str(v).lower() if isinstance(v, bool) else str(v)) for k, v in params.items()}
    return f"{PACKAGES_PATH}/{endpoint}?{urlencode(query)}"


def _transfer_error(action: str, tag: ImageTag, digest: str, size: int, error: Exception,
                    force: bool) -> Exception:
    """Conflicts become PackageExistsError; everything else keeps digest and size for diagnostics."""
    if isinstance(error, AlreadyExistsError) and not force:
        return PackageExistsError(tag.repo_tag)
    return TransferError(f"failed to {action} {short_digest(digest)}, {size} bytes, error: {error}",
                         digest=digest, size=size)


def push_config(adapter: RestAdapter, blob: LayerBlob, tag: ImageTag, options: PushOptions) -> BlobPushResult:
    """Push the image config in one POST."""
    result = BlobPushResult(blob.digest, blob.size, blob.media_type)
    path = package_path("push", force=options.force, tag=tag.repo_tag, total=blob.size, type="config",
                        digest=blob.digest)
    with blob.open() as f:
        data = f.read()

    result.state = BlobState.UPLOADING
    try:
        adapter.post(path, body=data, length=len(data))
    except (ApiError, ClientError) as e:
        raise _transfer_error("push config", tag, blob.digest, blob.size, e, options.force) from e

    result.state = BlobState.COMMITTED
    logger.info(f"{short_digest(blob.digest)} {blob.size} bytes uploaded")
    return result


def push_layer(adapter: RestAdapter, blob: LayerBlob, tag: ImageTag, options: PushOptions) -> BlobPushResult:
    """
    Push one layer: probe, chunked PATCHes, commit.

    Raises:
        PackageExistsError: Tag exists and force is off
        ProtocolError: Server omitted a required location token
        TransferError: Any other failure, with digest and size
    """
    result = BlobPushResult(blob.digest, blob.size, blob.media_type)
    short = short_digest(blob.digest)

    probe_path = package_path("push", force=options.force, tag=tag.repo_tag, type="layer", digest=blob.digest)
    try:
        reply = adapter.post(probe_path).as_type(PushResponse)
    except (ApiError, ClientError) as e:
        raise _transfer_error("push layer", tag, blob.digest, blob.size, e, options.force) from e

    if reply.mounted:
        result.state = BlobState.MOUNTED
        logger.info(f"{short} {blob.size} bytes already exists")
        return result
    if not reply.location:
        raise ProtocolError("push layer", "expecting location response from push")

    result.state = BlobState.UPLOADING
    location = reply.location
    start = 0
    with blob.open() as f, options.progress(f"{short} uploading", blob.size) as progress:
        while True:
            data = read_full(f, options.chunk_size)
            if not data:
                break
            end = start + len(data)
            patch_path = package_path("blob", tag=tag.repo_tag, digest=blob.digest, total=blob.size,
                                      location=location, start=start, end=end)
            try:
                patched = adapter.patch(patch_path, body=data, length=len(data),
                                        headers={"Content-Type": "application/octet-stream"}).as_type(PatchResponse)
            except (ApiError, ClientError) as e:
                raise _transfer_error("patch layer", tag, blob.digest, blob.size, e, options.force) from e
            if not patched.location:
                raise ProtocolError("patch layer", "expecting location from patch response")

            location = patched.location
            result.chunks += 1
            progress.advance(len(data))
            logger.debug(f"{short} sent bytes [{start}, {end}) of {blob.size}")
            start = end

    if start != blob.size:
        raise TransferError(f"layer {short} produced {start} bytes, expected {blob.size}",
                            digest=blob.digest, size=blob.size)

    commit_path = package_path("blob", tag=tag.repo_tag, digest=blob.digest, location=location)
    try:
        adapter.put(commit_path)
    except (ApiError, ClientError) as e:
        raise _transfer_error("commit layer", tag, blob.digest, blob.size, e, options.force) from e

    result.state = BlobState.COMMITTED
    logger.info(f"{short} {blob.size} bytes uploaded in {result.chunks} chunks")
    return result


def push_manifest(adapter: RestAdapter, raw_manifest: bytes, tag: ImageTag, options: PushOptions) -> BlobPushResult:
    """Push the manifest, which makes the tag visible."""
    digest = sha256_digest(raw_manifest)
    result = BlobPushResult(digest, len(raw_manifest), MANIFEST_MEDIA_TYPE)
    path = package_path("push", force=options.force, tag=tag.repo_tag, total=len(raw_manifest), type="manifest",
                        digest=digest)

    result.state = BlobState.UPLOADING
    try:
        reply = adapter.post(path, body=raw_manifest, length=len(raw_manifest)).as_type(PushResponse)
    except (ApiError, ClientError) as e:
        raise _transfer_error("push manifest", tag, digest, len(raw_manifest), e, options.force) from e

    if reply.digest:
        result.digest = reply.digest
    result.state = BlobState.COMMITTED
    logger.info(f"{tag.repo_tag} pushed as {result.digest}")
    return result


def push_package(adapter: RestAdapter, source: ImageSource, tag: ImageTag,
                 options: Optional[PushOptions] = None) -> PushResult:
    """
    Push an image to the package service under *tag*.

    Order: every layer in manifest order, then the config, then the manifest.

    Returns:
        PushResult with one entry per blob, manifest last
    """
    options = options or PushOptions()
    result = PushResult(tag=tag.repo_tag)
    logger.info(f"pushing {tag} (force={options.force})")

    for blob in source.layers():
        result.blobs.append(push_layer(adapter, blob, tag, options))
    result.blobs.append(push_config(adapter, source.config_blob(), tag, options))

    manifest = push_manifest(adapter, source.raw_manifest(), tag, options)
    result.blobs.append(manifest)
    result.manifest_digest = manifest.digest
    return result
