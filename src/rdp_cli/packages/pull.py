"""
Package pull: content-addressed blob download and local image assembly.

The manifest is fetched first. Layers are then pulled in reverse manifest
order, each by repeated offset GETs appended to a local buffer file until the
declared size is reached. A request that returns no bytes counts as a stall:
the loop waits and tries again, giving up after a bounded number of stalls in
a row. Once as many layers as the manifest lists have been processed the
config is fetched, the image is written to the local store, and the layer
buffers are removed.
"""
from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

import httpx

from ..adapter import RestAdapter, error_for_response
from ..errors import DigestMismatchError, MaxRetriesError, ProtocolError, TransferCancelled
from ..models import DOCKER_LAYER_GZIP, Descriptor, PackageList, sha256_digest, short_digest
from ..path_safety import buffer_path
from ..settings import default_layer_dir
from ..transfer import NullProgress, ProgressFactory
from .image import AssembledImage, LayerFile
from .push import package_path
from .store import LocalImageStore
from .tags import ImageTag

__all__ = [
    "PullOptions",
    "PullResult",
    "LayerBuffer",
    "pull_manifest",
    "pull_config",
    "retrieve_full_layer",
    "pull_package",
    "list_packages",
    "remove_package",
]

logger = logging.getLogger(__name__)

_HASH_BLOCK = 1024 * 1024


@dataclass(frozen=True)
class PullOptions:
    """
    Per-invocation pull options.

    Attributes:
        max_retries: Consecutive zero-byte responses tolerated per layer
        delay_s: Wait after each zero-byte response
        cancel: Event that aborts a stall wait when set
        layer_dir: Directory for layer buffers (default under the temp dir)
        resume: Continue existing partial buffers instead of truncating them
        progress: Factory for per-layer progress sinks
    """
    max_retries: int = 4
    delay_s: float = 10.0
    cancel: Optional[threading.Event] = None
    layer_dir: Optional[str] = None
    resume: bool = False
    progress: ProgressFactory = NullProgress

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be non-negative, got {self.max_retries}")
        if self.delay_s < 0:
            raise ValueError(f"delay_s must be non-negative, got {self.delay_s}")


@dataclass
class PullResult:
    tag: str
    image_id: str = ""
    manifest_digest: str = ""
    config_digest: str = ""
    # digests in the order they were pulled
    layers: List[str] = field(default_factory=list)


@dataclass
class LayerBuffer:
    """
    Local buffer for one layer being pulled.

    A session record mapping a content reference to the file holding its
    bytes and how many of them have been written. The file is opened for
    each response and closed after it, so its on-disk state is always
    flushed between requests.
    """
    ref: str
    path: Path
    bytes_written: int = 0

    @classmethod
    def open(cls, layer_dir: str, ref: str, resume: bool = False) -> LayerBuffer:
        """
        Create the buffer for *ref*; truncates unless *resume* finds a partial file.
        """
        path = buffer_path(layer_dir, ref)
        path.parent.mkdir(parents=True, exist_ok=True, mode=0o750)
        if resume and path.exists():
            written = path.stat().st_size
            logger.info(f"resuming {ref} from {written} bytes")
            return cls(ref, path, written)
        path.write_bytes(b"")
        return cls(ref, path, 0)

    def append(self, blocks: Iterable[bytes]) -> int:
        """Append *blocks* to the buffer; returns the number of bytes added."""
        added = 0
        with open(self.path, "ab") as f:
            for block in blocks:
                f.write(block)
                added += len(block)
        self.bytes_written += added
        return added

    def truncate(self) -> None:
        self.path.write_bytes(b"")
        self.bytes_written = 0

    def digest(self) -> str:
        hasher = hashlib.sha256()
        with open(self.path, "rb") as f:
            for block in iter(lambda: f.read(_HASH_BLOCK), b""):
                hasher.update(block)
        return f"sha256:{hasher.hexdigest()}"


def _read_ok(path: str, response: httpx.Response) -> bytes:
    data = response.read()
    if response.status_code != 200:
        raise error_for_response(path, response.status_code, response.text)
    return data


def pull_manifest(adapter: RestAdapter, tag: ImageTag) -> bytes:
    """GET the raw manifest for *tag*."""
    path = package_path("pull", ref=str(tag), type="manifest")
    raw = adapter.get_with_handler(path, lambda response: _read_ok(path, response))
    if not raw:
        raise ProtocolError("pull manifest", f"no manifest returned for {tag}")
    return raw


def pull_config(adapter: RestAdapter, tag: ImageTag, expected_digest: Optional[str] = None) -> bytes:
    """
    GET the raw config for *tag*.

    Raises:
        ProtocolError: If the server returns no config
        DigestMismatchError: If the config does not hash to *expected_digest*
    """
    path = package_path("pull", type="config", ref=str(tag))
    raw = adapter.get_with_handler(path, lambda response: _read_ok(path, response))
    if not raw:
        raise ProtocolError("pull config", f"no config returned for {tag}")
    if expected_digest:
        actual = sha256_digest(raw)
        if actual != expected_digest:
            raise DigestMismatchError(f"config for {tag} has digest {actual}, manifest says {expected_digest}",
                                      expected=expected_digest, actual=actual)
    return raw


def _pull_layer_chunk(adapter: RestAdapter, buffer: LayerBuffer) -> int:
    path = package_path("pull", type="layer", ref=buffer.ref, offset=buffer.bytes_written)

    def handler(response: httpx.Response) -> int:
        if response.status_code != 200:
            response.read()
            raise error_for_response(path, response.status_code, response.text)
        return buffer.append(response.iter_bytes())

    return adapter.get_with_handler(path, handler)


def retrieve_full_layer(adapter: RestAdapter, ref: str, desc: Descriptor, options: PullOptions,
                        layer_dir: str) -> LayerFile:
    """
    Pull one layer into its local buffer until the declared size is reached.

    Any response that adds bytes resets the stall counter. A response with
    no bytes increments it; past ``max_retries`` the pull fails, otherwise
    the loop waits ``delay_s``. Setting ``options.cancel`` aborts the wait,
    and is also checked before every request.

    Raises:
        MaxRetriesError: Too many zero-byte responses in a row
        TransferCancelled: Cancel event set during a stall wait
        DigestMismatchError: Completed buffer does not hash to the layer digest
        ApiError: Non-200 response
    """
    cancel = options.cancel or threading.Event()
    short = short_digest(desc.digest)
    buffer = LayerBuffer.open(layer_dir, ref, resume=options.resume)
    if buffer.bytes_written > desc.size:
        logger.warning(f"{short} buffer holds {buffer.bytes_written} of {desc.size} bytes, restarting")
        buffer.truncate()

    retries = 0
    with options.progress(f"{short} pulling", desc.size) as progress:
        progress.advance(buffer.bytes_written)
        while buffer.bytes_written < desc.size:
            before = buffer.bytes_written
            if cancel.is_set():
                raise TransferCancelled(f"pull of {ref} cancelled at offset {before}")
            received = _pull_layer_chunk(adapter, buffer)
            if received > 0:
                retries = 0
                progress.advance(received)
                continue

            retries += 1
            if retries > options.max_retries:
                raise MaxRetriesError(ref, options.max_retries, before)
            logger.warning(f"{short} no bytes at offset {before}, retry {retries} of {options.max_retries} "
                           f"in {options.delay_s}s")
            if cancel.wait(options.delay_s):
                raise TransferCancelled(f"pull of {ref} cancelled at offset {before}")

    actual = buffer.digest()
    if actual != desc.digest:
        raise DigestMismatchError(f"layer {ref} has digest {actual}", expected=desc.digest, actual=actual)

    logger.info(f"{short} {desc.size} bytes pulled")
    return LayerFile(desc.digest, buffer.bytes_written, buffer.path, desc.media_type or DOCKER_LAYER_GZIP)


def pull_package(adapter: RestAdapter, tag: ImageTag, store: LocalImageStore,
                 options: Optional[PullOptions] = None) -> PullResult:
    """
    Pull *tag* from the package service and write it to *store*.

    Layers are pulled last to first. The config is requested once the number
    of processed layers equals the manifest's layer count; a layer whose
    digest repeats an earlier one is counted without being downloaded again.

    Returns:
        PullResult with the image ID and pull order
    """
    options = options or PullOptions()
    layer_dir = options.layer_dir or default_layer_dir()
    result = PullResult(tag=str(tag))
    logger.info(f"pulling {tag}")

    raw_manifest = pull_manifest(adapter, tag)
    image = AssembledImage(raw_manifest)
    result.manifest_digest = sha256_digest(raw_manifest)
    descriptors = image.manifest.layers
    expected = len(descriptors)

    processed = 0
    for desc in reversed(descriptors):
        if not image.has_layer(desc.digest):
            ref = tag.digest_ref(desc.digest)
            image.add_layer(retrieve_full_layer(adapter, ref, desc, options, layer_dir))
        result.layers.append(desc.digest)
        processed += 1
        if processed == expected:
            image.raw_config = pull_config(adapter, tag, image.config_digest)

    if expected == 0:
        image.raw_config = pull_config(adapter, tag, image.config_digest)

    result.config_digest = image.config_digest
    result.image_id = store.write(image, tag)
    logger.info(f"{tag} image pulled")

    for layer in image.layers:
        layer.path.unlink(missing_ok=True)
    return result


def list_packages(adapter: RestAdapter, tag: Optional[ImageTag] = None) -> PackageList:
    """List package tags, optionally narrowed to *tag*."""
    return adapter.get(package_path("list", tag=str(tag) if tag else "")).as_type(PackageList)


def remove_package(adapter: RestAdapter, tag: ImageTag) -> None:
    """Delete the package *tag*."""
    adapter.delete(package_path("remove", tag=str(tag)))
    logger.info(f"removed package {tag}")
