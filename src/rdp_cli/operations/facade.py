"""
Operations Facade - Application service layer.

Provides a clean interface between the CLI and the transfer modules,
centralizing command orchestration and policy decisions (chunk sizes, stall
handling, image source selection) while keeping CLI commands thin and
testable.
"""
from __future__ import annotations

import logging
import sys
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Callable, Iterator, Optional, Tuple

from .. import artifacts
from ..adapter import RestAdapter
from ..artifacts import CreateArtifactRequest, UploadOptions, UploadResult
from ..listing import ListRequest
from ..models import ArtifactList, ArtifactRecord, PackageList
from ..packages import (
    ArchiveImageSource,
    DockerDaemonSource,
    DockerImageStore,
    ImageSource,
    ImageTag,
    LocalImageStore,
    PullOptions,
    PullResult,
    PushOptions,
    PushResult,
    RegistryImageSource,
    list_packages,
    pull_package,
    push_package,
    remove_package,
)
from ..settings import DEFAULT_CHUNK_SIZE
from ..transfer import NullProgress, ProgressFactory

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class OpsConfig:
    """
    Configuration for Operations facade.

    Centralizes policy decisions so they are not scattered across commands.
    """
    chunk_size: int = DEFAULT_CHUNK_SIZE    # Artifact upload fragment size (negative = single request)
    stall_retries: int = 4                  # Zero-byte layer responses tolerated in a row
    stall_delay_s: float = 10.0             # Wait after a zero-byte layer response
    layer_dir: Optional[str] = None         # Layer buffer directory
    insecure: bool = False                  # Plain HTTP / no TLS checks for source registries
    progress: ProgressFactory = NullProgress

    @classmethod
    def from_settings(cls, settings, progress: ProgressFactory = NullProgress) -> OpsConfig:
        return cls(
            chunk_size=settings.chunk_size,
            stall_retries=settings.stall_retries,
            stall_delay_s=settings.stall_delay_s,
            layer_dir=settings.layer_dir,
            insecure=settings.insecure,
            progress=progress,
        )


@contextmanager
def open_input(path: str) -> Iterator[Tuple[BinaryIO, int]]:
    """
    Open upload content; ``-`` is stdin.

    Yields:
        (stream, size) where size is -1 when it cannot be known up front
    """
    if path == "-":
        yield sys.stdin.buffer, -1
        return
    file_path = Path(path)
    if not file_path.is_file():
        raise ValueError(f"while opening data file '{path}' - not a file")
    with open(file_path, "rb") as f:
        yield f, file_path.stat().st_size


@contextmanager
def open_output(path: str) -> Iterator[BinaryIO]:
    """Open download destination; ``-`` is stdout."""
    if path == "-":
        yield sys.stdout.buffer
        return
    with open(Path(path), "wb") as f:
        yield f


def resolve_content_type(path: str, content_type: Optional[str]) -> str:
    """Explicit content type, else a guess from the file name."""
    if content_type:
        return content_type
    if path == "-":
        raise ValueError("Missing content type [-t] for content read from stdin")
    return artifacts.guess_content_type(path) or DEFAULT_CONTENT_TYPE


class Operations:
    """
    Application service facade for CLI operations.

    One method per CLI verb. The facade owns no state beyond its injected
    configuration and collaborators (adapter, image store, source factory),
    so tests can substitute fakes for the platform and the Docker daemon.
    Exceptions bubble up for central mapping to exit codes.
    """

    def __init__(self, config: OpsConfig, adapter: RestAdapter, *,
                 store: Optional[LocalImageStore] = None,
                 source_factory: Optional[Callable[[ImageTag, bool, Optional[str]], ImageSource]] = None):
        """
        Initialize Operations facade.

        Args:
            config: Configuration settings
            adapter: REST adapter for the platform API
            store: Local image store for pulls (Docker daemon if None)
            source_factory: Builds the push source from (tag, local, archive)
        """
        self.cfg = config
        self.adapter = adapter
        self._store = store
        self._source_factory = source_factory or self._default_source

    @property
    def store(self) -> LocalImageStore:
        if self._store is None:
            self._store = DockerImageStore()
        return self._store

    # Artifacts

    def list_artifacts(self, req: ListRequest) -> ArtifactList:
        return artifacts.list_artifacts(self.adapter, req)

    def read_artifact(self, artifact_id: str) -> ArtifactRecord:
        return artifacts.read_artifact(self.adapter, artifact_id)

    def create_artifact(self, req: CreateArtifactRequest, path: str, content_type: Optional[str] = None,
                        chunk_size: Optional[int] = None) -> Tuple[ArtifactRecord, UploadResult]:
        """
        Create an artifact record and upload its content.

        Returns:
            (created record, upload result)
        """
        content_type = resolve_content_type(path, content_type)
        options = self._upload_options(chunk_size)
        with open_input(path) as (stream, size):
            record = artifacts.create_artifact(self.adapter, req, content_type, size)
            content_path = artifacts.content_path(self.adapter, record, step="create artifact")
            result = artifacts.upload_artifact(self.adapter, stream, size, content_path, options=options)
        return record, result

    def upload_artifact(self, artifact_id: str, path: str, chunk_size: Optional[int] = None) -> UploadResult:
        """Resume uploading content for an existing artifact."""
        options = self._upload_options(chunk_size)
        with open_input(path) as (stream, size):
            return artifacts.resume_upload(self.adapter, artifact_id, stream, size, options)

    def download_artifact(self, artifact_id: str, out_path: str) -> int:
        with open_output(out_path) as out:
            return artifacts.download_artifact(self.adapter, artifact_id, out, self.cfg.progress)

    def add_artifact_metadata(self, artifact_id: str, schema: str, path: str) -> Any:
        """Attach the JSON document at *path* (or stdin) as *schema* metadata."""
        with open_input(path) as (stream, _):
            meta = stream.read()
        return artifacts.add_artifact_metadata(self.adapter, artifact_id, schema, meta)

    def add_artifact_to_collection(self, artifact_id: str, collection: str) -> Any:
        return artifacts.add_artifact_to_collection(self.adapter, artifact_id, collection)

    def remove_artifact_from_collection(self, artifact_id: str, collection: str) -> None:
        artifacts.remove_artifact_from_collection(self.adapter, artifact_id, collection)

    def _upload_options(self, chunk_size: Optional[int]) -> UploadOptions:
        return UploadOptions(chunk_size=self.cfg.chunk_size if chunk_size is None else chunk_size,
                             progress=self.cfg.progress)

    # Packages

    def list_packages(self, tag: Optional[str] = None) -> PackageList:
        return list_packages(self.adapter, ImageTag.parse(tag) if tag else None)

    def push_package(self, tag: str, *, force: bool = False, local: bool = False,
                     archive: Optional[str] = None) -> PushResult:
        """
        Push an image to the package service.

        Args:
            tag: Image tag; a tag without a registry is read from the local daemon
            force: Overwrite an existing tag
            local: Read from the local daemon even when the tag names a registry
            archive: Read from a ``docker save`` archive instead
        """
        image_tag = ImageTag.parse(tag)
        source = self._source_factory(image_tag, local, archive)
        try:
            return push_package(self.adapter, source, image_tag,
                                PushOptions(force=force, progress=self.cfg.progress))
        finally:
            source.close()

    def pull_package(self, tag: str, *, resume: bool = False,
                     cancel: Optional[threading.Event] = None) -> PullResult:
        options = PullOptions(
            max_retries=self.cfg.stall_retries,
            delay_s=self.cfg.stall_delay_s,
            cancel=cancel,
            layer_dir=self.cfg.layer_dir,
            resume=resume,
            progress=self.cfg.progress,
        )
        return pull_package(self.adapter, ImageTag.parse(tag), self.store, options)

    def remove_package(self, tag: str) -> None:
        remove_package(self.adapter, ImageTag.parse(tag))

    def _default_source(self, tag: ImageTag, local: bool, archive: Optional[str]) -> ImageSource:
        if archive:
            logger.debug(f"pushing {tag} from archive {archive}")
            return ArchiveImageSource(archive)
        if local or not tag.registry:
            logger.debug(f"pushing {tag} from local docker daemon")
            return DockerDaemonSource(tag)
        logger.debug(f"pushing {tag} from registry {tag.registry}")
        return RegistryImageSource(tag, insecure=self.cfg.insecure)
