"""
Image sources for package push.

A source exposes an image the way the push protocol needs it: the raw
manifest and config bytes plus, for each layer, its digest, size and a way to
open the compressed bytes. Three sources are provided:

- ``ArchiveImageSource``: a ``docker save`` tarball on disk
- ``DockerDaemonSource``: an image in the local Docker daemon
- ``RegistryImageSource``: an image in a remote OCI registry
"""
from __future__ import annotations

import gzip
import hashlib
import io
import json
import logging
import shutil
import tarfile
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable, List, Optional, Protocol, runtime_checkable

import docker
from docker.errors import DockerException, ImageNotFound

from ..errors import ImageTooLargeError, ProtocolError, TransferError
from ..models import (
    CONFIG_MEDIA_TYPES,
    DOCKER_CONFIG_V1,
    DOCKER_LAYER_GZIP,
    DOCKER_MANIFEST_LIST,
    DOCKER_MANIFEST_V2,
    OCI_INDEX_V1,
    ImageManifest,
    ManifestList,
    sha256_digest,
)
from ..path_safety import safe_relpath
from .image import parse_manifest
from .registry_http import RegistryHTTP
from .tags import ImageTag

__all__ = [
    "LayerBlob",
    "ImageSource",
    "ArchiveImageSource",
    "DockerDaemonSource",
    "RegistryImageSource",
    "MAX_DAEMON_IMAGE_SIZE",
]

logger = logging.getLogger(__name__)

# Images above this size must be pushed from a registry instead of the daemon
MAX_DAEMON_IMAGE_SIZE = 2 * 1024 * 1024 * 1024

_GZIP_MAGIC = b"\x1f\x8b"
_COPY_BLOCK = 1024 * 1024


@dataclass(frozen=True)
class LayerBlob:
    """A blob to push: digest and size of the compressed bytes plus an opener."""
    digest: str
    size: int
    media_type: str
    opener: Callable[[], BinaryIO]

    def open(self) -> BinaryIO:
        return self.opener()

    @classmethod
    def from_bytes(cls, data: bytes, media_type: str) -> LayerBlob:
        return cls(sha256_digest(data), len(data), media_type, lambda: io.BytesIO(data))


@runtime_checkable
class ImageSource(Protocol):
    """Local or remote image readable by the push protocol."""

    def raw_manifest(self) -> bytes:
        ...

    def raw_config(self) -> bytes:
        ...

    def config_blob(self) -> LayerBlob:
        ...

    def layers(self) -> List[LayerBlob]:
        ...

    def close(self) -> None:
        ...


def _config_blob(raw_config: bytes, manifest: ImageManifest) -> LayerBlob:
    media_type = manifest.config.media_type if manifest.config.media_type in CONFIG_MEDIA_TYPES else DOCKER_CONFIG_V1
    return LayerBlob.from_bytes(raw_config, media_type)


def _file_opener(path: Path) -> Callable[[], BinaryIO]:
    return lambda: open(path, "rb")


class ArchiveImageSource:
    """
    Image read from a ``docker save`` archive.

    Layers stored uncompressed in the archive are gzip-compressed into a
    work directory with a fixed header (no name, mtime 0), so the same
    archive always yields the same layer digests. A Docker schema-2 manifest
    is built from the compressed layers.
    """

    def __init__(self, path: str | Path, repo_tag: Optional[str] = None, workdir: Optional[str] = None):
        """
        Args:
            path: Archive path
            repo_tag: ``RepoTags`` entry to select when the archive holds several images
            workdir: Directory for compressed layers (temporary if omitted)
        """
        self.path = Path(path)
        self.repo_tag = repo_tag
        self._tmp = None if workdir else tempfile.TemporaryDirectory(prefix="rdp-push-")
        self.workdir = Path(workdir) if workdir else Path(self._tmp.name)
        self._config: Optional[bytes] = None
        self._layers: Optional[List[LayerBlob]] = None
        self._manifest: Optional[bytes] = None

    def _load(self) -> None:
        if self._manifest is not None:
            return
        try:
            tar = tarfile.open(self.path, mode="r:*")
        except (OSError, tarfile.TarError) as e:
            raise TransferError(f"cannot read image archive {self.path}: {e}") from e

        with tar:
            entry = self._select_entry(self._read_member(tar, "manifest.json"))
            self._config = self._read_member(tar, entry["Config"])
            self._layers = [self._extract_layer(tar, name, index)
                            for index, name in enumerate(entry.get("Layers", []))]

        config_desc = {"mediaType": DOCKER_CONFIG_V1, "size": len(self._config), "digest": sha256_digest(self._config)}
        manifest = {
            "schemaVersion": 2,
            "mediaType": DOCKER_MANIFEST_V2,
            "config": config_desc,
            "layers": [{"mediaType": b.media_type, "size": b.size, "digest": b.digest} for b in self._layers],
        }
        self._manifest = json.dumps(manifest, indent=3).encode("utf-8")
        logger.debug(f"loaded {len(self._layers)} layers from {self.path}")

    def _select_entry(self, raw_index: bytes) -> dict:
        try:
            index = json.loads(raw_index)
        except json.JSONDecodeError as e:
            raise ProtocolError("read archive", f"invalid manifest.json: {e}") from e
        if not isinstance(index, list) or not index:
            raise ProtocolError("read archive", "manifest.json lists no images")
        if self.repo_tag is None:
            return index[0]
        for entry in index:
            if self.repo_tag in (entry.get("RepoTags") or []):
                return entry
        raise ProtocolError("read archive", f"archive has no image tagged {self.repo_tag}")

    @staticmethod
    def _read_member(tar: tarfile.TarFile, name: str) -> bytes:
        try:
            member = tar.extractfile(safe_relpath(name))
        except KeyError:
            member = None
        if member is None:
            raise ProtocolError("read archive", f"archive entry {name} is missing")
        with member:
            return member.read()

    def _extract_layer(self, tar: tarfile.TarFile, name: str, index: int) -> LayerBlob:
        try:
            member = tar.extractfile(safe_relpath(name))
        except KeyError:
            member = None
        if member is None:
            raise ProtocolError("read archive", f"archive layer {name} is missing")

        target = self.workdir / f"layer-{index}.tar.gz"
        hasher = hashlib.sha256()
        with member, open(target, "wb") as out:
            head = member.read(2)
            member.seek(0)
            if head == _GZIP_MAGIC:
                shutil.copyfileobj(member, out, _COPY_BLOCK)
            else:
                with gzip.GzipFile(filename="", mode="wb", fileobj=out, mtime=0) as gz:
                    shutil.copyfileobj(member, gz, _COPY_BLOCK)

        with open(target, "rb") as f:
            for block in iter(lambda: f.read(_COPY_BLOCK), b""):
                hasher.update(block)
        size = target.stat().st_size
        return LayerBlob(f"sha256:{hasher.hexdigest()}", size, DOCKER_LAYER_GZIP, _file_opener(target))

    def raw_manifest(self) -> bytes:
        self._load()
        return self._manifest

    def raw_config(self) -> bytes:
        self._load()
        return self._config

    def config_blob(self) -> LayerBlob:
        self._load()
        return LayerBlob.from_bytes(self._config, DOCKER_CONFIG_V1)

    def layers(self) -> List[LayerBlob]:
        self._load()
        return list(self._layers)

    def close(self) -> None:
        if self._tmp is not None:
            self._tmp.cleanup()
            self._tmp = None


class DockerDaemonSource:
    """
    Image saved from the local Docker daemon.

    The image is exported with ``docker save`` into a temporary archive and
    read through ``ArchiveImageSource``. Images larger than 2 GiB are refused.
    """

    def __init__(self, tag: ImageTag, client: Optional[docker.DockerClient] = None):
        self.tag = tag
        self._client = client
        self._tmp: Optional[tempfile.TemporaryDirectory] = None
        self._archive: Optional[ArchiveImageSource] = None

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise TransferError(f"failed to create docker client: {e}") from e
        return self._client

    def _source(self) -> ArchiveImageSource:
        if self._archive is not None:
            return self._archive

        name = str(self.tag)
        try:
            image = self.client.images.get(name)
        except ImageNotFound as e:
            raise TransferError(f"image {name} not found in local docker daemon") from e
        except DockerException as e:
            raise TransferError(f"failed to inspect image {name}: {e}") from e

        size = int(image.attrs.get("Size") or 0)
        if size > MAX_DAEMON_IMAGE_SIZE:
            raise ImageTooLargeError(
                f"image {name} is {size} bytes, above the {MAX_DAEMON_IMAGE_SIZE} byte limit; "
                f"push it from a registry instead"
            )

        self._tmp = tempfile.TemporaryDirectory(prefix="rdp-save-")
        archive_path = Path(self._tmp.name) / "image.tar"
        logger.info(f"saving {name} from docker daemon ({size} bytes)")
        try:
            with open(archive_path, "wb") as f:
                for chunk in image.save(named=True):
                    f.write(chunk)
        except DockerException as e:
            raise TransferError(f"failed to save image {name}: {e}") from e

        self._archive = ArchiveImageSource(archive_path, workdir=self._tmp.name)
        return self._archive

    def raw_manifest(self) -> bytes:
        return self._source().raw_manifest()

    def raw_config(self) -> bytes:
        return self._source().raw_config()

    def config_blob(self) -> LayerBlob:
        return self._source().config_blob()

    def layers(self) -> List[LayerBlob]:
        return self._source().layers()

    def close(self) -> None:
        if self._tmp is not None:
            self._tmp.cleanup()
            self._tmp = None
        self._archive = None


class RegistryImageSource:
    """
    Image read from a remote registry.

    Manifest lists and OCI indexes resolve to the ``linux/amd64`` image.
    Layers are downloaded to a temporary directory the first time they are
    opened.
    """

    def __init__(self, tag: ImageTag, registry: Optional[RegistryHTTP] = None, insecure: bool = False,
                 os_name: str = "linux", architecture: str = "amd64"):
        if not tag.registry:
            raise ValueError(f"tag {tag} names no registry")
        self.tag = tag
        self.registry = registry or RegistryHTTP(tag.registry, insecure=insecure)
        self.os_name = os_name
        self.architecture = architecture
        self._tmp = tempfile.TemporaryDirectory(prefix="rdp-registry-")
        self._manifest_raw: Optional[bytes] = None
        self._manifest: Optional[ImageManifest] = None
        self._config: Optional[bytes] = None

    def _resolve_manifest(self) -> ImageManifest:
        if self._manifest is not None:
            return self._manifest

        raw, media_type = self.registry.get_manifest(self.tag.repository, self.tag.tag)
        if media_type in (DOCKER_MANIFEST_LIST, OCI_INDEX_V1):
            index = ManifestList.model_validate_json(raw)
            chosen = next((d for d in index.manifests
                           if d.platform is not None
                           and d.platform.os == self.os_name
                           and d.platform.architecture == self.architecture), None)
            if chosen is None:
                raise ProtocolError("resolve manifest",
                                    f"{self.tag} has no {self.os_name}/{self.architecture} image")
            logger.debug(f"{self.tag} resolved to {chosen.digest} for {self.os_name}/{self.architecture}")
            raw, media_type = self.registry.get_manifest(self.tag.repository, chosen.digest)

        self._manifest_raw = raw
        self._manifest = parse_manifest(raw, step="resolve manifest")
        return self._manifest

    def raw_manifest(self) -> bytes:
        self._resolve_manifest()
        return self._manifest_raw

    def raw_config(self) -> bytes:
        if self._config is None:
            manifest = self._resolve_manifest()
            self._config = self.registry.get_blob_bytes(self.tag.repository, manifest.config.digest)
        return self._config

    def config_blob(self) -> LayerBlob:
        return _config_blob(self.raw_config(), self._resolve_manifest())

    def layers(self) -> List[LayerBlob]:
        return [LayerBlob(d.digest, d.size, d.media_type or DOCKER_LAYER_GZIP, self._layer_opener(d.digest))
                for d in self._resolve_manifest().layers]

    def _layer_opener(self, digest: str) -> Callable[[], BinaryIO]:
        def opener() -> BinaryIO:
            path = Path(self._tmp.name) / digest.replace(":", "_")
            if not path.exists():
                partial = path.with_suffix(".part")
                with open(partial, "wb") as f:
                    self.registry.download_blob(self.tag.repository, digest, f)
                partial.rename(path)
            return open(path, "rb")
        return opener

    def close(self) -> None:
        self._tmp.cleanup()
        self.registry.close()
