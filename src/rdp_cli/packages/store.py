"""
Local image store.

Pulled images end up in the local Docker daemon. The store protocol keeps
pull logic independent of the daemon so tests can substitute an in-memory
store.
"""
from __future__ import annotations

import logging
import tempfile
from typing import Optional, Protocol, runtime_checkable

import docker
from docker.errors import DockerException

from ..errors import TransferError
from .image import AssembledImage
from .tags import ImageTag

__all__ = ["LocalImageStore", "DockerImageStore"]

logger = logging.getLogger(__name__)


@runtime_checkable
class LocalImageStore(Protocol):
    """Destination for assembled images."""

    def write(self, image: AssembledImage, tag: ImageTag) -> str:
        """
        Store *image* under *tag*.

        Returns:
            Image ID assigned by the store

        Raises:
            TransferError: If the store rejects the image
        """
        ...


class DockerImageStore:
    """Writes images to the Docker daemon with ``docker load``."""

    def __init__(self, client: Optional[docker.DockerClient] = None):
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        """Docker client configured from the environment (lazy)."""
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise TransferError(f"failed to create docker client: {e}") from e
        return self._client

    def write(self, image: AssembledImage, tag: ImageTag) -> str:
        logger.info(f"writing image {tag} to docker daemon")
        with tempfile.TemporaryFile() as archive:
            image.write_archive(archive, [str(tag)])
            archive.seek(0)
            try:
                loaded = self.client.images.load(archive)
            except DockerException as e:
                raise TransferError(f"failed to write image {tag}: {e}", digest=image.config_digest) from e
        image_id = loaded[0].id if loaded else image.config_digest
        logger.debug(f"daemon loaded {tag} as {image_id}")
        return image_id
