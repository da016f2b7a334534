"""
Packages - container images pushed to and pulled from the platform's
package service.
"""
from .image import AssembledImage, LayerFile
from .pull import LayerBuffer, PullOptions, PullResult, list_packages, pull_package, remove_package
from .push import BlobPushResult, BlobState, PushOptions, PushResult, push_package
from .sources import ArchiveImageSource, DockerDaemonSource, ImageSource, LayerBlob, RegistryImageSource
from .store import DockerImageStore, LocalImageStore
from .tags import ImageTag

__all__ = [
    "ArchiveImageSource",
    "AssembledImage",
    "BlobPushResult",
    "BlobState",
    "DockerDaemonSource",
    "DockerImageStore",
    "ImageSource",
    "ImageTag",
    "LayerBlob",
    "LayerBuffer",
    "LayerFile",
    "LocalImageStore",
    "PullOptions",
    "PullResult",
    "PushOptions",
    "PushResult",
    "RegistryImageSource",
    "list_packages",
    "pull_package",
    "push_package",
    "remove_package",
]
