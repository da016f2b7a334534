"""
Assembled image and ``docker load`` archive export.

Pulled content arrives piecewise: the manifest first, then layer files, then
the config. ``AssembledImage`` collects the pieces and, once complete, writes
them as a tar archive the local Docker daemon can load. The archive is
deterministic: identical inputs give byte-identical output.
"""
from __future__ import annotations

import io
import json
import tarfile
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional, Sequence

from pydantic import ValidationError

from ..errors import ProtocolError
from ..models import DOCKER_LAYER_GZIP, ImageManifest, sha256_digest
from ..path_safety import safe_relpath

__all__ = ["LayerFile", "AssembledImage", "parse_manifest"]


@dataclass(frozen=True)
class LayerFile:
    """A complete compressed layer held in a local file."""
    digest: str
    size: int
    path: Path
    media_type: str = DOCKER_LAYER_GZIP

    def open(self) -> BinaryIO:
        return open(self.path, "rb")


def parse_manifest(raw: bytes, step: str = "pull manifest") -> ImageManifest:
    """
    Parse raw manifest bytes.

    Raises:
        ProtocolError: If the bytes are empty or not a single-image manifest
    """
    if not raw:
        raise ProtocolError(step, "empty manifest")
    try:
        return ImageManifest.model_validate_json(raw)
    except ValidationError as e:
        raise ProtocolError(step, f"failed to parse manifest: {e}") from e


def _hex(digest: str) -> str:
    return digest.partition(":")[2] or digest


def _apply_canonical_headers(tarinfo: tarfile.TarInfo) -> None:
    """Deterministic ownership, timestamp and permissions for one member."""
    tarinfo.uid = 0
    tarinfo.gid = 0
    tarinfo.uname = ""
    tarinfo.gname = ""
    tarinfo.mtime = 0
    tarinfo.mode = 0o644


class AssembledImage:
    """
    Image built from pulled pieces.

    Layers are addressable by digest and may be added in any order; the
    archive always lists them in manifest order.
    """

    def __init__(self, raw_manifest: bytes, raw_config: Optional[bytes] = None,
                 layers: Optional[Sequence[LayerFile]] = None):
        self.raw_manifest = raw_manifest
        self.raw_config = raw_config
        self.manifest = parse_manifest(raw_manifest)
        self._layers: Dict[str, LayerFile] = {}
        for layer in layers or ():
            self.add_layer(layer)

    @property
    def layers(self) -> List[LayerFile]:
        """Collected layers in the order they were added."""
        return list(self._layers.values())

    @property
    def config_digest(self) -> str:
        return self.manifest.config.digest

    def add_layer(self, layer: LayerFile) -> None:
        self._layers[layer.digest] = layer

    def layer_by_digest(self, digest: str) -> LayerFile:
        """
        Raises:
            KeyError: If no layer with *digest* has been collected
        """
        try:
            return self._layers[digest]
        except KeyError:
            raise KeyError(f"blob {digest} not found") from None

    def has_layer(self, digest: str) -> bool:
        return digest in self._layers

    def is_complete(self) -> bool:
        """True once config and every manifest layer are present."""
        if self.raw_config is None:
            return False
        return all(d.digest in self._layers for d in self.manifest.layers)

    def write_archive(self, fileobj: BinaryIO, repo_tags: Sequence[str]) -> None:
        """
        Write a ``docker load`` archive to *fileobj*.

        Layout: ``<config-hex>.json``, one ``<layer-hex>.tar.gz`` per layer
        and ``manifest.json`` tying them to *repo_tags*.

        Raises:
            ValueError: If the image is not complete
        """
        if not self.is_complete():
            missing = [d.digest for d in self.manifest.layers if d.digest not in self._layers]
            raise ValueError(f"image is incomplete (config present: {self.raw_config is not None}, "
                             f"missing layers: {missing})")

        config_name = safe_relpath(f"{_hex(self.config_digest)}.json")
        layer_names = []

        with tarfile.open(fileobj=fileobj, mode="w", format=tarfile.USTAR_FORMAT) as tar:
            self._add_bytes(tar, config_name, self.raw_config)

            written = set()
            for desc in self.manifest.layers:
                name = safe_relpath(f"{_hex(desc.digest)}.tar.gz")
                layer_names.append(name)
                if name in written:
                    continue
                written.add(name)
                layer = self._layers[desc.digest]
                tarinfo = tarfile.TarInfo(name)
                tarinfo.size = layer.path.stat().st_size
                _apply_canonical_headers(tarinfo)
                with layer.open() as f:
                    tar.addfile(tarinfo, f)

            index = [{"Config": config_name, "RepoTags": list(repo_tags), "Layers": layer_names}]
            self._add_bytes(tar, "manifest.json", json.dumps(index).encode("utf-8"))

    @staticmethod
    def _add_bytes(tar: tarfile.TarFile, name: str, data: bytes) -> None:
        tarinfo = tarfile.TarInfo(name)
        tarinfo.size = len(data)
        _apply_canonical_headers(tarinfo)
        tar.addfile(tarinfo, io.BytesIO(data))

    def __repr__(self) -> str:
        return (f"AssembledImage(manifest={sha256_digest(self.raw_manifest)[:19]}, "
                f"layers={len(self._layers)}/{len(self.manifest.layers)}, "
                f"config={'yes' if self.raw_config is not None else 'no'})")
