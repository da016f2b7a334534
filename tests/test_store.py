"""
Tests for the Docker daemon image store.
"""
from __future__ import annotations

import io
import json
import tarfile
from unittest.mock import Mock

import pytest
from docker.errors import APIError

from rdp_cli.errors import TransferError
from rdp_cli.packages import AssembledImage, DockerImageStore, ImageTag, LayerFile, LocalImageStore

from tests.fakes.fake_image_store import FakeImageStore
from tests.fakes.fake_platform import DOCKER_CONFIG_V1, DOCKER_LAYER_GZIP, DOCKER_MANIFEST_V2, digest_of


@pytest.fixture
def image(tmp_path):
    config, layer = b'{"os":"linux"}', b"layer bytes"
    path = tmp_path / "layer.buf"
    path.write_bytes(layer)
    manifest = json.dumps({
        "schemaVersion": 2,
        "mediaType": DOCKER_MANIFEST_V2,
        "config": {"mediaType": DOCKER_CONFIG_V1, "size": len(config), "digest": digest_of(config)},
        "layers": [{"mediaType": DOCKER_LAYER_GZIP, "size": len(layer), "digest": digest_of(layer)}],
    }).encode("utf-8")
    return AssembledImage(manifest, config, [LayerFile(digest_of(layer), len(layer), path)])


class TestDockerImageStore:

    def test_loads_archive_into_daemon(self, image):
        seen = {}

        def load(archive):
            with tarfile.open(fileobj=io.BytesIO(archive.read()), mode="r") as tar:
                seen["index"] = json.loads(tar.extractfile("manifest.json").read())
            return [Mock(id="sha256:loaded")]

        client = Mock()
        client.images.load.side_effect = load
        image_id = DockerImageStore(client=client).write(image, ImageTag.parse("team/model:1"))

        assert image_id == "sha256:loaded"
        assert seen["index"][0]["RepoTags"] == ["team/model:1"]

    def test_empty_load_falls_back_to_config_digest(self, image):
        client = Mock()
        client.images.load.return_value = []
        assert DockerImageStore(client=client).write(image, ImageTag.parse("m:1")) == image.config_digest

    def test_daemon_error_wrapped(self, image):
        client = Mock()
        client.images.load.side_effect = APIError("daemon unavailable")
        with pytest.raises(TransferError, match="failed to write image m:1"):
            DockerImageStore(client=client).write(image, ImageTag.parse("m:1"))

    def test_stores_satisfy_protocol(self):
        assert isinstance(DockerImageStore(client=Mock()), LocalImageStore)
        assert isinstance(FakeImageStore(), LocalImageStore)
