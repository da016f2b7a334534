"""
Tests for package push: layer probe, chunked PATCH with location rotation,
commit, then config and manifest.
"""
from __future__ import annotations

import io
import json
from typing import List

import httpx
import pytest

from rdp_cli.adapter import RestAdapter
from rdp_cli.errors import PackageExistsError, ProtocolError, TransferError
from rdp_cli.packages import BlobState, ImageTag, LayerBlob, PushOptions, push_package
from rdp_cli.packages.push import LAYER_CHUNK_SIZE, package_path, push_layer
from rdp_cli.settings import Settings

from tests.fakes.fake_platform import BASE_URL, DOCKER_CONFIG_V1, DOCKER_LAYER_GZIP, DOCKER_MANIFEST_V2, digest_of

BLOB_PATH = "/1/packages/blob"
PUSH_PATH = "/1/packages/push"


class MemorySource:
    """Image source over in-memory layers."""

    def __init__(self, layers: List[bytes], config: bytes = b'{"os":"linux"}'):
        self._layers = [LayerBlob.from_bytes(d, DOCKER_LAYER_GZIP) for d in layers]
        self._config = config
        self._manifest = json.dumps({
            "schemaVersion": 2,
            "mediaType": DOCKER_MANIFEST_V2,
            "config": {"mediaType": DOCKER_CONFIG_V1, "size": len(config), "digest": digest_of(config)},
            "layers": [{"mediaType": DOCKER_LAYER_GZIP, "size": len(d), "digest": digest_of(d)} for d in layers],
        }).encode("utf-8")
        self.closed = False

    def raw_manifest(self) -> bytes:
        return self._manifest

    def raw_config(self) -> bytes:
        return self._config

    def config_blob(self) -> LayerBlob:
        return LayerBlob.from_bytes(self._config, DOCKER_CONFIG_V1)

    def layers(self) -> List[LayerBlob]:
        return list(self._layers)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def tag():
    return ImageTag.parse("team/model:1")


class TestPushPackage:

    def test_fresh_push(self, platform, adapter, tag):
        layers = [b"0123456789", b"abcdef"]
        source = MemorySource(layers)
        result = push_package(adapter, source, tag, PushOptions(chunk_size=4))

        assert [b.state for b in result.blobs] == [BlobState.COMMITTED] * 4
        assert [b.chunks for b in result.blobs[:2]] == [3, 2]
        assert result.manifest_digest == digest_of(source.raw_manifest())
        assert platform.blobs[digest_of(layers[0])] == layers[0]
        assert platform.blobs[digest_of(layers[1])] == layers[1]
        assert platform.packages["team/model:1"].raw_manifest == source.raw_manifest()

    def test_request_order(self, platform, adapter, tag):
        layers = [b"first layer", b"second layer"]
        source = MemorySource(layers)
        push_package(adapter, source, tag, PushOptions(chunk_size=100))

        sequence = [(r.method, r.params.get("type"), r.params.get("digest")) for r in platform.requests]
        first, second = digest_of(layers[0]), digest_of(layers[1])
        assert sequence == [
            ("POST", "layer", first), ("PATCH", None, first), ("PUT", None, first),
            ("POST", "layer", second), ("PATCH", None, second), ("PUT", None, second),
            ("POST", "config", digest_of(b'{"os":"linux"}')),
            ("POST", "manifest", digest_of(source.raw_manifest())),
        ]

    def test_location_rotates_between_chunks(self, platform, adapter, tag):
        push_package(adapter, MemorySource([b"x" * 10]), tag, PushOptions(chunk_size=4))

        patches = platform.requests_for("PATCH", BLOB_PATH)
        commit = platform.requests_for("PUT", BLOB_PATH)[0]
        assert [(p.params["start"], p.params["end"]) for p in patches] == [("0", "4"), ("4", "8"), ("8", "10")]
        assert [p.params["location"] for p in patches] == ["loc-1", "loc-2", "loc-3"]
        assert commit.params["location"] == "loc-4"
        assert all(p.params["total"] == "10" for p in patches)
        assert all(p.headers["Content-Type"] == "application/octet-stream" for p in patches)

    def test_default_chunk_size(self, platform, adapter, tag):
        layer = b"\0" * (LAYER_CHUNK_SIZE + 1)
        result = push_package(adapter, MemorySource([layer]), tag)

        patches = platform.requests_for("PATCH", BLOB_PATH)
        assert [len(p.body) for p in patches] == [LAYER_CHUNK_SIZE, 1]
        assert result.blobs[0].chunks == 2

    def test_mounted_layer_sends_no_bytes(self, platform, adapter, tag):
        shared = b"already on the server"
        platform.blobs[digest_of(shared)] = shared
        result = push_package(adapter, MemorySource([shared, b"new"]), tag)

        assert result.blobs[0].state is BlobState.MOUNTED
        assert [b.digest for b in result.mounted] == [digest_of(shared)]
        patched = {p.params["digest"] for p in platform.requests_for("PATCH", BLOB_PATH)}
        assert patched == {digest_of(b"new")}

    def test_existing_tag_without_force(self, platform, adapter, tag):
        platform.seed_package("team/model:1", [b"old"])
        with pytest.raises(PackageExistsError, match="use --force to overwrite"):
            push_package(adapter, MemorySource([b"new"]), tag)
        assert not platform.requests_for("PATCH", BLOB_PATH)

    def test_existing_tag_with_force(self, platform, adapter, tag):
        platform.seed_package("team/model:1", [b"old"])
        source = MemorySource([b"new"])
        push_package(adapter, source, tag, PushOptions(force=True))

        assert platform.packages["team/model:1"].raw_manifest == source.raw_manifest()
        assert all(r.params["force"] == "true" for r in platform.requests_for("POST", PUSH_PATH))

    def test_image_without_layers(self, platform, adapter, tag):
        result = push_package(adapter, MemorySource([]), tag)
        assert [b.media_type for b in result.blobs] == [DOCKER_CONFIG_V1, "manifest"]
        assert "team/model:1" in platform.packages


class TestPushFailures:

    def _adapter(self, settings, platform, override):
        def handler(request: httpx.Request) -> httpx.Response:
            response = override(request)
            return response if response is not None else platform.handle(request)
        return RestAdapter(settings, transport=httpx.MockTransport(handler))

    def test_probe_without_location(self, settings, platform, tag):
        def override(request):
            if request.method == "POST" and b"type=layer" in request.url.query:
                return httpx.Response(202, json={})
            return None

        with self._adapter(settings, platform, override) as adapter:
            with pytest.raises(ProtocolError, match="expecting location response from push"):
                push_layer(adapter, LayerBlob.from_bytes(b"data", DOCKER_LAYER_GZIP), tag, PushOptions())

    def test_patch_without_location(self, settings, platform, tag):
        def override(request):
            if request.method == "PATCH":
                return httpx.Response(202, json={})
            return None

        with self._adapter(settings, platform, override) as adapter:
            with pytest.raises(ProtocolError, match="expecting location from patch response"):
                push_layer(adapter, LayerBlob.from_bytes(b"data", DOCKER_LAYER_GZIP), tag, PushOptions())

    def test_failed_patch_reports_digest_and_size(self, settings, platform, tag):
        patches = []

        def override(request):
            if request.method == "PATCH":
                patches.append(request)
                return httpx.Response(500, text="disk full")
            return None

        blob = LayerBlob.from_bytes(b"payload", DOCKER_LAYER_GZIP)
        with self._adapter(settings, platform, override) as adapter:
            with pytest.raises(TransferError, match="failed to patch layer") as exc_info:
                push_layer(adapter, blob, tag, PushOptions())

        assert exc_info.value.digest == blob.digest
        assert exc_info.value.size == 7
        assert "disk full" in str(exc_info.value)
        # chunk PATCHes are never replayed
        assert len(patches) == 1

    def test_manifest_post_not_resent_with_default_settings(self, platform, tag):
        posts = []

        def override(request):
            if request.method == "POST" and b"type=manifest" in request.url.query:
                posts.append(request)
                platform.handle(request)
                return httpx.Response(502, text="bad gateway")
            return None

        with self._adapter(Settings(api_url=BASE_URL), platform, override) as adapter:
            with pytest.raises(TransferError, match="failed to push manifest"):
                push_package(adapter, MemorySource([b"layer"]), tag)

        assert len(posts) == 1

    def test_short_layer_stream(self, adapter, tag):
        blob = LayerBlob(digest_of(b"abc"), 10, DOCKER_LAYER_GZIP, lambda: io.BytesIO(b"abc"))
        with pytest.raises(TransferError, match="produced 3 bytes, expected 10"):
            push_layer(adapter, blob, tag, PushOptions())


class TestPushOptions:

    def test_chunk_size_must_be_positive(self):
        with pytest.raises(ValueError, match="chunk_size must be positive"):
            PushOptions(chunk_size=0)

    def test_package_path_encoding(self):
        path = package_path("push", force=False, tag="team/model:1", type="layer")
        assert path == "/1/packages/push?force=false&tag=team%2Fmodel%3A1&type=layer"
