"""
Tests for artifact records and the resumable chunked upload protocol.

Runs the real upload loop against the in-memory platform and inspects the
PATCH requests it received: offsets, sizes, headers and counts.
"""
from __future__ import annotations

import base64
import io

import pytest

from rdp_cli import artifacts
from rdp_cli.artifacts import CreateArtifactRequest, UploadOptions
from rdp_cli.errors import ApiError, ProtocolError, ResourceNotFoundError, TransferError, UploadOffsetError
from rdp_cli.listing import ListRequest
from rdp_cli.models import ArtifactData, ArtifactRecord


def _content_path(artifact_id: str) -> str:
    return f"/1/artifacts/{artifact_id}/content"


def _patches(platform, artifact_id):
    return platform.requests_for("PATCH", _content_path(artifact_id))


class NonSeekable(io.RawIOBase):
    """Pipe-like stream: readable, not seekable."""

    def __init__(self, data: bytes):
        self._data = io.BytesIO(data)

    def readable(self):
        return True

    def readinto(self, buffer):
        data = self._data.read(len(buffer))
        buffer[:len(data)] = data
        return len(data)


class TestRecords:
    """Test create, read and list of artifact records."""

    def test_create_sends_declared_headers(self, adapter, platform):
        req = CreateArtifactRequest(name="Sea surface temp", collection="coll-1", policy="urn:policy:open",
                                    meta={"source": "buoy 7"})
        record = artifacts.create_artifact(adapter, req, "application/netcdf", 1234)

        created = platform.requests_for("POST", "/1/artifacts")[0]
        assert created.headers["X-Content-Type"] == "application/netcdf"
        assert created.headers["X-Content-Length"] == "1234"
        assert base64.b64decode(created.headers["X-Name"]).decode() == "Sea surface temp"
        assert created.headers["X-Collection"] == "coll-1"
        assert created.headers["X-Policy"] == "urn:policy:open"
        assert platform.artifacts[record.id].metadata == {"source": "buoy 7"}
        assert record.data.self_.endswith(_content_path(record.id))

    def test_create_not_resent_after_server_error(self, platform):
        import httpx
        from rdp_cli.adapter import RestAdapter
        from rdp_cli.settings import Settings

        def handler(request):
            platform.handle(request)
            return httpx.Response(502, text="bad gateway")

        with RestAdapter(Settings(api_url="https://rdp.test"), transport=httpx.MockTransport(handler)) as rest:
            with pytest.raises(ApiError, match="bad gateway"):
                artifacts.create_artifact(rest, CreateArtifactRequest(name="once"), "text/plain", 4)

        assert len(platform.requests_for("POST", "/1/artifacts")) == 1
        assert len(platform.artifacts) == 1

    def test_create_without_content_type_rejected(self, adapter):
        with pytest.raises(ValueError, match="content type"):
            artifacts.create_artifact(adapter, CreateArtifactRequest(), "", 1)

    def test_read_artifact(self, adapter, platform):
        seeded = platform.add_artifact(name="obs", size=3, data=b"abc")
        record = artifacts.read_artifact(adapter, seeded.id)
        assert record.id == seeded.id
        assert record.status == "uploaded"
        assert record.mime_type == "text/plain"

    def test_read_missing_artifact(self, adapter):
        with pytest.raises(ResourceNotFoundError):
            artifacts.read_artifact(adapter, "art-404")

    def test_list_artifacts(self, adapter, platform):
        platform.add_artifact(name="a")
        platform.add_artifact(name="b")
        listing = artifacts.list_artifacts(adapter, ListRequest(limit=10, order_by="name"))

        assert [r.name for r in listing.items] == ["a", "b"]
        assert platform.requests[-1].params == {"limit": "10", "order-by": "name"}

    def test_content_path_requires_link(self, adapter):
        with pytest.raises(ProtocolError, match="no content link"):
            artifacts.content_path(adapter, ArtifactRecord(id="art-1"))
        with pytest.raises(ProtocolError):
            artifacts.content_path(adapter, ArtifactRecord(id="art-1", data=ArtifactData()))


class TestContentType:

    def test_guess_from_suffix(self):
        assert artifacts.guess_content_type("table.csv") == "text/csv"
        assert artifacts.guess_content_type("model.json") == "application/json"

    def test_netcdf_is_known(self):
        assert artifacts.guess_content_type("ocean.nc") == "application/netcdf"

    def test_unknown_suffix(self):
        assert artifacts.guess_content_type("blob.unknownext") is None


class TestChunkedUpload:
    """Test the chunked upload loop."""

    def test_single_chunk_when_size_fits(self, adapter, platform):
        target = platform.add_artifact(size=10)
        result = artifacts.upload_artifact(adapter, io.BytesIO(b"0123456789"), 10, _content_path(target.id),
                                           options=UploadOptions(chunk_size=100))

        assert result.requests == 1
        assert result.offset == 10
        assert bytes(target.data) == b"0123456789"

    def test_offsets_are_monotonic_and_sizes_bounded(self, adapter, platform):
        """Test that 25 bytes in 10-byte chunks go out as 10, 10, 5 at offsets 0, 10, 20."""
        data = bytes(range(25))
        target = platform.add_artifact(size=25)
        result = artifacts.upload_artifact(adapter, io.BytesIO(data), 25, _content_path(target.id),
                                           options=UploadOptions(chunk_size=10))

        patches = _patches(platform, target.id)
        assert [p.headers["Upload-Offset"] for p in patches] == ["0", "10", "20"]
        assert [len(p.body) for p in patches] == [10, 10, 5]
        assert [p.headers["Content-Length"] for p in patches] == ["10", "10", "5"]
        assert result.requests == 3
        assert result.bytes_sent == 25
        assert bytes(target.data) == data

    def test_chunk_headers(self, adapter, platform):
        target = platform.add_artifact(size=4)
        artifacts.upload_artifact(adapter, io.BytesIO(b"data"), 4, _content_path(target.id))

        patch = _patches(platform, target.id)[0]
        assert patch.headers["Content-Type"] == "application/offset+octet-stream"
        assert patch.headers["Tus-Resumable"] == "1.0.0"

    def test_no_chunking_sends_one_request(self, adapter, platform):
        """Test that chunk size -1 sends the whole content in one PATCH."""
        data = b"x" * 30_000
        target = platform.add_artifact(size=len(data))
        result = artifacts.upload_artifact(adapter, io.BytesIO(data), len(data), _content_path(target.id),
                                           options=UploadOptions(chunk_size=-1))

        assert result.requests == 1
        assert len(_patches(platform, target.id)[0].body) == len(data)

    def test_zero_chunk_size_rejected(self):
        with pytest.raises(ValueError, match="chunk_size"):
            UploadOptions(chunk_size=0)

    def test_any_negative_chunk_size_sends_one_request(self, adapter, platform):
        data = b"y" * 25
        target = platform.add_artifact(size=len(data))
        result = artifacts.upload_artifact(adapter, io.BytesIO(data), len(data), _content_path(target.id),
                                           options=UploadOptions(chunk_size=-5))

        assert result.requests == 1
        assert bytes(platform.artifacts[target.id].data) == data

    def test_start_offset_skips_stream(self, adapter, platform):
        target = platform.add_artifact(size=10, data=b"01234")
        result = artifacts.upload_artifact(adapter, io.BytesIO(b"0123456789"), 10, _content_path(target.id),
                                           offset=5, options=UploadOptions(chunk_size=3))

        assert [p.headers["Upload-Offset"] for p in _patches(platform, target.id)] == ["5", "8"]
        assert result.start_offset == 5
        assert result.bytes_sent == 5
        assert bytes(target.data) == b"0123456789"

    def test_start_offset_on_non_seekable_stream(self, adapter, platform):
        target = platform.add_artifact(size=6, data=b"abc")
        artifacts.upload_artifact(adapter, NonSeekable(b"abcdef"), 6, _content_path(target.id), offset=3)
        assert bytes(target.data) == b"abcdef"

    def test_offset_beyond_size_rejected(self, adapter, platform):
        target = platform.add_artifact(size=4)
        with pytest.raises(ValueError, match="beyond content size"):
            artifacts.upload_artifact(adapter, io.BytesIO(b"data"), 4, _content_path(target.id), offset=5)

    def test_stream_shorter_than_size(self, adapter, platform):
        target = platform.add_artifact(size=20)
        with pytest.raises(TransferError, match="content ended at offset 5"):
            artifacts.upload_artifact(adapter, io.BytesIO(b"01234"), 20, _content_path(target.id),
                                      options=UploadOptions(chunk_size=5))

    def test_failed_chunk_stops_upload(self, adapter, platform):
        """Test that the first failed PATCH ends the upload without replaying it."""
        target = platform.add_artifact(size=30)
        platform.fail_patches = {2}
        with pytest.raises(ApiError) as exc_info:
            artifacts.upload_artifact(adapter, io.BytesIO(b"z" * 30), 30, _content_path(target.id),
                                      options=UploadOptions(chunk_size=10))

        assert exc_info.value.status_code == 503
        assert len(_patches(platform, target.id)) == 2
        assert len(target.data) == 10


class TestDeferredLength:
    """Test uploads whose total size is unknown up front."""

    def test_stream_then_declare_length(self, adapter, platform):
        target = platform.add_artifact(size=-1)
        data = b"s" * 23
        result = artifacts.upload_artifact(adapter, NonSeekable(data), -1, _content_path(target.id),
                                           options=UploadOptions(chunk_size=10))

        patches = _patches(platform, target.id)
        assert [len(p.body) for p in patches] == [10, 10, 3, 0]
        assert all(p.headers["Upload-Defer-Length"] == "1" for p in patches[:3])
        assert "Upload-Defer-Length" not in patches[3].headers
        assert patches[3].headers["Upload-Length"] == "23"
        assert result.offset == 23
        assert result.requests == 4
        assert target.size == 23

    def test_no_chunking_uses_default_fragment(self, adapter, platform):
        target = platform.add_artifact(size=-1)
        result = artifacts.upload_artifact(adapter, io.BytesIO(b"tiny"), -1, _content_path(target.id),
                                           options=UploadOptions(chunk_size=-1))
        assert result.requests == 2
        assert bytes(target.data) == b"tiny"

    def test_empty_stream_only_declares_length(self, adapter, platform):
        target = platform.add_artifact(size=-1)
        result = artifacts.upload_artifact(adapter, io.BytesIO(b""), -1, _content_path(target.id))

        patches = _patches(platform, target.id)
        assert len(patches) == 1
        assert patches[0].headers["Upload-Length"] == "0"
        assert result.offset == 0

    def test_unexpected_server_offset(self, settings):
        import httpx
        from rdp_cli.adapter import RestAdapter

        def handler(request):
            return httpx.Response(204, headers={"Upload-Offset": "3"})

        with RestAdapter(settings, transport=httpx.MockTransport(handler)) as rest:
            with pytest.raises(UploadOffsetError, match="expected 10 but got 3"):
                artifacts.upload_artifact(rest, io.BytesIO(b"x" * 10), -1, "/1/artifacts/a/content",
                                          options=UploadOptions(chunk_size=10))


class TestUploadOffset:
    """Test parsing of the Upload-Offset header."""

    def test_parses_decimal(self):
        assert artifacts.parse_upload_offset("400") == 400

    def test_missing_header(self):
        with pytest.raises(UploadOffsetError) as exc_info:
            artifacts.parse_upload_offset("")
        assert exc_info.value.missing is True

    @pytest.mark.parametrize("value", ["abc", "-5", "1.5", "0x10"])
    def test_invalid_value(self, value):
        with pytest.raises(UploadOffsetError) as exc_info:
            artifacts.parse_upload_offset(value)
        assert exc_info.value.missing is False
        assert exc_info.value.value == value

    def test_probe_sends_tus_header(self, adapter, platform):
        target = platform.add_artifact(size=10, data=b"1234")
        assert artifacts.probe_upload_offset(adapter, _content_path(target.id)) == 4
        head = platform.requests_for("HEAD", _content_path(target.id))[0]
        assert head.headers["Tus-Resumable"] == "1.0.0"


class TestResume:
    """Test resuming from the server-reported offset."""

    def test_resume_sends_only_the_tail(self, adapter, platform):
        """Test that with 400 of 1000 bytes held, only bytes 400-999 are sent."""
        data = bytes(i % 251 for i in range(1000))
        target = platform.add_artifact(size=1000, data=data[:400])

        result = artifacts.resume_upload(adapter, target.id, io.BytesIO(data), 1000,
                                         UploadOptions(chunk_size=250))

        patches = _patches(platform, target.id)
        assert [p.headers["Upload-Offset"] for p in patches] == ["400", "650", "900"]
        assert sum(len(p.body) for p in patches) == 600
        assert result.start_offset == 400
        assert result.offset == 1000
        assert bytes(target.data) == data

    def test_resume_already_complete(self, adapter, platform):
        target = platform.add_artifact(size=5, data=b"hello")
        result = artifacts.resume_upload(adapter, target.id, io.BytesIO(b"hello"), 5)

        assert result.already_complete is True
        assert result.requests == 0
        assert _patches(platform, target.id) == []

    def test_resume_after_failure(self, adapter, platform):
        data = b"q" * 30
        target = platform.add_artifact(size=30)
        platform.fail_patches = {2}
        with pytest.raises(ApiError):
            artifacts.upload_artifact(adapter, io.BytesIO(data), 30, _content_path(target.id),
                                      options=UploadOptions(chunk_size=10))

        result = artifacts.resume_upload(adapter, target.id, io.BytesIO(data), 30, UploadOptions(chunk_size=10))

        assert result.start_offset == 10
        assert result.requests == 2
        assert bytes(target.data) == data


class TestDownload:

    def test_download_streams_content(self, adapter, platform):
        target = platform.add_artifact(size=6, data=b"abcdef")
        out = io.BytesIO()
        written = artifacts.download_artifact(adapter, target.id, out)
        assert written == 6
        assert out.getvalue() == b"abcdef"

    def test_download_missing(self, adapter):
        with pytest.raises(ResourceNotFoundError):
            artifacts.download_artifact(adapter, "art-404", io.BytesIO())


class TestMetadataAndCollections:
    """Test schema metadata and collection membership of a record."""

    def test_add_metadata(self, adapter, platform):
        target = platform.add_artifact()
        reply = artifacts.add_artifact_metadata(adapter, target.id, "urn:example:schema:survey.1",
                                                b'{"site": "north", "depth": 12}')

        put = platform.requests[-1]
        assert put.method == "PUT"
        assert put.raw_path == f"/1/artifacts/{target.id}/.metadata/urn%3Aexample%3Aschema%3Asurvey.1"
        assert put.headers["Content-Type"] == "application/json"
        assert platform.artifacts[target.id].schemas == {"urn:example:schema:survey.1": {"site": "north", "depth": 12}}
        assert reply["schema"] == "urn:example:schema:survey.1"

    def test_metadata_must_be_json(self, adapter, platform):
        target = platform.add_artifact()
        with pytest.raises(ValueError, match="not valid JSON"):
            artifacts.add_artifact_metadata(adapter, target.id, "urn:s", b"site=north")
        assert platform.requests == []

    def test_metadata_for_missing_artifact(self, adapter):
        with pytest.raises(ResourceNotFoundError):
            artifacts.add_artifact_metadata(adapter, "art-404", "urn:s", b"{}")

    def test_add_and_remove_collection(self, adapter, platform):
        target = platform.add_artifact()
        assert artifacts.add_artifact_to_collection(adapter, target.id, "team/shared") is None
        assert platform.artifacts[target.id].collections == ["team/shared"]
        assert platform.requests[-1].raw_path == f"/1/artifacts/{target.id}/.collections/team%2Fshared"
        assert platform.requests[-1].body == b""

        artifacts.remove_artifact_from_collection(adapter, target.id, "team/shared")
        assert platform.requests[-1].method == "DELETE"
        assert platform.artifacts[target.id].collections == []

    def test_remove_from_unknown_collection(self, adapter, platform):
        target = platform.add_artifact()
        with pytest.raises(ResourceNotFoundError):
            artifacts.remove_artifact_from_collection(adapter, target.id, "elsewhere")

    def test_collection_name_required(self, adapter):
        with pytest.raises(ValueError, match="collection name is required"):
            artifacts.add_artifact_to_collection(adapter, "art-1", "")
