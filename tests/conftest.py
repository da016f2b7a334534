"""Root pytest configuration for rdp-cli tests."""
import pytest

from rdp_cli.adapter import RestAdapter
from rdp_cli.settings import Settings

from tests.fakes.fake_image_store import FakeImageStore
from tests.fakes.fake_platform import BASE_URL, FakePlatform


# Configure pytest markers
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test (requires Docker)"
    )


# Keep the developer's environment out of the tests
@pytest.fixture(autouse=True)
def test_env(monkeypatch, tmp_path):
    """Automatically set up test environment variables."""
    for key in ("RDP_URL", "RDP_ACCESS_TOKEN", "RDP_HTTP_TIMEOUT", "RDP_HTTP_RETRY", "RDP_INSECURE",
                "RDP_CHUNK_SIZE", "RDP_STALL_RETRIES", "RDP_STALL_DELAY"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("RDP_LAYER_DIR", str(tmp_path / "layers"))


# Standardized test fixtures
@pytest.fixture
def settings(tmp_path):
    """Standard test settings pointing at the fake platform."""
    return Settings(
        api_url=BASE_URL,
        access_token="test-token",
        http_retry=0,
        layer_dir=str(tmp_path / "layers"),
    )


@pytest.fixture
def platform():
    """Fresh in-memory platform."""
    return FakePlatform()


@pytest.fixture
def adapter(settings, platform):
    """REST adapter wired to the fake platform."""
    rest = RestAdapter(settings, transport=platform.transport())
    yield rest
    rest.close()


@pytest.fixture
def image_store():
    """In-memory stand-in for the Docker daemon."""
    return FakeImageStore()
