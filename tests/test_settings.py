"""
Tests for settings module.

Tests settings validation and environment variable loading.
"""
from __future__ import annotations

from pathlib import Path

import pytest

from rdp_cli.settings import DEFAULT_CHUNK_SIZE, Settings, create_settings_from_env


class TestSettings:
    """Test Settings dataclass validation."""

    def test_minimal_valid_settings(self):
        """Test creating settings with minimal required values."""
        settings = Settings(api_url="https://rdp.example.org")
        assert settings.access_token is None
        assert settings.http_timeout_s == 30.0
        assert settings.http_retry == 2
        assert settings.insecure is False
        assert settings.chunk_size == DEFAULT_CHUNK_SIZE
        assert settings.stall_retries == 4
        assert settings.stall_delay_s == 10.0

    def test_layer_dir_defaults_under_temp(self):
        """Test that an empty layer_dir gets the computed default."""
        settings = Settings(api_url="https://rdp.example.org")
        assert Path(settings.layer_dir).parts[-2:] == ("rdp-cli", "layers")

    def test_base_url_strips_trailing_slash(self):
        settings = Settings(api_url="https://rdp.example.org/api/")
        assert settings.base_url == "https://rdp.example.org/api"

    def test_empty_api_url_raises(self):
        """Test that empty API URL raises ValueError."""
        with pytest.raises(ValueError, match="api_url is required"):
            Settings(api_url="")

    def test_invalid_api_url_format_raises(self):
        """Test that invalid API URL format raises ValueError."""
        with pytest.raises(ValueError, match="Invalid api_url format"):
            Settings(api_url="rdp.example.org")

        with pytest.raises(ValueError, match="Invalid api_url format"):
            Settings(api_url="ftp://rdp.example.org")

    def test_valid_api_url_formats(self):
        """Test various valid API URL formats."""
        Settings(api_url="http://localhost")
        Settings(api_url="http://localhost:8080")
        Settings(api_url="https://rdp.example.org/base/path")

    def test_negative_timeout_raises(self):
        with pytest.raises(ValueError, match="http_timeout_s must be positive"):
            Settings(api_url="https://rdp.example.org", http_timeout_s=-1.0)

    def test_negative_retry_raises(self):
        with pytest.raises(ValueError, match="http_retry must be non-negative"):
            Settings(api_url="https://rdp.example.org", http_retry=-1)

    def test_chunk_size_zero_rejected(self):
        """Test that chunk size 0 is rejected while any negative size means no chunking."""
        with pytest.raises(ValueError, match="chunk_size"):
            Settings(api_url="https://rdp.example.org", chunk_size=0)
        assert Settings(api_url="https://rdp.example.org", chunk_size=-2).chunk_size == -2
        assert Settings(api_url="https://rdp.example.org", chunk_size=-1).chunk_size == -1

    def test_negative_stall_settings_raise(self):
        with pytest.raises(ValueError, match="stall_retries"):
            Settings(api_url="https://rdp.example.org", stall_retries=-1)
        with pytest.raises(ValueError, match="stall_delay_s"):
            Settings(api_url="https://rdp.example.org", stall_delay_s=-0.5)


class TestSettingsFromEnv:
    """Test loading settings from environment variables."""

    def test_missing_url_raises(self):
        with pytest.raises(ValueError, match="RDP_URL environment variable is required"):
            create_settings_from_env()

    def test_all_variables(self, monkeypatch, tmp_path):
        monkeypatch.setenv("RDP_URL", "https://rdp.example.org")
        monkeypatch.setenv("RDP_ACCESS_TOKEN", "secret")
        monkeypatch.setenv("RDP_HTTP_TIMEOUT", "12.5")
        monkeypatch.setenv("RDP_HTTP_RETRY", "5")
        monkeypatch.setenv("RDP_INSECURE", "yes")
        monkeypatch.setenv("RDP_CHUNK_SIZE", "-1")
        monkeypatch.setenv("RDP_LAYER_DIR", str(tmp_path))
        monkeypatch.setenv("RDP_STALL_RETRIES", "2")
        monkeypatch.setenv("RDP_STALL_DELAY", "0.5")

        settings = create_settings_from_env()

        assert settings.api_url == "https://rdp.example.org"
        assert settings.access_token == "secret"
        assert settings.http_timeout_s == 12.5
        assert settings.http_retry == 5
        assert settings.insecure is True
        assert settings.chunk_size == -1
        assert settings.layer_dir == str(tmp_path)
        assert settings.stall_retries == 2
        assert settings.stall_delay_s == 0.5

    def test_empty_token_is_none(self, monkeypatch):
        monkeypatch.setenv("RDP_URL", "https://rdp.example.org")
        monkeypatch.setenv("RDP_ACCESS_TOKEN", "")
        assert create_settings_from_env().access_token is None

    def test_invalid_chunk_size_from_env(self, monkeypatch):
        monkeypatch.setenv("RDP_URL", "https://rdp.example.org")
        monkeypatch.setenv("RDP_CHUNK_SIZE", "0")
        with pytest.raises(ValueError, match="chunk_size"):
            create_settings_from_env()
