"""Unit tests for configuration module."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from static_cache_jobs.base_config import (
    get_bool_config,
    get_cache_dir,
    get_int_config,
    get_list_config,
)
from static_cache_jobs.config import Config


class TestBaseConfig:
    """Test suite for environment helpers."""

    def test_cache_dir_required(self, monkeypatch: pytest.MonkeyPatch):
        """Test STATIC_CACHE_DIR must be set."""
        monkeypatch.delenv("STATIC_CACHE_DIR", raising=False)

        with pytest.raises(ValueError, match="must be set"):
            _ = get_cache_dir()

    def test_cache_dir_must_be_writable(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
        monkeypatch.setenv("STATIC_CACHE_DIR", str(tmp_path / "missing"))

        with pytest.raises(ValueError, match="no write permission"):
            _ = get_cache_dir()

    def test_cache_dir(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
        monkeypatch.setenv("STATIC_CACHE_DIR", str(tmp_path))

        assert get_cache_dir() == str(tmp_path)

    def test_int_config(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("QUEUE_BATCH_SIZE", "12")

        assert get_int_config("QUEUE_BATCH_SIZE", 5) == 12
        assert get_int_config("UNSET_INT_VALUE", 5) == 5

    @pytest.mark.parametrize("raw,expected", [("true", True), ("1", True), ("yes", True), ("off", False)])
    def test_bool_config(self, monkeypatch: pytest.MonkeyPatch, raw: str, expected: bool):
        monkeypatch.setenv("BULK_STOP_ON_FAILURE", raw)

        assert get_bool_config("BULK_STOP_ON_FAILURE") is expected

    def test_list_config(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("NOTIFY_SEVERITIES", " warning, error ,,critical")

        assert get_list_config("NOTIFY_SEVERITIES", "error") == ["warning", "error", "critical"]


class TestConfig:
    """Test suite for Config class."""

    def test_cache_dir_loaded(self):
        """Test STATIC_CACHE_DIR is loaded from environment."""
        assert Config.STATIC_CACHE_DIR == os.environ["STATIC_CACHE_DIR"]

    def test_paths_under_cache_dir(self):
        """Test derived paths default to the cache directory."""
        assert Config.DATABASE_URL.startswith("sqlite:///") or os.getenv("DATABASE_URL")
        assert Config.ARTIFACT_STORAGE_DIR.startswith(Config.STATIC_CACHE_DIR) or os.getenv(
            "ARTIFACT_STORAGE_DIR"
        )

    def test_queue_defaults(self):
        assert Config.QUEUE_BATCH_SIZE == 5 or os.getenv("QUEUE_BATCH_SIZE")
        assert Config.QUEUE_TIME_LIMIT == 20 or os.getenv("QUEUE_TIME_LIMIT")
        assert Config.QUEUE_DEFAULT_PRIORITY == 10 or os.getenv("QUEUE_DEFAULT_PRIORITY")
        assert Config.QUEUE_MAX_ATTEMPTS == 3 or os.getenv("QUEUE_MAX_ATTEMPTS")

    def test_lock_and_batch_defaults(self):
        assert Config.LOCK_TIMEOUT == 300 or os.getenv("LOCK_TIMEOUT")
        assert Config.BATCH_CHUNK_SIZE == 3 or os.getenv("BATCH_CHUNK_SIZE")
        assert Config.PROGRESS_TTL == 3600 or os.getenv("PROGRESS_TTL")

    def test_notify_defaults(self):
        """Test notifications are off unless configured."""
        assert Config.NOTIFY_TYPE == "none" or os.getenv("NOTIFY_TYPE")
        assert Config.NOTIFY_SEVERITIES == ["error", "critical"] or os.getenv("NOTIFY_SEVERITIES")
        assert Config.MQTT_PORT == 1883 or os.getenv("MQTT_PORT")
        assert Config.LOG_LEVEL in ["DEBUG", "INFO", "WARNING", "ERROR"] or os.getenv("LOG_LEVEL")
