"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from ffu_builder.config import DOWNLOAD_KINDS, Settings, get_settings, print_settings_json


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self) -> None:
        """Settings should have sensible defaults."""
        settings = Settings()

        assert settings.cache_dir == Path.home() / ".cache" / "ffubuilder" / "images"
        assert settings.state_dir == Path.home() / ".local" / "share" / "ffubuilder"
        assert "sqlite" in settings.db_url
        assert settings.log_level == "INFO"
        assert settings.max_concurrent_downloads >= 1
        assert settings.max_concurrent_devices == 0
        assert settings.vm_power_off_timeout is None

    def test_settings_from_env(self) -> None:
        """Settings should be loadable from environment variables."""
        with patch.dict(
            os.environ,
            {
                "FFU_LOG_LEVEL": "DEBUG",
                "FFU_MAX_CONCURRENT_DOWNLOADS": "8",
                "FFU_VM_POWER_OFF_TIMEOUT": "1800",
            },
        ):
            settings = Settings()
            assert settings.log_level == "DEBUG"
            assert settings.max_concurrent_downloads == 8
            assert settings.vm_power_off_timeout == 1800

    def test_settings_cache_dir_from_env(self) -> None:
        """Cache dir should be configurable via env."""
        with patch.dict(os.environ, {"FFU_CACHE_DIR": "/tmp/test-cache"}):
            settings = Settings()
            assert settings.cache_dir == Path("/tmp/test-cache")

    def test_rejects_negative_concurrency(self) -> None:
        """Concurrency limits must not be negative."""
        with pytest.raises(ValidationError):
            Settings(max_concurrent_downloads=-1)

    def test_derived_paths(self, tmp_path: Path) -> None:
        """Marker and progress log live in the state directory."""
        settings = Settings(state_dir=tmp_path)
        assert settings.marker_path == tmp_path / "run.marker"
        assert settings.progress_log_path == tmp_path / "progress.log"

    def test_download_kinds(self) -> None:
        """Each download batch has its own subdirectory."""
        assert DOWNLOAD_KINDS == ("drivers", "apps", "updates")


class TestGetSettings:
    """Test get_settings function."""

    def test_get_settings_returns_settings(self) -> None:
        """get_settings should return a Settings instance."""
        settings = get_settings()
        assert isinstance(settings, Settings)


class TestPrintSettingsJson:
    """Test print_settings_json function."""

    def test_print_settings_json(self) -> None:
        """print_settings_json should return valid JSON."""
        settings = Settings()
        parsed = json.loads(print_settings_json(settings))

        assert "cache_dir" in parsed
        assert "work_dir" in parsed
        assert "db_url" in parsed
        assert "max_concurrent_devices" in parsed

    def test_print_settings_json_default(self) -> None:
        """print_settings_json without args should use default settings."""
        parsed = json.loads(print_settings_json())
        assert "cache_dir" in parsed
