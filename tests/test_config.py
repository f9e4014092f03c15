"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from probe_builder.config import (
    ConfigurationError,
    Settings,
    get_settings,
    print_settings_json,
    require_build_parameters,
)


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self) -> None:
        """Settings should have sensible defaults."""
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings()

        assert settings.work_dir == Path.home() / ".cache" / "probe-builder"
        assert (
            settings.output_dir
            == Path.home() / ".local" / "share" / "probe-builder" / "output"
        )
        assert settings.builder_dir == Path("builder")
        assert settings.probe_name is None
        assert settings.arch == "x86_64"
        assert settings.fetch_concurrency >= 1
        assert settings.fetch_retries == 3
        assert settings.strict_fetch is False
        assert settings.build_timeout is None
        assert settings.log_level == "INFO"

    def test_settings_from_env(self) -> None:
        """Settings should be loadable from environment variables."""
        with patch.dict(
            os.environ,
            {
                "PROBE_BUILDER_PROBE_NAME": "falco-probe",
                "PROBE_BUILDER_FETCH_CONCURRENCY": "0",
                "PROBE_BUILDER_STRICT_FETCH": "true",
                "PROBE_BUILDER_LOG_LEVEL": "DEBUG",
                "PROBE_BUILDER_OUTPUT_DIR": "/tmp/probes",
            },
        ):
            settings = Settings()
            assert settings.probe_name == "falco-probe"
            assert settings.fetch_concurrency == 0
            assert settings.strict_fetch is True
            assert settings.log_level == "DEBUG"
            assert settings.output_dir == Path("/tmp/probes")

    def test_rejects_negative_concurrency(self) -> None:
        """Fetch concurrency cannot be negative."""
        with pytest.raises(ValidationError):
            Settings(fetch_concurrency=-1)

    def test_missing_build_parameters(self) -> None:
        """Should name every unset mandatory parameter."""
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings(probe_version="1.0")
        assert settings.missing_build_parameters() == ["probe_name", "probe_source_dir"]


class TestRequireBuildParameters:
    """Test require_build_parameters function."""

    def test_missing(self) -> None:
        """Should raise ConfigurationError listing the missing parameters."""
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings()
        with pytest.raises(ConfigurationError) as exc_info:
            require_build_parameters(settings)
        assert exc_info.value.code == "missing_parameters"
        assert "probe_name" in str(exc_info.value)

    def test_missing_source_dir(self, tmp_path) -> None:
        """The probe source must be an existing directory."""
        settings = Settings(
            probe_name="p", probe_version="1", probe_source_dir=tmp_path / "none"
        )
        with pytest.raises(ConfigurationError) as exc_info:
            require_build_parameters(settings)
        assert exc_info.value.code == "missing_source"

    def test_complete(self, tmp_path) -> None:
        """Complete parameters pass."""
        settings = Settings(probe_name="p", probe_version="1", probe_source_dir=tmp_path)
        require_build_parameters(settings)


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

        assert "work_dir" in parsed
        assert "output_dir" in parsed
        assert "builder_dir" in parsed
        assert "fetch_concurrency" in parsed

    def test_print_settings_json_default(self) -> None:
        """print_settings_json without args should use default settings."""
        parsed = json.loads(print_settings_json())
        assert "probe_name" in parsed
