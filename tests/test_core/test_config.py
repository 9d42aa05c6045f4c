"""Tests for config.py module."""

import json
from pathlib import Path

import pytest

from lux_patcher.core.config import AppConfig, FetchConfig


class TestFetchConfig:
    """Test FetchConfig class."""

    def test_default_values(self):
        """Test default configuration values."""
        config = FetchConfig()
        assert config.timeout == 30.0
        assert config.max_retries == 3
        assert config.base_backoff == 0.5
        assert config.max_backoff == 8.0
        assert config.verify_ssl is True

    def test_timeout_validation(self):
        """Test timeout must be positive."""
        with pytest.raises(ValueError):
            FetchConfig(timeout=0)

    def test_max_retries_validation(self):
        """Test at least one attempt is required."""
        FetchConfig(max_retries=1)
        with pytest.raises(ValueError):
            FetchConfig(max_retries=0)

    def test_backoff_validation(self):
        """Test backoff delays must be non-negative."""
        FetchConfig(base_backoff=0, max_backoff=0)
        with pytest.raises(ValueError):
            FetchConfig(base_backoff=-1)


class TestAppConfig:
    """Test AppConfig class."""

    def test_default_values(self):
        """Test default configuration values."""
        config = AppConfig()
        assert config.config_dir == Path.home() / ".config" / "lux-patcher"
        assert config.cfg_url is None
        assert config.environment == "live"
        assert config.concurrency == 4
        assert config.staging_dir == ".lux_staging"
        assert config.use_quickcheck is True
        assert isinstance(config.fetch, FetchConfig)
        assert config.output_format == "rich"
        assert config.log_level == "INFO"

    def test_concurrency_validation(self):
        """Test concurrency must be at least 1."""
        with pytest.raises(ValueError):
            AppConfig(concurrency=0)

    def test_staging_dir_validation(self):
        """Test staging must be a relative path inside the install dir."""
        AppConfig(staging_dir="tmp/staging")
        with pytest.raises(ValueError):
            AppConfig(staging_dir="/tmp/staging")
        with pytest.raises(ValueError):
            AppConfig(staging_dir="../staging")

    def test_output_format_validation(self):
        """Test output format choices."""
        for fmt in ("rich", "json", "plain"):
            AppConfig(output_format=fmt)
        with pytest.raises(ValueError):
            AppConfig(output_format="xml")

    def test_log_level_validation(self):
        """Test log level choices."""
        AppConfig(log_level="DEBUG")
        with pytest.raises(ValueError):
            AppConfig(log_level="VERBOSE")

    def test_load_missing_file(self, temp_dir):
        """Test defaults are used when the file does not exist."""
        config = AppConfig.load(temp_dir / "missing.json")
        assert config == AppConfig()

    def test_load_from_file(self, temp_dir):
        """Test values are read from JSON."""
        config_file = temp_dir / "config.json"
        config_file.write_text(
            json.dumps({"environment": "test", "concurrency": 8, "fetch": {"timeout": 5}})
        )
        config = AppConfig.load(config_file)
        assert config.environment == "test"
        assert config.concurrency == 8
        assert config.fetch.timeout == 5

    def test_save_and_load(self, temp_dir):
        """Test a saved config loads back equal."""
        config_file = temp_dir / "nested" / "config.json"
        config = AppConfig(cfg_url="http://config.test/", concurrency=2)
        config.save(config_file)

        assert config_file.exists()
        assert AppConfig.load(config_file) == config
