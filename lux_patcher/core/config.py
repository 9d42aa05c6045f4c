"""Configuration management for lux-patcher."""

from __future__ import annotations

import json
from pathlib import Path

import structlog
from pydantic import BaseModel, Field, field_validator

logger = structlog.get_logger()


class FetchConfig(BaseModel):
    """Patch server fetch configuration."""

    timeout: float = Field(default=30.0, description="Request timeout in seconds")
    max_retries: int = Field(default=3, description="Maximum attempts per request")
    base_backoff: float = Field(default=0.5, description="Base backoff delay in seconds")
    max_backoff: float = Field(default=8.0, description="Upper bound on a single backoff delay")
    verify_ssl: bool = Field(default=True, description="Verify SSL certificates")

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Validate timeout value."""
        if v <= 0:
            raise ValueError("Timeout must be positive")
        return v

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        """Validate attempt count."""
        if v < 1:
            raise ValueError("Max retries must be at least 1")
        return v

    @field_validator("base_backoff", "max_backoff")
    @classmethod
    def validate_backoff(cls, v: float) -> float:
        """Validate backoff delays."""
        if v < 0:
            raise ValueError("Backoff must be non-negative")
        return v


class AppConfig(BaseModel):
    """Application configuration."""

    config_dir: Path = Field(
        default=Path.home() / ".config" / "lux-patcher",
        description="Configuration directory"
    )

    # Environment lookup
    cfg_url: str | None = Field(
        default=None,
        description="Base URL of the universe configuration service"
    )
    environment: str = Field(default="live", description="Environment name")

    # Patching
    concurrency: int = Field(default=4, description="Concurrent operations")
    staging_dir: str = Field(
        default=".lux_staging",
        description="Staging directory, relative to the install directory"
    )
    use_quickcheck: bool = Field(
        default=True,
        description="Persist local file hashes between runs"
    )
    fetch: FetchConfig = Field(default_factory=FetchConfig)

    # Output settings
    output_format: str = Field(
        default="rich",
        description="Output format (rich, json, plain)"
    )
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    @classmethod
    def load(cls, config_file: Path | None = None) -> AppConfig:
        """Load configuration from file.

        Args:
            config_file: Path to config file, uses default if None

        Returns:
            Application configuration
        """
        if config_file is None:
            config_file = Path.home() / ".config" / "lux-patcher" / "config.json"

        if config_file.exists():
            with open(config_file) as f:
                data = json.load(f)
                return cls(**data)

        return cls()

    def save(self, config_file: Path | None = None) -> None:
        """Save configuration to file.

        Args:
            config_file: Path to config file, uses default if None
        """
        if config_file is None:
            config_file = self.config_dir / "config.json"

        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2, default=str)

        logger.info("config_saved", path=str(config_file))

    @field_validator("concurrency")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        """Validate worker count."""
        if v < 1:
            raise ValueError("Concurrency must be at least 1")
        return v

    @field_validator("staging_dir")
    @classmethod
    def validate_staging_dir(cls, v: str) -> str:
        """Staging must stay inside the install directory."""
        if not v or Path(v).is_absolute() or ".." in Path(v).parts:
            raise ValueError(f"Staging directory must be a relative path: {v!r}")
        return v

    @field_validator("output_format")
    @classmethod
    def validate_output_format(cls, v: str) -> str:
        """Validate output format."""
        valid_formats = {"rich", "json", "plain"}
        if v not in valid_formats:
            raise ValueError(f"Invalid output format: {v}. Valid formats: {valid_formats}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Valid levels: {valid_levels}")
        return v
