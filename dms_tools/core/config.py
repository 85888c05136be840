"""Configuration management for dms-tools."""

from __future__ import annotations

import json
from pathlib import Path

import structlog
from pydantic import BaseModel, Field, field_validator

logger = structlog.get_logger()


class APIConfig(BaseModel):
    """Publishing service API configuration."""

    base_url: str = Field(
        default="https://cie.arc.cubeapis.com/api/",
        description="Base address of the publishing service"
    )
    timeout: float = Field(default=30.0, description="Request timeout in seconds")
    verify_ssl: bool = Field(default=True, description="Verify SSL certificates")
    chunk_size: int = Field(
        default=64 * 1024,
        description="Streaming chunk size for downloads in bytes"
    )
    user_agent: str = Field(default="dms-tools/0.1.0", description="User-Agent header")

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Ensure relative request paths resolve under the base URL."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Base URL must be http(s): {v}")
        return v if v.endswith("/") else f"{v}/"

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Validate timeout value."""
        if v <= 0:
            raise ValueError("Timeout must be positive")
        return v

    @field_validator("chunk_size")
    @classmethod
    def validate_chunk_size(cls, v: int) -> int:
        """Validate chunk size value."""
        if v <= 0:
            raise ValueError("Chunk size must be positive")
        return v


class AppConfig(BaseModel):
    """Application configuration."""

    # Directory settings
    config_dir: Path = Field(
        default=Path.home() / ".config" / "dms-tools",
        description="Configuration directory"
    )
    data_dir: Path = Field(
        default=Path.home() / ".local" / "share" / "dms-tools",
        description="Data directory holding the bundle, documents and state"
    )

    api: APIConfig = Field(default_factory=APIConfig, description="API settings")

    # Bundle settings
    project_id: str | None = Field(default=None, description="Default project ID")
    language: str | None = Field(default=None, description="Default bundle language")
    bundle_dir_name: str = Field(default="CIEBundle", description="Bundle directory name")
    documents_dir_name: str = Field(default="documents", description="Documents cache name")
    manifest_name: str = Field(default="structure.json", description="Manifest file name")
    gate_timeout: float = Field(
        default=30.0,
        description="Seconds a lookup waits for an in-progress bundle replace"
    )

    # Output settings
    output_format: str = Field(
        default="rich",
        description="Output format (rich, json, plain)"
    )
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    def model_post_init(self, __context) -> None:
        """Ensure directories exist."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def bundle_dir(self) -> Path:
        return self.data_dir / self.bundle_dir_name

    @property
    def documents_dir(self) -> Path:
        return self.data_dir / self.documents_dir_name

    @property
    def state_file(self) -> Path:
        return self.data_dir / "state.json"

    @classmethod
    def load(cls, config_file: Path | None = None) -> AppConfig:
        """Load configuration from file.

        Args:
            config_file: Path to config file, uses default if None

        Returns:
            Application configuration
        """
        if config_file is None:
            config_file = Path.home() / ".config" / "dms-tools" / "config.json"

        if config_file.exists():
            with open(config_file) as f:
                data = json.load(f)
                return cls(**data)

        # Return defaults
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

    @field_validator("bundle_dir_name", "documents_dir_name", "manifest_name")
    @classmethod
    def validate_plain_name(cls, v: str) -> str:
        """Directory and file names must be single path components."""
        if not v or v in {".", ".."} or "/" in v or "\\" in v:
            raise ValueError(f"Invalid name: {v!r}")
        return v

    @field_validator("gate_timeout")
    @classmethod
    def validate_gate_timeout(cls, v: float) -> float:
        """Validate gate timeout value."""
        if v < 0:
            raise ValueError("Gate timeout must be non-negative")
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
