"""Configuration management for Gallery Sync using Pydantic.

This module provides type-safe configuration models for the remote gallery,
local storage, state database, sync pipeline tuning, migration guards,
retry policy, and logging.
"""

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# One GiB, the free-space floor for migrating to local storage
MIN_STORAGE_BYTES = 1_073_741_824


class GalleryConfig(BaseModel):
    """Configuration for the remote gallery API."""

    url: str = Field(default="", description="Gallery API base URL")
    token: str = Field(default="", description="API authentication token")
    property_id: str = Field(default="", description="Website property ID")
    verify_ssl: bool = Field(default=True, description="Verify SSL certificates")
    timeout: int = Field(default=30, ge=1, le=300, description="API request timeout in seconds")
    rate_limit: int = Field(default=10, ge=0, le=100, description="Maximum requests per second")
    max_connections: int = Field(default=20, ge=1, le=200)
    max_keepalive_connections: int = Field(default=10, ge=1, le=200)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate and normalize URL."""
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v.rstrip("/")

    @property
    def is_configured(self) -> bool:
        """Whether URL, token and property ID are all present."""
        return bool(self.url and self.token and self.property_id)


class StorageConfig(BaseModel):
    """Configuration for durable file storage."""

    sync_dir: str = Field(default="./data/sync", description="Directory for sync artifacts")
    upload_dir: str = Field(default="./data/uploads", description="Directory for case images")
    export_dir: str = Field(default="./data/exports", description="Directory for export files")
    artifact_max_age_days: int = Field(
        default=0,
        ge=0,
        le=365,
        description="Days before today that sync artifacts stay current (0 = today only)",
    )
    min_free_bytes: int = Field(
        default=MIN_STORAGE_BYTES,
        ge=0,
        description="Free space required before migrating to local storage",
    )


class StateConfig(BaseModel):
    """Content store database configuration."""

    db_path: str = Field(default="./gallery_sync.db", description="Path or URL of the database")
    db_pool_size: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Number of connections to maintain in the pool (PostgreSQL only)",
    )
    db_max_overflow: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Maximum number of connections to create beyond pool_size (PostgreSQL only)",
    )
    db_pool_timeout: int = Field(default=30, ge=1, le=300)
    db_pool_recycle: int = Field(default=3600, ge=60, le=28800)

    @property
    def database_url(self) -> str:
        """Full SQLAlchemy URL; bare paths are treated as SQLite files."""
        if self.db_path.startswith(("postgresql://", "postgresql+", "sqlite://", "mysql://")):
            return self.db_path
        return f"sqlite:///{self.db_path}"


class SyncTuningConfig(BaseModel):
    """Sync pipeline tuning."""

    batch_size: int = Field(default=5, ge=1, le=1000, description="Cases per Stage 3 batch")
    max_pages: int = Field(default=100, ge=1, le=10000, description="Page cap per procedure")
    page_delay: float = Field(default=0.1, ge=0, le=10, description="Pause between pages (s)")
    batch_pause: float = Field(default=0.01, ge=0, le=10, description="Pause between batches (s)")
    error_cap: int = Field(default=1000, ge=1, description="Maximum recorded Stage 3 errors")
    download_images: bool = Field(default=True, description="Download case images locally")
    progress_ttl: int = Field(default=300, ge=10, description="Progress slot lifetime (s)")
    source: str = Field(default="manual", description="Sync source recorded in the sync log")
    log_retention_days: int = Field(
        default=90, ge=1, description="Sync-log rows older than this are pruned"
    )

    @field_validator("source")
    @classmethod
    def validate_source(cls, v: str) -> str:
        """Validate sync source."""
        valid_sources = ["manual", "automatic", "cron", "rest_api"]
        if v not in valid_sources:
            raise ValueError(f"Sync source must be one of: {', '.join(valid_sources)}")
        return v


class MigrationGuardConfig(BaseModel):
    """Resource budgets and locking for mode migrations."""

    min_memory_mb: int = Field(default=128, ge=0, description="Minimum available memory (MB)")
    min_execution_seconds: int = Field(
        default=300, ge=0, description="Minimum execution time budget when one is set"
    )
    execution_time_limit: int | None = Field(
        default=None, description="Caller-imposed time budget in seconds (None = unlimited)"
    )
    lease_seconds: int = Field(
        default=3600, ge=60, description="Lifetime of the migration lease before takeover"
    )


class RetryConfig(BaseModel):
    """Retry policy for remote gallery calls."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    min_wait: float = Field(default=1, ge=0)
    max_wait: float = Field(default=10, ge=0)

    @model_validator(mode="after")
    def validate_waits(self) -> "RetryConfig":
        """Ensure min_wait does not exceed max_wait."""
        if self.min_wait > self.max_wait:
            raise ValueError("retry.min_wait must not exceed retry.max_wait")
        return self


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="WARNING",
        description="Console log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    file_level: str = Field(default="DEBUG", description="File log level")
    format: str = Field(default="json", description="Log format (json or console)")
    file: str | None = Field(default="logs/gallery-sync.log", description="Log file path")
    disable_progress: bool = Field(default=False, description="Disable console progress bars")
    log_payloads: bool = Field(
        default=False,
        description=(
            "Enable request/response payload logging at DEBUG level. "
            "Tokens are redacted."
        ),
    )
    max_payload_size: int = Field(default=10000, ge=100, le=1000000)

    @field_validator("level", "file_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(valid_levels)}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format."""
        valid_formats = ["json", "console"]
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Log format must be one of: {', '.join(valid_formats)}")
        return v_lower


class SyncConfig(BaseSettings):
    """Main Gallery Sync configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GALLERY_SYNC_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    gallery: GalleryConfig = Field(default_factory=GalleryConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    sync: SyncTuningConfig = Field(default_factory=SyncTuningConfig)
    migration: MigrationGuardConfig = Field(default_factory=MigrationGuardConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config_from_yaml(config_path: str | Path) -> SyncConfig:
    """Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        SyncConfig: Loaded configuration

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config file is empty or invalid
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        config_data = yaml.safe_load(f)

    if not config_data:
        raise ValueError(f"Empty configuration file: {config_path}")

    config_data = _expand_env_vars(config_data)

    return SyncConfig(**config_data)


def _expand_env_vars(data: dict) -> dict:
    """Recursively expand environment variables in config dict.

    Supports ${VAR_NAME} syntax for environment variable substitution.

    Args:
        data: Configuration dictionary

    Returns:
        dict: Dictionary with expanded environment variables
    """
    if isinstance(data, dict):
        return {k: _expand_env_vars(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    elif isinstance(data, str):
        if data.startswith("${") and data.endswith("}"):
            var_name = data[2:-1]
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ValueError(
                    f"Environment variable '{var_name}' not found. "
                    f"Please set it in your environment or .env file."
                )
            return env_value
        return data
    else:
        return data


def save_config_to_yaml(config: SyncConfig, output_path: str | Path) -> None:
    """Save configuration to YAML file with the API token masked.

    Args:
        config: Configuration to save
        output_path: Path to output YAML file
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    config_dict = config.model_dump()
    if config_dict["gallery"].get("token"):
        config_dict["gallery"]["token"] = "${GALLERY_API_TOKEN}"

    with open(output_path, "w") as f:
        yaml.dump(config_dict, f, default_flow_style=False, sort_keys=False)
