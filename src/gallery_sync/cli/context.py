"""
CLI context for Gallery Sync.

This module provides the context object that is passed to all CLI commands,
holding the configuration and the lazily built service.
"""

from dataclasses import dataclass, field
from pathlib import Path

from gallery_sync.config import SyncConfig, load_config_from_yaml
from gallery_sync.service import GalleryService
from gallery_sync.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class SyncContext:
    """
    Context object for CLI commands.

    Attributes:
        config_path: Path to configuration file (environment-only when None)
        log_level: Console logging level
        log_file: Optional log file path
    """

    config_path: Path | None = None
    log_level: str = "WARNING"
    log_file: Path | None = None

    # Lazy-loaded attributes
    _config: SyncConfig | None = field(default=None, init=False, repr=False)
    _service: GalleryService | None = field(default=None, init=False, repr=False)

    @property
    def config(self) -> SyncConfig:
        """Get or load configuration.

        Without a config file, settings come from GALLERY_SYNC_* environment
        variables and their defaults.
        """
        if self._config is None:
            if self.config_path is None:
                logger.debug("config_loaded_from_environment")
                self._config = SyncConfig()
            else:
                logger.debug("config_loading", config_path=str(self.config_path))
                self._config = load_config_from_yaml(self.config_path)
        return self._config

    @property
    def service(self) -> GalleryService:
        """Get or create the gallery service."""
        if self._service is None:
            logger.debug("service_creating", database_path=self.config.state.db_path)
            self._service = GalleryService(self.config)
        return self._service
