"""Application Settings.

Application-wide settings combining the configuration manager with
environment overrides and defaults.
"""

import os
from typing import Optional

from clinport import __version__
from clinport.infrastructure.config_manager import (
    ConfigManager,
    DatabaseConfig,
    ImportConfig,
)

# Application metadata
APP_NAME = "Clinport"
APP_VERSION = __version__


class Settings:
    """Application settings loaded from the configuration manager and environment.

    Store and import configuration are loaded lazily on first access, so
    importing this module never touches the filesystem.
    """

    def __init__(self):
        """Initialize settings from environment."""
        self._config_manager: Optional[ConfigManager] = None

        self.app_name = os.getenv("CLINPORT_APP_NAME", APP_NAME)

        # Logging
        self.log_level = os.getenv("CLINPORT_LOG_LEVEL", "INFO")
        self.log_json = os.getenv("CLINPORT_LOG_JSON", "false").lower() == "true"

    @property
    def config_manager(self) -> ConfigManager:
        if self._config_manager is None:
            self._config_manager = ConfigManager.from_environment()
        return self._config_manager

    @property
    def db_config(self) -> DatabaseConfig:
        return self.config_manager.get_database_config()

    @property
    def import_config(self) -> ImportConfig:
        return self.config_manager.get_import_config()

    def get_db_path(self) -> str:
        """Database path for DuckDB, or ':memory:'."""
        return self.db_config.db_path or ":memory:"

    def reload(self) -> None:
        """Drop cached configuration so the next access re-reads the environment."""
        self._config_manager = None


# Global settings instance
settings = Settings()
