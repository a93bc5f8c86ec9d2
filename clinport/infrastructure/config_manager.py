"""Configuration Manager.

This module loads store and import configuration from environment variables
(optionally seeded from a ``.env`` file) or from a JSON file, and validates it
with Pydantic before use.

Architecture:
    - Infrastructure layer, isolated from the domain
    - Type-safe configuration using Pydantic models
    - Fail-fast validation prevents runtime errors
"""

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from clinport.domain.enums import DuplicateStrategy

logger = logging.getLogger(__name__)

ENV_PREFIX = "CLINPORT_"

DEFAULT_MAX_INPUT_SIZE = "50MB"

_SIZE_UNITS = {
    "B": 1,
    "KB": 1024,
    "MB": 1024 ** 2,
    "GB": 1024 ** 3,
}
_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(B|KB|MB|GB)?\s*$", re.IGNORECASE)


def parse_file_size(size: Any) -> int:
    """Parse a human-readable size such as ``50MB`` or ``512KB`` into bytes.

    Parameters:
        size: Size string (B, KB, MB, GB; unit defaults to bytes) or an int

    Returns:
        Size in bytes

    Raises:
        ValueError: If the size cannot be parsed
    """
    if isinstance(size, int) and not isinstance(size, bool):
        return size
    match = _SIZE_PATTERN.match(str(size))
    if not match:
        raise ValueError(f"Invalid size: {size!r}. Expected e.g. '50MB', '512KB', '1GB'")
    number, unit = match.groups()
    return int(float(number) * _SIZE_UNITS[(unit or "B").upper()])


class DatabaseConfig(BaseModel):
    """Clinical store configuration.

    Parameters:
        db_type: Type of database (only ``duckdb`` is supported)
        db_path: Path to the database file, or ``:memory:``
    """

    db_type: str = Field("duckdb", description="Database type")
    db_path: Optional[str] = Field(None, description="Path to database file (for DuckDB)")

    @field_validator("db_type")
    @classmethod
    def validate_db_type(cls, v: str) -> str:
        """Validate database type."""
        supported_types = ["duckdb"]
        if v.lower() not in supported_types:
            raise ValueError(f"Unsupported database type: {v}. Supported: {supported_types}")
        return v.lower()

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: Optional[str]) -> Optional[str]:
        """Validate the database directory exists (the file may not exist yet)."""
        if v is None or v == ":memory:":
            return v

        db_path_obj = Path(v)
        if not db_path_obj.parent.exists():
            raise ValueError(f"Database directory does not exist: {db_path_obj.parent}")

        return str(db_path_obj)


class ImportConfig(BaseModel):
    """Import pipeline settings.

    Parameters:
        max_input_size: Largest accepted input, e.g. ``50MB``
        duplicate_strategy: Default duplicate policy for patients
        default_location_cd: Location of synthesized default visits
        default_inout_cd: Visit type of synthesized default visits
        log_sample_burst: Messages logged per key before sampling starts
        log_sample_every: After the burst, log every n-th message per key
    """

    max_input_size: str = Field(DEFAULT_MAX_INPUT_SIZE, description="Maximum input size")
    duplicate_strategy: DuplicateStrategy = Field(DuplicateStrategy.SKIP)
    default_location_cd: str = Field("Data Import")
    default_inout_cd: str = Field("O")
    log_sample_burst: int = Field(5, ge=0)
    log_sample_every: int = Field(100, ge=1)

    @field_validator("max_input_size", mode="before")
    @classmethod
    def validate_max_input_size(cls, v) -> str:
        parse_file_size(v)
        return str(v)

    @property
    def max_input_bytes(self) -> int:
        return parse_file_size(self.max_input_size)


class ConfigManager:
    """Configuration manager for store and import settings.

    Example Usage:
        ```python
        # Load from environment variables
        config = ConfigManager.from_environment()
        db_config = config.get_database_config()

        # Load from file
        config = ConfigManager.from_file("clinport.json")
        import_config = config.get_import_config()
        ```
    """

    def __init__(self, config_data: Dict[str, Any]):
        """Initialize configuration manager.

        Parameters:
            config_data: Configuration dictionary with ``database`` and
                ``import`` sections
        """
        self._config_data = config_data
        self._database_config: Optional[DatabaseConfig] = None
        self._import_config: Optional[ImportConfig] = None

    @classmethod
    def from_environment(cls, env_file: Optional[str] = None) -> 'ConfigManager':
        """Load configuration from environment variables.

        Environment Variables:
            - CLINPORT_DB_TYPE: Database type (duckdb)
            - CLINPORT_DB_PATH: Path to database file
            - CLINPORT_MAX_INPUT_SIZE: Maximum input size (e.g. 50MB)
            - CLINPORT_DUPLICATE_STRATEGY: skip, update or error
            - CLINPORT_DEFAULT_LOCATION: Location of synthesized visits
            - CLINPORT_LOG_SAMPLE_BURST / CLINPORT_LOG_SAMPLE_EVERY: log sampling

        Parameters:
            env_file: Optional ``.env`` file; defaults to ``.env`` in the
                working directory when present

        Returns:
            ConfigManager instance
        """
        env_path = Path(env_file) if env_file else Path.cwd() / ".env"
        if env_path.exists():
            load_dotenv(env_path)
            logger.debug(f"Loaded environment variables from {env_path}")

        def env(name: str, default: Optional[str] = None) -> Optional[str]:
            return os.getenv(f"{ENV_PREFIX}{name}", default)

        import_section: Dict[str, Any] = {
            "max_input_size": env("MAX_INPUT_SIZE", DEFAULT_MAX_INPUT_SIZE),
            "duplicate_strategy": env("DUPLICATE_STRATEGY", DuplicateStrategy.SKIP.value),
        }
        if env("DEFAULT_LOCATION"):
            import_section["default_location_cd"] = env("DEFAULT_LOCATION")
        if env("LOG_SAMPLE_BURST"):
            import_section["log_sample_burst"] = int(env("LOG_SAMPLE_BURST"))
        if env("LOG_SAMPLE_EVERY"):
            import_section["log_sample_every"] = int(env("LOG_SAMPLE_EVERY"))

        config_data = {
            "database": {
                "db_type": env("DB_TYPE", "duckdb"),
                "db_path": env("DB_PATH"),
            },
            "import": import_section,
        }

        return cls(config_data)

    @classmethod
    def from_file(cls, config_path: str) -> 'ConfigManager':
        """Load configuration from a JSON file.

        Parameters:
            config_path: Path to configuration file

        Returns:
            ConfigManager instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config file is invalid
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file: {str(e)}")

        if not isinstance(config_data, dict):
            raise ValueError("Configuration file must contain a JSON object")

        return cls(config_data)

    def get_database_config(self) -> DatabaseConfig:
        """Get the validated database configuration."""
        if self._database_config is None:
            self._database_config = DatabaseConfig(**self._config_data.get("database", {}))
        return self._database_config

    def get_import_config(self) -> ImportConfig:
        """Get the validated import configuration."""
        if self._import_config is None:
            self._import_config = ImportConfig(**self._config_data.get("import", {}))
        return self._import_config

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key.

        Parameters:
            key: Configuration key (supports dot notation, e.g., "import.max_input_size")
            default: Default value if key not found
        """
        keys = key.split(".")
        value = self._config_data

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default

        return value if value is not None else default


# ============================================================================
# Convenience Functions
# ============================================================================

def get_database_config() -> DatabaseConfig:
    """Database configuration from the environment (in-memory DuckDB by default)."""
    return ConfigManager.from_environment().get_database_config()
