"""Unit tests for the configuration manager."""

import json
import os

import pytest
from pydantic import ValidationError

from clinport.domain.enums import DuplicateStrategy
from clinport.infrastructure.config_manager import (
    ConfigManager,
    DatabaseConfig,
    ImportConfig,
    parse_file_size,
)

ENV_NAMES = (
    "CLINPORT_DB_TYPE",
    "CLINPORT_DB_PATH",
    "CLINPORT_MAX_INPUT_SIZE",
    "CLINPORT_DUPLICATE_STRATEGY",
    "CLINPORT_DEFAULT_LOCATION",
    "CLINPORT_LOG_SAMPLE_BURST",
    "CLINPORT_LOG_SAMPLE_EVERY",
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Remove Clinport variables and return a path to a .env file that does not exist."""
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    return str(tmp_path / "absent.env")


class TestParseFileSize:
    """Test human-readable size parsing."""

    @pytest.mark.parametrize("value,expected", [
        ("50MB", 50 * 1024 * 1024),
        ("512kb", 512 * 1024),
        ("10", 10),
        ("1.5KB", 1536),
        ("2 GB", 2 * 1024 ** 3),
        (4096, 4096),
    ])
    def test_valid_sizes(self, value, expected):
        assert parse_file_size(value) == expected

    @pytest.mark.parametrize("value", ["", "lots", "5TB", "-1MB"])
    def test_invalid_sizes(self, value):
        with pytest.raises(ValueError):
            parse_file_size(value)


class TestConfigModels:
    """Test Pydantic validation of configuration sections."""

    def test_database_defaults(self):
        config = DatabaseConfig()
        assert config.db_type == "duckdb"
        assert config.db_path is None

    def test_database_type_is_normalized(self):
        assert DatabaseConfig(db_type="DuckDB").db_type == "duckdb"

    def test_unsupported_database_type(self):
        with pytest.raises(ValidationError):
            DatabaseConfig(db_type="oracle")

    def test_database_directory_must_exist(self, tmp_path):
        with pytest.raises(ValidationError):
            DatabaseConfig(db_path=str(tmp_path / "missing" / "db.duckdb"))

    def test_import_config(self):
        config = ImportConfig(max_input_size="1KB", duplicate_strategy="update")
        assert config.max_input_bytes == 1024
        assert config.duplicate_strategy == DuplicateStrategy.UPDATE
        assert config.default_location_cd == "Data Import"

    def test_import_config_rejects_bad_size(self):
        with pytest.raises(ValidationError):
            ImportConfig(max_input_size="huge")


class TestFromEnvironment:
    """Test loading configuration from environment variables."""

    def test_defaults(self, clean_env):
        config = ConfigManager.from_environment(env_file=clean_env)

        assert config.get_database_config().db_path is None
        import_config = config.get_import_config()
        assert import_config.max_input_size == "50MB"
        assert import_config.duplicate_strategy == DuplicateStrategy.SKIP

    def test_environment_overrides(self, clean_env, monkeypatch, tmp_path):
        monkeypatch.setenv("CLINPORT_DB_PATH", str(tmp_path / "store.duckdb"))
        monkeypatch.setenv("CLINPORT_MAX_INPUT_SIZE", "2MB")
        monkeypatch.setenv("CLINPORT_DUPLICATE_STRATEGY", "error")
        monkeypatch.setenv("CLINPORT_DEFAULT_LOCATION", "Registry")
        monkeypatch.setenv("CLINPORT_LOG_SAMPLE_EVERY", "10")

        config = ConfigManager.from_environment(env_file=clean_env)

        assert config.get_database_config().db_path == str(tmp_path / "store.duckdb")
        import_config = config.get_import_config()
        assert import_config.max_input_bytes == 2 * 1024 * 1024
        assert import_config.duplicate_strategy == DuplicateStrategy.ERROR
        assert import_config.default_location_cd == "Registry"
        assert import_config.log_sample_every == 10

    def test_env_file_is_loaded(self, clean_env, tmp_path):
        env_file = tmp_path / "clinport.env"
        env_file.write_text("CLINPORT_MAX_INPUT_SIZE=3KB\n")
        try:
            config = ConfigManager.from_environment(env_file=str(env_file))
            assert config.get_import_config().max_input_bytes == 3 * 1024
        finally:
            os.environ.pop("CLINPORT_MAX_INPUT_SIZE", None)


class TestFromFile:
    """Test loading configuration from a JSON file."""

    def test_from_file(self, tmp_path):
        config_file = tmp_path / "clinport.json"
        config_file.write_text(json.dumps({
            "database": {"db_type": "duckdb", "db_path": ":memory:"},
            "import": {"max_input_size": "5MB", "duplicate_strategy": "update"},
        }))

        config = ConfigManager.from_file(str(config_file))

        assert config.get_database_config().db_path == ":memory:"
        assert config.get_import_config().duplicate_strategy == DuplicateStrategy.UPDATE
        assert config.get("import.max_input_size") == "5MB"
        assert config.get("import.missing", "fallback") == "fallback"
        assert config.get("database.db_type.nested", "x") == "x"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ConfigManager.from_file(str(tmp_path / "nope.json"))

    def test_invalid_json(self, tmp_path):
        config_file = tmp_path / "broken.json"
        config_file.write_text("{not json")
        with pytest.raises(ValueError):
            ConfigManager.from_file(str(config_file))

    def test_non_object(self, tmp_path):
        config_file = tmp_path / "list.json"
        config_file.write_text("[]")
        with pytest.raises(ValueError):
            ConfigManager.from_file(str(config_file))
