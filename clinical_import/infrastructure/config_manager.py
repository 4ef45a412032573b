"""Configuration Manager.

This module loads import and database configuration from environment
variables (optionally seeded from a ``.env`` file) or from a JSON file, and
validates it with pydantic before any import runs.

Architecture:
    - Infrastructure layer, isolated from the domain
    - Type-safe configuration using Pydantic models
    - Fail-fast validation prevents runtime errors

Environment Variables:
    - CI_DB_TYPE: Database type (only ``duckdb``)
    - CI_DB_PATH: Path to the DuckDB file (``:memory:`` when unset)
    - CI_BATCH_SIZE: Commands per transaction in ``batch`` mode
    - CI_DUPLICATE_HANDLING: skip | update | error
    - CI_TRANSACTION_MODE: single | batch | none
    - CI_MAX_FILE_SIZE: Size limit such as ``50MB``
    - CI_RETRY_MAX_ATTEMPTS: Storage attempts per call
    - CI_RETRY_BACKOFF: Base backoff in seconds
    - CI_STORAGE_TIMEOUT: Per-call storage timeout in seconds
    - CI_HL7_ASSIGNMENT: positional | explicit
    - CI_VALIDATE_DATA: Run business-rule validation (true/false)
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from clinical_import.domain.enums import DuplicateHandling, Hl7Assignment, ImportFormat, TransactionMode
from clinical_import.domain.guardrails import RetryPolicy
from clinical_import.domain.normalizers import DEFAULT_MAX_FILE_SIZE, parse_file_size

logger = logging.getLogger(__name__)


_IMPORT_ENV = {
    "batch_size": "CI_BATCH_SIZE",
    "duplicate_handling": "CI_DUPLICATE_HANDLING",
    "transaction_mode": "CI_TRANSACTION_MODE",
    "max_file_size": "CI_MAX_FILE_SIZE",
    "retry_max_attempts": "CI_RETRY_MAX_ATTEMPTS",
    "retry_backoff_seconds": "CI_RETRY_BACKOFF",
    "storage_timeout_seconds": "CI_STORAGE_TIMEOUT",
    "hl7_assignment": "CI_HL7_ASSIGNMENT",
    "validate_data": "CI_VALIDATE_DATA",
}


class DatabaseConfig(BaseModel):
    """Database configuration.

    Parameters:
        db_type: Type of database (only 'duckdb' is supported)
        db_path: Path to database file, or ':memory:'
    """

    db_type: str = Field("duckdb", description="Database type")
    db_path: Optional[str] = Field(None, description="Path to database file")

    @field_validator("db_type")
    @classmethod
    def validate_db_type(cls, v: str) -> str:
        """Validate database type."""
        if v.lower() != "duckdb":
            raise ValueError(f"Unsupported database type: {v}. Supported: ['duckdb']")
        return v.lower()

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: Optional[str]) -> Optional[str]:
        """Validate the database directory exists (the file may not yet)."""
        if v is None or v == ":memory:":
            return v
        db_path_obj = Path(v)
        if not db_path_obj.parent.exists():
            raise ValueError(f"Database directory does not exist: {db_path_obj.parent}")
        return str(db_path_obj)

    def get_db_path(self) -> str:
        return self.db_path or ":memory:"


class ImportConfig(BaseModel):
    """Defaults applied to every import unless overridden per call.

    Parameters:
        max_file_size: Byte limit; accepts ``"50MB"``-style strings
        duplicate_handling: Policy for rows whose natural key already exists
        batch_size: Commands per transaction in ``batch`` mode
        transaction_mode: single | batch | none
        validate_data: Run the business-rule validation pass
        retry_max_attempts: Storage attempts per call (including the first)
        retry_backoff_seconds: Linear backoff base
        storage_timeout_seconds: Optional per-call timeout
        hl7_assignment: HL7 patient/visit linking strategy
        supported_formats: Formats the orchestrator accepts
    """

    max_file_size: int = Field(DEFAULT_MAX_FILE_SIZE, gt=0)
    duplicate_handling: DuplicateHandling = DuplicateHandling.SKIP
    batch_size: int = Field(1000, ge=1)
    transaction_mode: TransactionMode = TransactionMode.SINGLE
    validate_data: bool = True
    retry_max_attempts: int = Field(3, ge=1)
    retry_backoff_seconds: float = Field(0.1, ge=0)
    storage_timeout_seconds: Optional[float] = Field(None, gt=0)
    hl7_assignment: Hl7Assignment = Hl7Assignment.POSITIONAL
    supported_formats: list[ImportFormat] = Field(
        default_factory=lambda: [ImportFormat.CSV, ImportFormat.JSON, ImportFormat.HL7, ImportFormat.HTML]
    )

    @field_validator("max_file_size", mode="before")
    @classmethod
    def parse_size(cls, v: Any) -> int:
        return parse_file_size(v)

    @field_validator("duplicate_handling", "transaction_mode", "hl7_assignment", mode="before")
    @classmethod
    def lowercase_codes(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            backoff_seconds=self.retry_backoff_seconds,
            timeout_seconds=self.storage_timeout_seconds,
        )


class ConfigManager:
    """Unified access to configuration loaded from the environment or a file.

    Example Usage:
        ```python
        config = ConfigManager.from_environment()
        import_config = config.get_import_config()

        config = ConfigManager.from_file("config.json")
        db_config = config.get_database_config()
        ```
    """

    def __init__(self, config_data: dict[str, Any]):
        """Initialize configuration manager.

        Parameters:
            config_data: Configuration dictionary with optional ``database``
                and ``import`` sections
        """
        self._config_data = config_data
        self._database_config: Optional[DatabaseConfig] = None
        self._import_config: Optional[ImportConfig] = None

    @classmethod
    def from_environment(cls, env_file: Optional[Union[str, Path]] = None) -> "ConfigManager":
        """Load configuration from ``CI_*`` environment variables.

        Parameters:
            env_file: ``.env`` file to load first; defaults to ``./.env``.
                Variables already set in the environment take precedence.

        Returns:
            ConfigManager instance
        """
        env_path = Path(env_file) if env_file else Path.cwd() / ".env"
        if env_path.exists():
            load_dotenv(env_path)
            logger.debug(f"Loaded environment variables from {env_path}")

        import_section = {
            key: os.environ[name]
            for key, name in _IMPORT_ENV.items()
            if os.environ.get(name, "").strip()
        }
        config_data = {
            "database": {
                "db_type": os.getenv("CI_DB_TYPE", "duckdb"),
                "db_path": os.getenv("CI_DB_PATH") or None,
            },
            "import": import_section,
        }
        return cls(config_data)

    @classmethod
    def from_file(cls, config_path: Union[str, Path]) -> "ConfigManager":
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
            with open(config_file, "r", encoding="utf-8") as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file: {str(e)}")
        if not isinstance(config_data, dict):
            raise ValueError("Configuration file must contain a JSON object")
        return cls(config_data)

    def get_database_config(self) -> DatabaseConfig:
        if self._database_config is None:
            self._database_config = DatabaseConfig(**(self._config_data.get("database") or {}))
        return self._database_config

    def get_import_config(self) -> ImportConfig:
        if self._import_config is None:
            self._import_config = ImportConfig(**(self._config_data.get("import") or {}))
        return self._import_config

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by dotted key (e.g. ``"database.db_path"``)."""
        value: Any = self._config_data
        for k in key.split("."):
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


def get_import_config() -> ImportConfig:
    """Import defaults from the environment."""
    return ConfigManager.from_environment().get_import_config()
