"""Application Settings.

This module combines configuration from the configuration manager with
application-level defaults (name, version, logging).
"""

import os
from pathlib import Path
from typing import Optional, Union

from clinical_import import __version__
from clinical_import.infrastructure.config_manager import ConfigManager, DatabaseConfig, ImportConfig

# Application metadata
APP_NAME = "Clinical-Import"
APP_VERSION = __version__


class Settings:
    """Application settings loaded from configuration manager and environment.

    Everything read from the environment is resolved lazily, after the
    configuration manager has loaded ``.env``, so importing this module never
    touches the environment. Assigning a value overrides the environment.
    """

    def __init__(self, env_file: Optional[Union[str, Path]] = None):
        self._env_file = env_file
        self._config_manager: Optional[ConfigManager] = None
        self._db_config: Optional[DatabaseConfig] = None
        self._import_config: Optional[ImportConfig] = None
        self._app_name: Optional[str] = None
        self._log_level: Optional[str] = None
        self._log_json: Optional[bool] = None

        self.app_version = APP_VERSION

    @property
    def config_manager(self) -> ConfigManager:
        if self._config_manager is None:
            self._config_manager = ConfigManager.from_environment(self._env_file)
        return self._config_manager

    def _getenv(self, name: str, default: str) -> str:
        self.config_manager
        return os.getenv(name, default)

    @property
    def app_name(self) -> str:
        if self._app_name is None:
            self._app_name = self._getenv("CI_APP_NAME", APP_NAME)
        return self._app_name

    @app_name.setter
    def app_name(self, value: str) -> None:
        self._app_name = value

    @property
    def log_level(self) -> str:
        if self._log_level is None:
            self._log_level = self._getenv("CI_LOG_LEVEL", "INFO")
        return self._log_level

    @log_level.setter
    def log_level(self, value: str) -> None:
        self._log_level = value

    @property
    def log_json(self) -> bool:
        if self._log_json is None:
            self._log_json = self._getenv("CI_LOG_JSON", "false").strip().lower() == "true"
        return self._log_json

    @log_json.setter
    def log_json(self, value: bool) -> None:
        self._log_json = value

    @property
    def db_config(self) -> DatabaseConfig:
        if self._db_config is None:
            self._db_config = self.config_manager.get_database_config()
        return self._db_config

    @property
    def import_config(self) -> ImportConfig:
        if self._import_config is None:
            self._import_config = self.config_manager.get_import_config()
        return self._import_config

    def get_db_path(self) -> str:
        """Database path for DuckDB, or ':memory:'."""
        return self.db_config.get_db_path()


# Global settings instance
settings = Settings()
