"""
Configuration Profile for DataSync

A profile names the remote schema, the stored procedures, the local layer
and remote table pair, the key and spatial columns, the results table
columns and the database connection. Profiles are YAML files; selected
values can be overridden from the environment.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

REQUIRED_KEYS = (
    "log_file_path",
    "database_schema",
    "check_stored_procedure",
    "update_stored_procedure",
    "clear_stored_procedure",
    "local_layer",
    "remote_table",
    "remote_layer",
    "key_column",
    "spatial_column",
)

ENV_OVERRIDES = {
    "DATASYNC_DB_SERVER": ("database", "server"),
    "DATASYNC_DB_NAME": ("database", "database"),
    "DATASYNC_DB_USER": ("database", "username"),
    "DATASYNC_DB_PASSWORD": ("database", "password"),
    "DATASYNC_LOG_PATH": (None, "log_file_path"),
}


class ConfigError(Exception):
    """Raised when a profile is missing or invalid."""
    pass


@dataclass
class ResultColumns:
    """Column names of the comparison results table."""
    type: str = "Type"
    description: str = "Description"
    new_key: str = "Ref"
    old_key: str = "RefOld"
    new_area: str = "Area"
    old_area: str = "AreaOld"
    sort: Optional[str] = None

    def order_by(self):
        """Sort keys used when reading results."""
        keys = [self.type, self.description, self.new_key]
        if self.sort:
            keys.insert(0, self.sort)
        return keys

    def select_list(self):
        return [self.type, self.description, self.new_key, self.old_key, self.new_area, self.old_area]


@dataclass
class DatabaseSettings:
    """SQL Server connection settings."""
    server: str = ""
    database: str = ""
    driver: str = "ODBC Driver 18 for SQL Server"
    username: Optional[str] = None
    password: Optional[str] = None
    trusted_connection: bool = False
    encrypt: bool = True
    timeout_seconds: int = 600
    vault_path: Optional[str] = None

    def __repr__(self) -> str:
        """Safe representation without password"""
        return (f"DatabaseSettings(server={self.server}, database={self.database}, "
                f"username={self.username}, trusted_connection={self.trusted_connection})")


@dataclass
class SyncConfig:
    """Settings for one local layer / remote table pair."""
    log_file_path: str
    database_schema: str
    check_stored_procedure: str
    update_stored_procedure: str
    clear_stored_procedure: str
    local_layer: str
    remote_table: str
    remote_layer: str
    key_column: str
    spatial_column: str
    default_clear_log_file: bool = False
    default_open_log_file: bool = False
    local_table: Optional[str] = None
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    result_columns: ResultColumns = field(default_factory=ResultColumns)

    @property
    def qualified_remote_table(self) -> str:
        return f"{self.database_schema}.{self.remote_table}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any], apply_env: bool = True) -> "SyncConfig":
        """
        Build a config from a mapping.

        Args:
            data: Profile contents
            apply_env: Apply DATASYNC_* environment overrides

        Returns:
            SyncConfig

        Raises:
            ConfigError: If a required key is missing or a block is malformed
        """
        if not isinstance(data, dict):
            raise ConfigError("Profile must be a mapping")

        data = {k: (dict(v) if isinstance(v, dict) else v) for k, v in data.items()}

        if apply_env:
            for env_name, (block, key) in ENV_OVERRIDES.items():
                value = os.getenv(env_name)
                if value:
                    target = data.setdefault(block, {}) if block else data
                    target[key] = value
                    logger.debug(f"Applied {env_name} override")

        for key in REQUIRED_KEYS:
            value = data.get(key)
            if value is None or str(value).strip() == "":
                raise ConfigError(f"The entry for '{key}' is missing from the profile")

        database = _build_block(DatabaseSettings, data.pop("database", None) or {}, "database")
        columns = _build_block(ResultColumns, data.pop("result_columns", None) or {}, "result_columns")

        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown profile entries: {', '.join(sorted(unknown))}")

        kwargs = {k: v for k, v in data.items() if k in known}
        for flag in ("default_clear_log_file", "default_open_log_file"):
            if flag in kwargs:
                kwargs[flag] = _as_bool(kwargs[flag], flag)

        return cls(database=database, result_columns=columns, **kwargs)

    @classmethod
    def from_yaml(cls, path: str, apply_env: bool = True) -> "SyncConfig":
        """
        Load a config from a YAML profile.

        Raises:
            ConfigError: If the file is missing, unreadable or invalid
        """
        if not os.path.exists(path):
            raise ConfigError(f"Profile '{path}' not found")

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Profile '{path}' is not valid YAML: {e}") from e

        config = cls.from_dict(data or {}, apply_env=apply_env)
        logger.info(f"Loaded profile {path} for {config.qualified_remote_table}")
        return config

    def resolve_credentials(self, vault_client=None) -> None:
        """
        Fill the database login from Vault when ``vault_path`` is set.

        Args:
            vault_client: VaultClient to use (created from the environment
                when omitted)
        """
        if not self.database.vault_path:
            return

        if vault_client is None:
            from datasync.utils.vault_client import VaultClient
            vault_client = VaultClient()

        credentials = vault_client.get_database_credentials(self.database.vault_path)
        self.database.username = credentials["username"]
        self.database.password = credentials["password"]
        self.database.server = credentials.get("server", self.database.server)
        self.database.database = credentials.get("database", self.database.database)


def _as_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "yes", "1"):
        return True
    if text in ("false", "no", "0"):
        return False
    raise ConfigError(f"The entry for '{name}' must be true or false")


def _build_block(block_cls, values: Dict[str, Any], name: str):
    if not isinstance(values, dict):
        raise ConfigError(f"The '{name}' entry must be a mapping")

    known = {f.name for f in fields(block_cls)}
    unknown = set(values) - known
    if unknown:
        raise ConfigError(f"Unknown '{name}' entries: {', '.join(sorted(unknown))}")

    values = dict(values)
    for key in ("trusted_connection", "encrypt"):
        if key in values:
            values[key] = _as_bool(values[key], f"{name}.{key}")
    if "timeout_seconds" in values:
        try:
            values["timeout_seconds"] = int(values["timeout_seconds"])
        except (TypeError, ValueError):
            raise ConfigError(f"The entry for '{name}.timeout_seconds' must be an integer")

    return block_cls(**values)
