"""
Unit tests for sync profiles.
"""

import pytest
import yaml
from unittest.mock import Mock

from datasync.utils.config import ConfigError, SyncConfig


class TestSyncConfig:
    """Test profile loading and validation."""

    @pytest.fixture
    def profile_file(self, tmp_path, profile):
        """Write the profile to a YAML file."""
        path = tmp_path / "parcels.yaml"
        path.write_text(yaml.safe_dump(profile), encoding="utf-8")
        return path

    def test_from_yaml(self, profile_file):
        config = SyncConfig.from_yaml(str(profile_file), apply_env=False)

        assert config.qualified_remote_table == "GIS.Parcels"
        assert config.check_stored_procedure == "usp_CheckParcels"
        assert config.database.server == "sql01"
        assert config.database.timeout_seconds == 600
        assert config.default_clear_log_file is False
        assert config.result_columns.new_key == "Ref"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            SyncConfig.from_yaml(str(tmp_path / "missing.yaml"))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("remote_table: [unclosed", encoding="utf-8")

        with pytest.raises(ConfigError, match="not valid YAML"):
            SyncConfig.from_yaml(str(path))

    @pytest.mark.parametrize("key", ["remote_table", "key_column", "clear_stored_procedure"])
    def test_missing_required_key(self, profile, key):
        """Test that each missing entry is named in the error."""
        del profile[key]

        with pytest.raises(ConfigError, match=f"The entry for '{key}' is missing from the profile"):
            SyncConfig.from_dict(profile, apply_env=False)

    def test_blank_required_key(self, profile):
        profile["spatial_column"] = "  "

        with pytest.raises(ConfigError, match="spatial_column"):
            SyncConfig.from_dict(profile, apply_env=False)

    def test_not_a_mapping(self):
        with pytest.raises(ConfigError, match="mapping"):
            SyncConfig.from_dict(["remote_table"])

    def test_env_overrides(self, profile, monkeypatch):
        """Test DATASYNC_* overrides."""
        monkeypatch.setenv("DATASYNC_DB_SERVER", "sql02")
        monkeypatch.setenv("DATASYNC_DB_PASSWORD", "from-env")
        monkeypatch.setenv("DATASYNC_LOG_PATH", "/var/log/datasync")

        config = SyncConfig.from_dict(profile)

        assert config.database.server == "sql02"
        assert config.database.password == "from-env"
        assert config.log_file_path == "/var/log/datasync"

    def test_env_ignored_when_disabled(self, profile, monkeypatch):
        monkeypatch.setenv("DATASYNC_DB_SERVER", "sql02")

        config = SyncConfig.from_dict(profile, apply_env=False)

        assert config.database.server == "sql01"

    def test_env_supplies_required_key(self, profile, monkeypatch):
        """Test that the log path may come from the environment only."""
        del profile["log_file_path"]
        monkeypatch.setenv("DATASYNC_LOG_PATH", "/tmp/datasync")

        assert SyncConfig.from_dict(profile).log_file_path == "/tmp/datasync"

    def test_result_columns(self, profile):
        """Test custom results table column names."""
        profile["result_columns"] = {"type": "ResultType", "new_key": "NewRef", "sort": "SortOrder"}

        columns = SyncConfig.from_dict(profile, apply_env=False).result_columns

        assert columns.select_list() == ["ResultType", "Description", "NewRef", "RefOld", "Area", "AreaOld"]
        assert columns.order_by() == ["SortOrder", "ResultType", "Description", "NewRef"]

    def test_unknown_result_column(self, profile):
        profile["result_columns"] = {"colour": "Colour"}

        with pytest.raises(ConfigError, match="colour"):
            SyncConfig.from_dict(profile, apply_env=False)

    def test_unknown_top_level_entry_is_ignored(self, profile):
        profile["legacy_option"] = 1

        config = SyncConfig.from_dict(profile, apply_env=False)

        assert not hasattr(config, "legacy_option")

    @pytest.mark.parametrize("value,expected", [("yes", True), ("False", False), (1, True), (True, True)])
    def test_boolean_flags(self, profile, value, expected):
        profile["default_open_log_file"] = value

        assert SyncConfig.from_dict(profile, apply_env=False).default_open_log_file is expected

    def test_bad_boolean(self, profile):
        profile["default_clear_log_file"] = "sometimes"

        with pytest.raises(ConfigError, match="must be true or false"):
            SyncConfig.from_dict(profile, apply_env=False)

    def test_bad_timeout(self, profile):
        profile["database"]["timeout_seconds"] = "soon"

        with pytest.raises(ConfigError, match="must be an integer"):
            SyncConfig.from_dict(profile, apply_env=False)

    def test_password_not_in_repr(self, config):
        assert "secret" not in repr(config.database)

    def test_resolve_credentials(self, profile):
        """Test filling the login from Vault."""
        profile["database"] = {"server": "sql01", "database": "gisdb", "vault_path": "gis/sqlserver"}
        config = SyncConfig.from_dict(profile, apply_env=False)
        vault = Mock()
        vault.get_database_credentials.return_value = {
            "username": "vault-user",
            "password": "vault-pass",
            "server": "sql-vault",
        }

        config.resolve_credentials(vault)

        vault.get_database_credentials.assert_called_once_with("gis/sqlserver")
        assert config.database.username == "vault-user"
        assert config.database.password == "vault-pass"
        assert config.database.server == "sql-vault"
        assert config.database.database == "gisdb"

    def test_resolve_credentials_without_vault_path(self, config):
        vault = Mock()

        config.resolve_credentials(vault)

        vault.get_database_credentials.assert_not_called()
        assert config.database.username == "sync"
