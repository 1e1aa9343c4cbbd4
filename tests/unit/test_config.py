"""Tests for configuration loading and API settings."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from labguard.common.config import Config
from labguard.core.exceptions import ConfigurationError
from labguard.web.settings import APISettings


class TestConfigLoad:
    """Tests for Config.load with YAML and environment overrides."""

    def test_defaults(self, tmp_path: Path):
        config = Config.load(environ={"LABGUARD_DATA_DIR": str(tmp_path)})

        assert config.backup.interval_seconds == 86400
        assert config.backup.retention_count == 30
        assert config.integrity.offset_seconds == 1800
        assert config.certificates.validity_days == 365
        assert config.data_dir == tmp_path

    def test_yaml_then_environment(self, tmp_path: Path):
        config_file = tmp_path / "labguard.yaml"
        config_file.write_text(
            "backup:\n"
            "  retention_count: 7\n"
            "  interval_seconds: 3600\n"
            "integrity:\n"
            "  offset_seconds: 60\n"
        )

        config = Config.load(
            config_file,
            environ={
                "LABGUARD_DATA_DIR": str(tmp_path / "data"),
                "LABGUARD_BACKUP_RETENTION_COUNT": "12",
                "LABGUARD_LOG_LEVEL": "debug",
            },
        )

        assert config.backup.retention_count == 12
        assert config.backup.interval_seconds == 3600
        assert config.integrity.offset_seconds == 60
        assert config.logging.level == "DEBUG"

    def test_empty_environment_value_ignored(self, tmp_path: Path):
        config = Config.load(
            environ={"LABGUARD_DATA_DIR": str(tmp_path), "LABGUARD_BACKUP_RETENTION_COUNT": ""}
        )

        assert config.backup.retention_count == 30

    @pytest.mark.parametrize(
        "name,value",
        [
            ("LABGUARD_BACKUP_RETENTION_COUNT", "0"),
            ("LABGUARD_BACKUP_INTERVAL_SECONDS", "soon"),
            ("LABGUARD_CERT_VALIDITY_DAYS", "0"),
            ("LABGUARD_LOG_LEVEL", "chatty"),
            ("LABGUARD_BACKUP_ENCRYPTION_KEY", "not-a-key"),
        ],
    )
    def test_invalid_values_rejected(self, name: str, value: str, tmp_path: Path):
        with pytest.raises(ConfigurationError):
            Config.load(environ={"LABGUARD_DATA_DIR": str(tmp_path), name: value})

    def test_encryption_key_from_environment(self, tmp_path: Path):
        key = bytes(range(32)).hex()

        config = Config.load(
            environ={"LABGUARD_DATA_DIR": str(tmp_path), "LABGUARD_BACKUP_ENCRYPTION_KEY": key}
        )

        assert config.backup.encryption_key == key
        assert key not in repr(config.backup)
        assert Config.load(environ={"LABGUARD_DATA_DIR": str(tmp_path)}).backup.encryption_key is None

    def test_unreadable_yaml(self, tmp_path: Path):
        config_file = tmp_path / "broken.yaml"
        config_file.write_text("backup: [unclosed\n")

        with pytest.raises(ConfigurationError):
            Config.load(config_file, environ={})

    def test_missing_yaml(self, tmp_path: Path):
        with pytest.raises(ConfigurationError):
            Config.load(tmp_path / "absent.yaml", environ={})

    def test_from_yaml_string(self):
        config = Config.from_yaml_string("backup:\n  file_prefix: mousedb\n")

        assert config.backup.file_prefix == "mousedb"

    def test_prefix_cannot_escape_directory(self):
        with pytest.raises(ValidationError):
            Config.from_yaml_string("backup:\n  file_prefix: ../elsewhere\n")


class TestConfigPaths:
    """Tests for path resolution and runtime validation."""

    def test_relative_paths_resolve_against_data_dir(self, tmp_path: Path):
        config = Config(data_dir=tmp_path).resolve_paths()

        assert config.get_database_path() == tmp_path / "lab-data.db"
        assert config.get_backup_dir() == tmp_path / "backups"
        assert config.get_cert_path() == tmp_path / "certs" / "server.crt"
        assert config.get_backup_ledger_path().parent == tmp_path
        assert config.get_backup_dir().is_dir()

    def test_absolute_backup_dir_kept(self, tmp_path: Path):
        elsewhere = tmp_path / "offsite"
        config = Config.load(
            environ={"LABGUARD_DATA_DIR": str(tmp_path / "data"), "LABGUARD_BACKUP_DIR": str(elsewhere)}
        )

        assert config.get_backup_dir() == elsewhere

    def test_validate_runtime_accepts_writable_dirs(self, test_config: Config):
        test_config.validate_runtime()

    def test_validate_runtime_rejects_file_as_directory(self, tmp_path: Path):
        blocker = tmp_path / "blocker"
        blocker.write_text("x")
        config = Config.load(
            environ={"LABGUARD_DATA_DIR": str(tmp_path), "LABGUARD_BACKUP_DIR": str(blocker)}
        )

        with pytest.raises(ConfigurationError) as exc_info:
            config.validate_runtime()

        assert exc_info.value.field == "backup.output_dir"

    def test_validate_runtime_rejects_directory_as_database(self, tmp_path: Path):
        (tmp_path / "lab-data.db").mkdir()
        config = Config(data_dir=tmp_path)

        with pytest.raises(ConfigurationError) as exc_info:
            config.validate_runtime()

        assert exc_info.value.field == "database.path"


class TestAPISettings:
    """Tests for transport selection settings."""

    def test_http_by_default_in_development(self):
        settings = APISettings(environment="development")

        assert not settings.use_https

    def test_https_by_default_in_production(self):
        settings = APISettings(environment="Production")

        assert settings.is_production
        assert settings.use_https

    def test_explicit_flag_wins(self):
        assert not APISettings(environment="production", https_enabled=False).use_https
        assert APISettings(environment="development", https_enabled=True).use_https

    def test_redirect_requires_distinct_ports(self):
        with pytest.raises(ValidationError):
            APISettings(https_enabled=True, http_redirect=True, port=3000, http_port=3000)

    def test_environment_variables(self, monkeypatch):
        monkeypatch.setenv("LABGUARD_API_PORT", "8443")
        monkeypatch.setenv("LABGUARD_API_HTTPS_ENABLED", "true")

        settings = APISettings()

        assert settings.port == 8443
        assert settings.use_https
