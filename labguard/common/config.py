"""Configuration models using Pydantic for validation."""

import os
import tempfile
from pathlib import Path
from typing import Any, ClassVar, Dict, Mapping, Optional

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from ruamel.yaml import YAML

from ..core.encryption import decode_key
from ..core.exceptions import ConfigurationError

logger = structlog.get_logger(__name__)


class FileLoggingConfig(BaseModel):
    """Configuration for file-based logging.

    File logging uses daily rotation with 7-day retention.
    Log files are stored as labguard.log in data_dir, rotated daily
    with format labguard.log.YYYY-MM-DD.
    """

    enabled: bool = Field(
        default=False,
        description="Enable file logging (logs to labguard.log in data_dir)",
    )


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    level: str = Field(
        default="INFO",
        description="Log level: DEBUG, INFO, WARNING, ERROR, CRITICAL",
    )
    format: str = Field(
        default="json",
        description="Log format: json or text",
    )
    file: FileLoggingConfig = Field(
        default_factory=FileLoggingConfig,
        description="File logging configuration",
    )
    third_party: Dict[str, str] = Field(
        default_factory=dict,
        description="Log levels for third-party libraries (advanced)",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format."""
        valid_formats = ["json", "text"]
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Invalid format: {v}. Must be one of {valid_formats}")
        return v_lower


class DatabaseConfig(BaseModel):
    """Configuration for the live SQLite store."""

    path: str = Field(
        default="lab-data.db",
        description="Path to the live database file (relative to data_dir)",
    )
    enable_wal: bool = Field(
        default=True,
        description="Open the live store in WAL journal mode",
    )
    timeout: int = Field(
        default=30,
        ge=1,
        description="Connection timeout in seconds",
    )


class BackupConfig(BaseModel):
    """Configuration for scheduled snapshots of the live store.

    Snapshots are taken with SQLite's online backup API, written under a
    temporary name and renamed into place once flushed to disk. Setting
    ``encryption_key`` encrypts them at rest with AES-GCM.
    """

    enabled: bool = Field(
        default=True,
        description="Enable automatic scheduled backups",
    )
    interval_seconds: int = Field(
        default=86400,
        ge=1,
        description="Seconds between scheduled backups (default: once per day)",
    )
    retention_count: int = Field(
        default=30,
        ge=1,
        le=3650,
        description="Number of snapshot files to retain (oldest are deleted)",
    )
    history_limit: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Number of backup records kept in the backup ledger",
    )
    output_dir: str = Field(
        default="backups",
        description="Directory for snapshot files (relative to data_dir)",
    )
    file_prefix: str = Field(
        default="lab-data-backup",
        description="Filename prefix of snapshot files",
    )
    checksum_algorithm: str = Field(
        default="sha256",
        description="Digest used for snapshot checksums: sha256, sha512 or blake2b",
    )
    encryption_key: Optional[str] = Field(
        default=None,
        repr=False,
        description="Hex or base64 AES key (16, 24 or 32 bytes); snapshots are encrypted when set",
    )

    @field_validator("checksum_algorithm")
    @classmethod
    def validate_algorithm(cls, v: str) -> str:
        """Validate checksum algorithm."""
        valid = ["sha256", "sha512", "blake2b"]
        v_lower = v.lower()
        if v_lower not in valid:
            raise ValueError(f"Invalid checksum algorithm: {v}. Must be one of {valid}")
        return v_lower

    @field_validator("file_prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        """Reject prefixes that would escape the backup directory."""
        if not v or "/" in v or "\\" in v or v.startswith("."):
            raise ValueError(f"Invalid snapshot file prefix: {v!r}")
        return v

    @field_validator("encryption_key")
    @classmethod
    def validate_encryption_key(cls, v: Optional[str]) -> Optional[str]:
        """Reject keys that do not decode to a valid AES key length."""
        if v is None or not v.strip():
            return None
        decode_key(v)
        return v.strip()


class IntegrityConfig(BaseModel):
    """Configuration for snapshot integrity verification."""

    enabled: bool = Field(
        default=True,
        description="Enable scheduled integrity checks",
    )
    offset_seconds: int = Field(
        default=1800,
        ge=0,
        description="Delay after each backup window before the check runs (default: 30 minutes)",
    )
    history_limit: int = Field(
        default=30,
        ge=1,
        le=10000,
        description="Number of integrity records kept in the integrity ledger",
    )
    structural_check: bool = Field(
        default=True,
        description="Open the snapshot as SQLite and run integrity_check/quick_check",
    )
    check_live_store: bool = Field(
        default=True,
        description="Also run integrity pragmas against the live store",
    )
    run_on_startup: bool = Field(
        default=True,
        description="Run one check before the server accepts traffic",
    )


class CertificateConfig(BaseModel):
    """Configuration for the self-signed TLS certificate."""

    cert_dir: str = Field(
        default="certs",
        description="Directory holding certificate and key (relative to data_dir)",
    )
    cert_file: str = Field(default="server.crt", description="Certificate filename")
    key_file: str = Field(default="server.key", description="Private key filename")
    validity_days: int = Field(
        default=365,
        ge=1,
        le=3650,
        description="Validity window of generated certificates",
    )
    renew_before_days: int = Field(
        default=30,
        ge=0,
        description="Regenerate when the certificate expires within this many days",
    )
    common_name: Optional[str] = Field(
        default=None,
        description="Subject common name (defaults to the host name)",
    )
    organization: str = Field(default="Lab Data Manager", description="Subject organization")
    country: str = Field(default="US", min_length=2, max_length=2, description="Subject country")


def _get_default_data_dir() -> Path:
    """
    Get default data directory based on environment.

    Priority:
    1. LABGUARD_DATA_DIR environment variable
    2. /data if LABGUARD_DOCKER=1
    3. $HOME/LabGuard/data otherwise

    Returns:
        Path to data directory
    """
    env_data_dir = os.environ.get("LABGUARD_DATA_DIR")
    if env_data_dir:
        return Path(env_data_dir)

    if os.environ.get("LABGUARD_DOCKER") == "1":
        return Path("/data")

    return Path.home() / "LabGuard" / "data"


# Environment variable -> dotted config field
ENV_OVERRIDES: Dict[str, str] = {
    "LABGUARD_DATABASE_PATH": "database.path",
    "LABGUARD_BACKUP_ENABLED": "backup.enabled",
    "LABGUARD_BACKUP_DIR": "backup.output_dir",
    "LABGUARD_BACKUP_INTERVAL_SECONDS": "backup.interval_seconds",
    "LABGUARD_BACKUP_RETENTION_COUNT": "backup.retention_count",
    "LABGUARD_BACKUP_HISTORY_LIMIT": "backup.history_limit",
    "LABGUARD_BACKUP_ENCRYPTION_KEY": "backup.encryption_key",
    "LABGUARD_INTEGRITY_ENABLED": "integrity.enabled",
    "LABGUARD_INTEGRITY_OFFSET_SECONDS": "integrity.offset_seconds",
    "LABGUARD_INTEGRITY_HISTORY_LIMIT": "integrity.history_limit",
    "LABGUARD_CERT_DIR": "certificates.cert_dir",
    "LABGUARD_CERT_FILE": "certificates.cert_file",
    "LABGUARD_KEY_FILE": "certificates.key_file",
    "LABGUARD_CERT_VALIDITY_DAYS": "certificates.validity_days",
    "LABGUARD_LOG_LEVEL": "logging.level",
    "LABGUARD_LOG_FORMAT": "logging.format",
}


class Config(BaseModel):
    """Main configuration class for labguard.

    Path Resolution:
    - data_dir: Where the live store, snapshots, ledgers and certificates live

    Environment Variables:
    - LABGUARD_DATA_DIR: Override data_dir
    - LABGUARD_DOCKER=1: Use Docker default (/data)
    - Any key of ENV_OVERRIDES: override the matching field

    All relative paths in config (database path, backup dir, cert dir) are
    resolved against data_dir at runtime.
    """

    # Validation errors never echo input values; they may hold the encryption key
    model_config = ConfigDict(hide_input_in_errors=True)

    data_dir: Optional[Path] = Field(
        default=None,
        description="Data directory. Resolved from LABGUARD_DATA_DIR or defaults.",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )
    database: DatabaseConfig = Field(
        default_factory=DatabaseConfig,
        description="Live store configuration",
    )
    backup: BackupConfig = Field(
        default_factory=BackupConfig,
        description="Scheduled backup configuration",
    )
    integrity: IntegrityConfig = Field(
        default_factory=IntegrityConfig,
        description="Integrity check configuration",
    )
    certificates: CertificateConfig = Field(
        default_factory=CertificateConfig,
        description="Self-signed certificate configuration",
    )

    BACKUP_LEDGER_FILE: ClassVar[str] = "backup-history.json"
    INTEGRITY_LEDGER_FILE: ClassVar[str] = "integrity-history.json"

    def resolve_paths(self, create_dirs: bool = True) -> "Config":
        """
        Resolve data_dir from environment or defaults.

        Args:
            create_dirs: If True, create directories if they don't exist

        Returns:
            Self with resolved paths (for chaining)
        """
        if self.data_dir is None:
            object.__setattr__(self, "data_dir", _get_default_data_dir())

        if create_dirs:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self.get_backup_dir().mkdir(parents=True, exist_ok=True)
            self.get_cert_dir().mkdir(parents=True, exist_ok=True)

        logger.debug("paths_resolved", data_dir=str(self.data_dir))

        return self

    def _resolve(self, value: str) -> Path:
        path = Path(value).expanduser()
        if path.is_absolute():
            return path
        data_dir = self.data_dir or _get_default_data_dir()
        return data_dir / path

    def get_database_path(self) -> Path:
        """Get absolute path of the live database file."""
        return self._resolve(self.database.path)

    def get_backup_dir(self) -> Path:
        """Get absolute snapshot directory path."""
        return self._resolve(self.backup.output_dir)

    def get_cert_dir(self) -> Path:
        """Get absolute certificate directory path."""
        return self._resolve(self.certificates.cert_dir)

    def get_cert_path(self) -> Path:
        return self.get_cert_dir() / self.certificates.cert_file

    def get_key_path(self) -> Path:
        return self.get_cert_dir() / self.certificates.key_file

    def get_backup_ledger_path(self) -> Path:
        """Backup ledger lives beside the store, never inside the backup dir."""
        return self._resolve(self.BACKUP_LEDGER_FILE)

    def get_integrity_ledger_path(self) -> Path:
        return self._resolve(self.INTEGRITY_LEDGER_FILE)

    def get_log_dir(self) -> Path:
        return self.data_dir or _get_default_data_dir()

    def validate_runtime(self) -> None:
        """
        Check that every directory the services write to is usable.

        Raises:
            ConfigurationError: If a directory cannot be created or written
        """
        targets = {
            "data_dir": self.data_dir or _get_default_data_dir(),
            "backup.output_dir": self.get_backup_dir(),
            "certificates.cert_dir": self.get_cert_dir(),
            "database.path": self.get_database_path().parent,
        }
        for field, directory in targets.items():
            try:
                directory.mkdir(parents=True, exist_ok=True)
                with tempfile.TemporaryFile(dir=directory):
                    pass
            except OSError as e:
                raise ConfigurationError(
                    f"Directory for {field} is not writable: {directory} ({e})",
                    field=field,
                ) from e

        if self.get_database_path().is_dir():
            raise ConfigurationError(
                f"database.path points to a directory: {self.get_database_path()}",
                field="database.path",
            )

    @staticmethod
    def _deep_merge(original: Any, updates: Any) -> Any:
        """
        Deep merge updates into original.

        Args:
            original: Original data structure
            updates: New data to merge in

        Returns:
            Merged data structure
        """
        if original is None or updates is None:
            return updates

        if isinstance(original, dict) and isinstance(updates, dict):
            for key, value in updates.items():
                if key in original:
                    original[key] = Config._deep_merge(original[key], value)
                else:
                    original[key] = value
            return original

        return updates

    @staticmethod
    def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
        """
        Build a nested override dict from LABGUARD_* environment variables.

        Values are left as strings; pydantic coerces them on validation.
        """
        environ = os.environ if environ is None else environ
        overrides: Dict[str, Any] = {}
        for env_name, dotted in ENV_OVERRIDES.items():
            value = environ.get(env_name)
            if value is None or value == "":
                continue
            section, field = dotted.split(".", 1)
            overrides.setdefault(section, {})[field] = value
        if environ.get("LABGUARD_DATA_DIR"):
            overrides["data_dir"] = environ["LABGUARD_DATA_DIR"]
        return overrides

    @classmethod
    def load(
        cls,
        path: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "Config":
        """
        Load configuration from YAML (if given) with environment overrides.

        Args:
            path: Optional YAML configuration file
            environ: Environment mapping (defaults to os.environ)

        Returns:
            Validated Config

        Raises:
            ConfigurationError: If the file is unreadable or values are invalid
        """
        data: Dict[str, Any] = {}
        if path is not None:
            try:
                yaml_loader = YAML(typ="safe")
                with open(path, "r", encoding="utf-8") as f:
                    data = dict(yaml_loader.load(f) or {})
            except OSError as e:
                raise ConfigurationError(f"Cannot read config file {path}: {e}") from e
            except Exception as e:
                raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

        merged = cls._deep_merge(data, cls.env_overrides(environ))

        try:
            return cls.model_validate(merged or {})
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    @classmethod
    def from_yaml(cls, path: Path) -> "Config":
        """
        Load configuration from a YAML file without environment overrides.

        Raises:
            FileNotFoundError: If config file doesn't exist
            pydantic.ValidationError: If configuration is invalid
        """
        yaml_loader = YAML()
        yaml_loader.preserve_quotes = True

        with open(path, "r", encoding="utf-8") as f:
            data = yaml_loader.load(f)
        return cls.model_validate(data or {})

    @classmethod
    def from_yaml_string(cls, yaml_string: str) -> "Config":
        """
        Load configuration from YAML string.

        Example:
            >>> config = Config.from_yaml_string("backup:\\n  retention_count: 5")
        """
        data = yaml.safe_load(yaml_string)
        return cls.model_validate(data or {})
