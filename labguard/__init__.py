"""LabGuard package initialization."""

from pathlib import Path
from typing import Optional

import structlog

from .common.clock import Clock, ManualClock, SystemClock
from .common.config import (
    BackupConfig,
    CertificateConfig,
    Config,
    DatabaseConfig,
    IntegrityConfig,
    LoggingConfig,
)
from .common.logging_config import setup_logging
from .core import (
    BackupFailure,
    BackupRecord,
    BackupStatus,
    BusyError,
    CertificateGenerationError,
    ChecksumEngine,
    ChecksumMismatchError,
    ConfigurationError,
    IntegrityRecord,
    IntegrityStatus,
    LabGuardError,
    Ledger,
    LedgerError,
    RunTrigger,
    SchedulerState,
    SnapshotIOError,
    SnapshotStore,
    StoreError,
)
from .tasks import PeriodicTimer

__version__ = "0.1.0"
__all__ = [
    "__version__",
    "configure",
    "get_config",
    # Config
    "BackupConfig",
    "CertificateConfig",
    "Config",
    "DatabaseConfig",
    "IntegrityConfig",
    "LoggingConfig",
    "setup_logging",
    # Time
    "Clock",
    "ManualClock",
    "PeriodicTimer",
    "SystemClock",
    # Core
    "BackupRecord",
    "BackupStatus",
    "ChecksumEngine",
    "IntegrityRecord",
    "IntegrityStatus",
    "Ledger",
    "RunTrigger",
    "SchedulerState",
    "SnapshotStore",
    # Exceptions
    "BackupFailure",
    "BusyError",
    "CertificateGenerationError",
    "ChecksumMismatchError",
    "ConfigurationError",
    "LabGuardError",
    "LedgerError",
    "SnapshotIOError",
    "StoreError",
]

# Module-level logger (not configured yet)
logger = structlog.get_logger(__name__)

# Global config state
_config: Optional[Config] = None


def configure(config_path: Optional[Path] = None, config: Optional[Config] = None) -> Config:
    """
    Configure labguard: load configuration, resolve paths, set up logging.

    - If config is provided, use it as-is
    - Otherwise load config_path (if given) with LABGUARD_* environment overrides
    - Relative paths (database, backups, certificates) resolve against data_dir

    Args:
        config_path: Path to YAML configuration file
        config: Pre-loaded Config object (takes precedence over config_path)

    Returns:
        The active configuration

    Raises:
        ConfigurationError: If the configuration is invalid or a required
            directory cannot be created or written

    Example:
        >>> import labguard
        >>> config = labguard.configure(config_path=Path("labguard.yaml"))
    """
    global _config

    if config is None:
        config = Config.load(config_path)

    # Before anything logs: stdout is reserved for CLI output
    setup_logging(config.logging)

    try:
        config.resolve_paths(create_dirs=True)
    except OSError as e:
        raise ConfigurationError(f"Cannot create data directories: {e}") from e
    config.validate_runtime()

    if config.logging.file.enabled:
        setup_logging(config.logging, config.get_log_dir())

    _config = config
    logger.info(
        "labguard_configured",
        version=__version__,
        config_path=str(config_path) if config_path else None,
        data_dir=str(config.data_dir),
        database_path=str(config.get_database_path()),
        backup_dir=str(config.get_backup_dir()),
    )
    return config


def get_config() -> Config:
    """
    Get the current global configuration.

    Returns:
        Current Config object (defaults if configure() was never called)

    Example:
        >>> import labguard
        >>> labguard.get_config().backup.retention_count
        30
    """
    global _config
    if _config is None:
        _config = Config()
        setup_logging(_config.logging)
    return _config
