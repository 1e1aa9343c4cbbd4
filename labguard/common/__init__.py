"""Common utilities and shared components for labguard."""

from .clock import Clock, ManualClock, SystemClock
from .config import (
    BackupConfig,
    CertificateConfig,
    Config,
    DatabaseConfig,
    IntegrityConfig,
    LoggingConfig,
)
from .logging_config import setup_logging

__all__ = [
    "BackupConfig",
    "CertificateConfig",
    "Clock",
    "Config",
    "DatabaseConfig",
    "IntegrityConfig",
    "LoggingConfig",
    "ManualClock",
    "SystemClock",
    "setup_logging",
]
