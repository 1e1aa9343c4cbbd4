"""Exceptions for persistence-safety operations."""

from pathlib import Path
from typing import Optional


class LabGuardError(Exception):
    """Base exception for labguard errors."""

    pass


class ConfigurationError(LabGuardError):
    """Raised when configuration is invalid or paths are unusable at startup."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class SnapshotIOError(LabGuardError):
    """Raised when copying, flushing, renaming or reading a snapshot fails."""

    def __init__(
        self,
        message: str,
        source_path: Optional[Path] = None,
        backup_path: Optional[Path] = None,
    ):
        super().__init__(message)
        self.source_path = source_path
        self.backup_path = backup_path


# Name used by the HTTP layer and in backup records
BackupFailure = SnapshotIOError


class BusyError(LabGuardError):
    """Raised when a run is rejected because another run of the same kind is active."""

    def __init__(self, message: str, kind: str):
        super().__init__(message)
        self.kind = kind


class ChecksumMismatchError(LabGuardError):
    """Raised when a file's digest differs from its recorded baseline."""

    def __init__(
        self,
        message: str,
        path: Optional[Path] = None,
        expected: Optional[str] = None,
        actual: Optional[str] = None,
    ):
        super().__init__(message)
        self.path = path
        self.expected = expected
        self.actual = actual


class CertificateGenerationError(LabGuardError):
    """Raised when a certificate/key pair cannot be loaded or generated."""

    def __init__(self, message: str, cert_path: Optional[Path] = None):
        super().__init__(message)
        self.cert_path = cert_path


class LedgerError(LabGuardError):
    """Raised when a ledger file cannot be read or written."""

    def __init__(self, message: str, path: Optional[Path] = None):
        super().__init__(message)
        self.path = path


class StoreError(LabGuardError):
    """Raised when the live store cannot be opened or queried."""

    def __init__(self, message: str, path: Optional[Path] = None):
        super().__init__(message)
        self.path = path
