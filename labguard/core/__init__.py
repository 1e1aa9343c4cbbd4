"""Core persistence-safety building blocks.

This package contains the snapshot store, checksum engine, run ledgers and
the record models shared by the backup and integrity services.
"""

from .checksum import ChecksumEngine
from .exceptions import (
    BackupFailure,
    BusyError,
    CertificateGenerationError,
    ChecksumMismatchError,
    ConfigurationError,
    LabGuardError,
    LedgerError,
    SnapshotIOError,
    StoreError,
)
from .ledger import Ledger
from .models import (
    BackupRecord,
    BackupStatus,
    IntegrityRecord,
    IntegrityStatus,
    RunTrigger,
    SchedulerState,
)
from .snapshot import SnapshotFile, SnapshotStore

__all__ = [
    "BackupFailure",
    "BackupRecord",
    "BackupStatus",
    "BusyError",
    "CertificateGenerationError",
    "ChecksumEngine",
    "ChecksumMismatchError",
    "ConfigurationError",
    "IntegrityRecord",
    "IntegrityStatus",
    "LabGuardError",
    "Ledger",
    "LedgerError",
    "RunTrigger",
    "SchedulerState",
    "SnapshotFile",
    "SnapshotIOError",
    "SnapshotStore",
    "StoreError",
]
