"""Record types written to the backup and integrity ledgers."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator


class BackupStatus(str, Enum):
    """Outcome of a backup run."""

    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED_BUSY = "skipped-busy"


class IntegrityStatus(str, Enum):
    """Outcome of an integrity check."""

    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"
    # Transient outcome of a rejected concurrent check; never written to the ledger
    SKIPPED_BUSY = "skipped-busy"


class RunTrigger(str, Enum):
    """What started a run."""

    SCHEDULED = "scheduled"
    MANUAL = "manual"
    STARTUP = "startup"


class BackupRecord(BaseModel):
    """One backup attempt. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Unique record identifier")
    started_at: datetime = Field(description="When the run started (UTC)")
    finished_at: datetime = Field(description="When the run finished (UTC)")
    status: BackupStatus = Field(description="success, failure or skipped-busy")
    trigger: RunTrigger = Field(default=RunTrigger.MANUAL, description="What started the run")
    file_path: Optional[str] = Field(default=None, description="Absolute path of the snapshot file")
    filename: Optional[str] = Field(default=None, description="Snapshot filename")
    size_bytes: int = Field(default=0, ge=0, description="Snapshot size in bytes")
    checksum: Optional[str] = Field(default=None, description="Hex digest of the snapshot")
    checksum_algorithm: str = Field(default="sha256", description="Digest algorithm")
    encrypted: bool = Field(default=False, description="Snapshot is AES-GCM encrypted at rest")
    duration_ms: int = Field(default=0, ge=0, description="Run duration in milliseconds")
    error_message: Optional[str] = Field(default=None, description="Failure reason")

    @model_validator(mode="after")
    def validate_success_has_checksum(self) -> "BackupRecord":
        """A successful backup always carries a checksum."""
        if self.status == BackupStatus.SUCCESS and not self.checksum:
            raise ValueError("A successful backup record requires a checksum")
        return self


class IntegrityRecord(BaseModel):
    """One integrity check of the newest successful snapshot."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Unique record identifier")
    checked_at: datetime = Field(description="When the check ran (UTC)")
    status: IntegrityStatus = Field(description="pass, fail or error")
    trigger: RunTrigger = Field(default=RunTrigger.MANUAL, description="What started the check")
    target_backup_id: Optional[str] = Field(
        default=None, description="Backup record that was verified (None if nothing to check)"
    )
    target_file: Optional[str] = Field(default=None, description="Snapshot file that was verified")
    expected_checksum: Optional[str] = Field(default=None, description="Digest recorded at backup time")
    actual_checksum: Optional[str] = Field(default=None, description="Digest recomputed now")
    detail: Optional[str] = Field(default=None, description="Human-readable summary")
    issues: List[str] = Field(default_factory=list, description="Individual problems found")
    duration_ms: int = Field(default=0, ge=0, description="Check duration in milliseconds")


class SchedulerState(BaseModel):
    """Snapshot of a scheduler's timer and mutual-exclusion flag."""

    enabled: bool
    interval_seconds: int
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    running: bool = False
    timer_active: bool = False

    @computed_field
    @property
    def interval_ms(self) -> int:
        return self.interval_seconds * 1000
