"""Backup and integrity API schemas."""

from pydantic import BaseModel, Field

from labguard.services.backup_service import BackupOverview
from labguard.services.integrity_service import IntegrityOverview


class SafetyStatusResponse(BaseModel):
    """Combined state of both schedulers."""

    backup: BackupOverview = Field(description="Backup scheduler state and last outcome")
    integrity: IntegrityOverview = Field(description="Integrity checker state and last outcome")


class HealthResponse(BaseModel):
    """Liveness check payload."""

    status: str = Field(default="ok")
    version: str
    https: bool = Field(description="Whether the primary listener serves TLS")
