"""Backup and integrity endpoints.

Provides API endpoints for:
- Scheduler status for backups and integrity checks
- Backup and integrity history
- Triggering an on-demand backup
- Triggering an on-demand integrity check
"""

from typing import Annotated, List

import structlog
from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from labguard.core.models import BackupRecord, BackupStatus, IntegrityRecord
from labguard.services import BackupScheduler, IntegrityChecker
from labguard.web.dependencies import get_backup_scheduler, get_integrity_checker
from labguard.web.schemas import ApiResponse, SafetyStatusResponse

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/backup", tags=["Backup"])

HistoryLimit = Annotated[
    int,
    Query(ge=1, le=1000, description="Maximum number of records to return (newest first)"),
]


@router.get(
    "/status",
    response_model=ApiResponse[SafetyStatusResponse],
    summary="Safety status",
    description="""Current state of the backup scheduler and the integrity checker.

Includes the timer interval, last and next run times, whether a run is in
progress, the most recent outcome of each, and a summary of the snapshot
directory.""",
)
async def get_status(
    backups: Annotated[BackupScheduler, Depends(get_backup_scheduler)],
    integrity: Annotated[IntegrityChecker, Depends(get_integrity_checker)],
) -> ApiResponse[SafetyStatusResponse]:
    return ApiResponse.ok(
        SafetyStatusResponse(
            backup=backups.get_status(),
            integrity=integrity.get_status(),
        )
    )


@router.get(
    "/history",
    response_model=ApiResponse[List[BackupRecord]],
    summary="Backup history",
    description="Most recent backup records, newest first. Includes failures and skipped runs.",
)
async def get_backup_history(
    backups: Annotated[BackupScheduler, Depends(get_backup_scheduler)],
    limit: HistoryLimit = 30,
) -> ApiResponse[List[BackupRecord]]:
    return ApiResponse.ok(backups.get_history(limit))


@router.post(
    "/trigger",
    response_model=ApiResponse[BackupRecord],
    responses={
        500: {
            "model": ApiResponse[BackupRecord],
            "description": "The backup ran and failed; the failure record is returned in data",
        }
    },
    summary="Trigger backup",
    description="""Take a snapshot of the live store now.

The request waits for the snapshot to finish. If a backup is already
running, no new snapshot is taken and a `skipped-busy` record is returned.
A failed backup responds with HTTP 500 and the failure record.""",
)
async def trigger_backup(
    backups: Annotated[BackupScheduler, Depends(get_backup_scheduler)],
):
    record = await backups.trigger()

    if record.status == BackupStatus.FAILURE:
        logger.error("manual_backup_failed", record_id=record.id, error=record.error_message)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ApiResponse.fail(
                record.error_message or "Backup failed", data=record
            ).model_dump(mode="json"),
        )

    logger.info("manual_backup_triggered", record_id=record.id, status=record.status.value)
    return ApiResponse.ok(record)


@router.get(
    "/integrity",
    response_model=ApiResponse[List[IntegrityRecord]],
    summary="Integrity history",
    description="Most recent integrity check records, newest first.",
)
async def get_integrity_history(
    integrity: Annotated[IntegrityChecker, Depends(get_integrity_checker)],
    limit: HistoryLimit = 30,
) -> ApiResponse[List[IntegrityRecord]]:
    return ApiResponse.ok(integrity.get_history(limit))


@router.post(
    "/integrity/check",
    response_model=ApiResponse[IntegrityRecord],
    summary="Run integrity check",
    description="""Verify the newest successful snapshot now.

The response always has HTTP 200; the record's `status` is `pass`, `fail`,
`error`, or `skipped-busy` when another check is already running.""",
)
async def run_integrity_check(
    integrity: Annotated[IntegrityChecker, Depends(get_integrity_checker)],
) -> ApiResponse[IntegrityRecord]:
    record = await integrity.run_check()
    logger.info("manual_integrity_check_completed", record_id=record.id, status=record.status.value)
    return ApiResponse.ok(record)
