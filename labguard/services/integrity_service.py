"""Verification of the newest successful snapshot.

A check recomputes the snapshot's digest and compares it with the one recorded
when the backup was taken. It can also open the snapshot read-only and run
SQLite's own integrity pragmas on it, and run the same pragmas on the live
store. Encrypted snapshots are decrypted into a scratch directory for the
structural pass when the key is configured. Outcomes go to a bounded
integrity ledger; nothing here ever raises to the caller.

The first scheduled check fires ``offset_seconds`` after the first scheduled
backup, so it usually verifies the snapshot that was just taken.

Example:
    >>> checker = IntegrityChecker(backup_ledger, integrity_ledger, ChecksumEngine(),
    ...                            interval_seconds=86400, offset_seconds=1800)
    >>> await checker.run_startup_check()
    >>> checker.start()
"""

import asyncio
import tempfile
import uuid
from datetime import datetime
from pathlib import Path

import structlog
from pydantic import BaseModel

from labguard.common.clock import Clock, SystemClock
from labguard.common.logging_config import run_context
from labguard.core.checksum import ChecksumEngine
from labguard.core.db import Database, check_snapshot_structure
from labguard.core.encryption import SnapshotCipher
from labguard.core.exceptions import ChecksumMismatchError, LedgerError, SnapshotIOError
from labguard.core.ledger import Ledger
from labguard.core.models import (
    BackupRecord,
    BackupStatus,
    IntegrityRecord,
    IntegrityStatus,
    RunTrigger,
    SchedulerState,
)
from labguard.tasks.timer import PeriodicTimer

logger = structlog.get_logger(__name__)

NOTHING_TO_CHECK = "nothing to check"


class IntegrityOverview(BaseModel):
    """Checker state plus the last recorded outcome."""

    state: SchedulerState
    offset_seconds: int
    structural_check: bool
    live_store_check: bool
    last_check: IntegrityRecord | None = None
    last_failure: IntegrityRecord | None = None
    history_count: int = 0


class IntegrityChecker:
    """Periodically verifies the newest successful snapshot."""

    def __init__(
        self,
        backup_ledger: Ledger[BackupRecord],
        ledger: Ledger[IntegrityRecord],
        checksum_engine: ChecksumEngine,
        interval_seconds: int,
        offset_seconds: int = 1800,
        clock: Clock | None = None,
        structural_check: bool = True,
        database: Database | None = None,
        enabled: bool = True,
        cipher: SnapshotCipher | None = None,
    ) -> None:
        self.backup_ledger = backup_ledger
        self.ledger = ledger
        self.checksum_engine = checksum_engine
        self.interval_seconds = interval_seconds
        self.offset_seconds = offset_seconds
        self.clock = clock or SystemClock()
        self.structural_check = structural_check
        self.database = database
        self.enabled = enabled
        self.cipher = cipher
        self._timer = PeriodicTimer(
            "integrity",
            interval_seconds,
            self.tick,
            clock=self.clock,
            first_delay=interval_seconds + offset_seconds,
        )
        self._running = False
        self._inflight: asyncio.Task[IntegrityRecord] | None = None
        self._last_run_at: datetime | None = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def timer(self) -> PeriodicTimer:
        return self._timer

    def start(self) -> None:
        if not self.enabled:
            logger.info("integrity_scheduler_disabled")
            return
        self._timer.start()
        logger.info(
            "integrity_scheduler_started",
            interval_seconds=self.interval_seconds,
            offset_seconds=self.offset_seconds,
        )

    async def stop(self) -> None:
        await self._timer.cancel()
        logger.info("integrity_scheduler_stopped", check_in_progress=self._running)

    async def drain(self) -> None:
        inflight = self._inflight
        if inflight is None or inflight.done():
            return
        logger.info("integrity_drain_waiting")
        await asyncio.wait({inflight})

    async def tick(self) -> None:
        await self.run_check(RunTrigger.SCHEDULED)

    async def run_startup_check(self) -> IntegrityRecord:
        """Check once before the server starts accepting traffic."""
        return await self.run_check(RunTrigger.STARTUP)

    async def run_check(self, trigger: RunTrigger = RunTrigger.MANUAL) -> IntegrityRecord:
        """
        Verify the newest successful snapshot unless a check is already running.

        A rejected concurrent check returns a ``skipped-busy`` record that is
        not written to the ledger.
        """
        if self._running:
            logger.warning("integrity_check_skipped_busy", trigger=trigger.value)
            return IntegrityRecord(
                id=uuid.uuid4().hex,
                checked_at=self.clock.now(),
                status=IntegrityStatus.SKIPPED_BUSY,
                trigger=trigger,
                detail="Integrity check already in progress",
            )

        self._running = True
        self._inflight = asyncio.get_running_loop().create_task(
            self._execute(trigger), name=f"integrity:{trigger.value}"
        )
        return await asyncio.shield(self._inflight)

    async def _execute(self, trigger: RunTrigger) -> IntegrityRecord:
        with run_context("integrity", trigger.value):
            return await self._run(trigger)

    async def _run(self, trigger: RunTrigger) -> IntegrityRecord:
        try:
            started_mono = self.clock.monotonic()
            try:
                record = await self._check(trigger, started_mono)
            except Exception as e:
                logger.error("integrity_check_crashed", error=str(e), exc_info=True)
                record = IntegrityRecord(
                    id=uuid.uuid4().hex,
                    checked_at=self.clock.now(),
                    status=IntegrityStatus.ERROR,
                    trigger=trigger,
                    detail=f"Unexpected integrity check error: {e}",
                    duration_ms=self._elapsed_ms(started_mono),
                )

            try:
                await self.ledger.append(record)
            except LedgerError as e:
                logger.error("integrity_history_write_failed", record_id=record.id, error=str(e))

            self._last_run_at = record.checked_at
            self._log_outcome(record)
            return record
        finally:
            self._running = False
            self._inflight = None

    async def _check(self, trigger: RunTrigger, started_mono: float) -> IntegrityRecord:
        checked_at = self.clock.now()
        target = self.backup_ledger.latest(lambda r: r.status == BackupStatus.SUCCESS)

        live_issues: list[str] = []
        if self.database is not None:
            if self.database.is_connected or self.database.db_path.is_file():
                live_issues = [
                    f"live store: {issue}" for issue in await self.database.run_integrity_checks()
                ]
            else:
                # Fresh deployment: the tracker has not created the store yet
                logger.debug("live_store_check_skipped", db_path=str(self.database.db_path))

        def build(status: IntegrityStatus, detail: str, **fields) -> IntegrityRecord:
            return IntegrityRecord(
                id=uuid.uuid4().hex,
                checked_at=checked_at,
                status=status,
                trigger=trigger,
                target_backup_id=target.id if target else None,
                target_file=target.file_path if target else None,
                expected_checksum=target.checksum if target else None,
                detail=detail,
                duration_ms=self._elapsed_ms(started_mono),
                **fields,
            )

        if target is None:
            if live_issues:
                return build(
                    IntegrityStatus.FAIL,
                    f"No snapshot to verify; live store has {len(live_issues)} issue(s)",
                    issues=live_issues,
                )
            return build(IntegrityStatus.PASS, NOTHING_TO_CHECK)

        snapshot_path = Path(target.file_path) if target.file_path else None
        if snapshot_path is None or not snapshot_path.is_file():
            return build(
                IntegrityStatus.ERROR,
                f"Snapshot file missing: {target.filename}",
                issues=live_issues,
            )

        engine = self.checksum_engine
        if target.checksum_algorithm != engine.algorithm:
            engine = ChecksumEngine(target.checksum_algorithm, engine.chunk_size)

        try:
            actual = await engine.verify(snapshot_path, target.checksum or "")
        except ChecksumMismatchError as e:
            return build(
                IntegrityStatus.FAIL,
                f"Checksum mismatch for {target.filename}",
                actual_checksum=e.actual,
                issues=[str(e), *live_issues],
            )
        except OSError as e:
            return build(
                IntegrityStatus.ERROR,
                f"Cannot read snapshot {target.filename}: {e}",
                issues=live_issues,
            )

        structural_issues: list[str] = []
        notes: list[str] = []
        if self.structural_check:
            if not target.encrypted:
                structural_issues = await check_snapshot_structure(snapshot_path)
            elif self.cipher is not None:
                structural_issues = await self._check_encrypted_structure(snapshot_path)
            else:
                notes.append("structure not checked: snapshot is encrypted and no key is configured")

        issues = structural_issues + live_issues
        if issues:
            return build(
                IntegrityStatus.FAIL,
                f"{len(issues)} integrity issue(s) found",
                actual_checksum=actual,
                issues=issues,
            )

        detail = f"Snapshot {target.filename} verified"
        if notes:
            detail = f"{detail} ({'; '.join(notes)})"
        return build(IntegrityStatus.PASS, detail, actual_checksum=actual)

    async def _check_encrypted_structure(self, snapshot_path: Path) -> list[str]:
        """Decrypt into a scratch directory and run the structural pragmas there."""
        assert self.cipher is not None
        loop = asyncio.get_running_loop()
        with tempfile.TemporaryDirectory(prefix=".labguard-verify-", dir=snapshot_path.parent) as scratch:
            plain_path = Path(scratch) / "snapshot.db"
            try:
                await loop.run_in_executor(None, self.cipher.decrypt_file, snapshot_path, plain_path)
            except (SnapshotIOError, OSError) as e:
                return [f"Cannot decrypt snapshot: {e}"]
            return await check_snapshot_structure(plain_path)

    def _elapsed_ms(self, started_mono: float) -> int:
        return max(0, int((self.clock.monotonic() - started_mono) * 1000))

    def _log_outcome(self, record: IntegrityRecord) -> None:
        if record.status == IntegrityStatus.PASS:
            logger.info(
                "integrity_check_passed",
                trigger=record.trigger.value,
                target_backup_id=record.target_backup_id,
                detail=record.detail,
                duration_ms=record.duration_ms,
            )
        else:
            logger.error(
                "integrity_check_failed",
                trigger=record.trigger.value,
                status=record.status.value,
                target_backup_id=record.target_backup_id,
                expected_checksum=record.expected_checksum,
                actual_checksum=record.actual_checksum,
                detail=record.detail,
                issues=record.issues,
            )

    def get_state(self) -> SchedulerState:
        return SchedulerState(
            enabled=self.enabled,
            interval_seconds=self.interval_seconds,
            last_run_at=self._last_run_at,
            next_run_at=self._timer.next_fire_at,
            running=self._running,
            timer_active=self._timer.running,
        )

    def get_status(self) -> IntegrityOverview:
        return IntegrityOverview(
            state=self.get_state(),
            offset_seconds=self.offset_seconds,
            structural_check=self.structural_check,
            live_store_check=self.database is not None,
            last_check=self.ledger.latest(),
            last_failure=self.ledger.latest(lambda r: r.status != IntegrityStatus.PASS),
            history_count=len(self.ledger),
        )

    def get_history(self, limit: int = 30) -> list[IntegrityRecord]:
        return self.ledger.recent(limit)

    def restore_last_run(self) -> None:
        latest = self.ledger.latest()
        if latest is not None:
            self._last_run_at = latest.checked_at
