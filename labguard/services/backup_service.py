"""Scheduled and on-demand snapshots of the live store.

The scheduler owns one :class:`PeriodicTimer` and one mutual-exclusion flag.
Timer ticks and manual triggers both go through :meth:`BackupScheduler.run_backup`,
so at most one snapshot is ever being written. A trigger that arrives while a
run is active is recorded as ``skipped-busy`` and produces no file.

Each run executes in its own task, shielded from the caller. Stopping the
timer (or a client disconnecting from the trigger endpoint) never interrupts
a copy half way; :meth:`BackupScheduler.drain` waits for it instead.

Example:
    >>> scheduler = BackupScheduler(store, ledger, interval_seconds=86400)
    >>> scheduler.start()
    >>> record = await scheduler.trigger()
    >>> await scheduler.stop()
    >>> await scheduler.drain()
"""

import asyncio
import uuid
from datetime import datetime

import structlog
from pydantic import BaseModel, Field

from labguard.common.clock import Clock, SystemClock
from labguard.common.logging_config import run_context
from labguard.core.exceptions import LedgerError
from labguard.core.ledger import Ledger
from labguard.core.models import BackupRecord, BackupStatus, RunTrigger, SchedulerState
from labguard.core.snapshot import SnapshotStore
from labguard.tasks.timer import PeriodicTimer

logger = structlog.get_logger(__name__)


class BackupOverview(BaseModel):
    """Scheduler state plus what is on disk."""

    state: SchedulerState
    last_backup: BackupRecord | None = None
    last_success: BackupRecord | None = None
    backup_dir: str
    retention_count: int
    encryption_enabled: bool = False
    snapshot_count: int = 0
    total_size_bytes: int = 0
    history_count: int = 0


class BackupScheduler:
    """Runs snapshots on a fixed interval and on demand.

    Attributes:
        store: Snapshot store that writes the files
        ledger: Backup history, newest first
        interval_seconds: Time between scheduled runs
        enabled: When False, ``start()`` does not arm the timer (manual
            triggers still work)
    """

    def __init__(
        self,
        store: SnapshotStore,
        ledger: Ledger[BackupRecord],
        interval_seconds: int,
        clock: Clock | None = None,
        enabled: bool = True,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.interval_seconds = interval_seconds
        self.clock = clock or SystemClock()
        self.enabled = enabled
        self._timer = PeriodicTimer(
            "backup",
            interval_seconds,
            self.tick,
            clock=self.clock,
        )
        self._running = False
        self._inflight: asyncio.Task[BackupRecord] | None = None
        self._last_run_at: datetime | None = None

    @property
    def running(self) -> bool:
        """True only while a snapshot is being taken."""
        return self._running

    @property
    def timer(self) -> PeriodicTimer:
        return self._timer

    def start(self) -> None:
        """Arm the periodic timer."""
        if not self.enabled:
            logger.info("backup_scheduler_disabled")
            return
        self._timer.start()
        logger.info(
            "backup_scheduler_started",
            interval_seconds=self.interval_seconds,
            next_run_at=self._format(self._timer.next_fire_at),
        )

    async def stop(self) -> None:
        """Cancel the timer. An in-flight run keeps going; see :meth:`drain`."""
        await self._timer.cancel()
        logger.info("backup_scheduler_stopped", run_in_progress=self._running)

    async def drain(self) -> None:
        """Wait for the in-flight run, if any, to finish."""
        inflight = self._inflight
        if inflight is None or inflight.done():
            return
        logger.info("backup_drain_waiting")
        await asyncio.wait({inflight})

    async def tick(self) -> None:
        """Timer callback."""
        await self.run_backup(RunTrigger.SCHEDULED)

    async def trigger(self) -> BackupRecord:
        """Take a snapshot now."""
        return await self.run_backup(RunTrigger.MANUAL)

    async def run_backup(self, trigger: RunTrigger) -> BackupRecord:
        """
        Take one snapshot unless another is already running.

        Args:
            trigger: What started this run

        Returns:
            The recorded BackupRecord (``success``, ``failure`` or ``skipped-busy``)
        """
        if self._running:
            now = self.clock.now()
            record = BackupRecord(
                id=uuid.uuid4().hex,
                started_at=now,
                finished_at=now,
                status=BackupStatus.SKIPPED_BUSY,
                trigger=trigger,
                checksum_algorithm=self.store.checksum_engine.algorithm,
                error_message="Backup already in progress",
            )
            logger.warning("backup_skipped_busy", trigger=trigger.value, record_id=record.id)
            await self._append(record)
            return record

        # Set before yielding to the loop so a concurrent caller sees it
        self._running = True
        self._inflight = asyncio.get_running_loop().create_task(
            self._execute(trigger), name=f"backup:{trigger.value}"
        )
        return await asyncio.shield(self._inflight)

    async def _execute(self, trigger: RunTrigger) -> BackupRecord:
        with run_context("backup", trigger.value):
            return await self._run(trigger)

    async def _run(self, trigger: RunTrigger) -> BackupRecord:
        try:
            try:
                record = await self.store.snapshot(trigger)
            except Exception as e:
                now = self.clock.now()
                logger.error("backup_run_crashed", trigger=trigger.value, error=str(e), exc_info=True)
                record = BackupRecord(
                    id=uuid.uuid4().hex,
                    started_at=now,
                    finished_at=now,
                    status=BackupStatus.FAILURE,
                    trigger=trigger,
                    checksum_algorithm=self.store.checksum_engine.algorithm,
                    error_message=f"Unexpected backup error: {e}",
                )

            await self._append(record)
            self._last_run_at = record.started_at

            if record.status == BackupStatus.SUCCESS:
                logger.info(
                    "backup_completed",
                    trigger=trigger.value,
                    record_id=record.id,
                    filename=record.filename,
                    size_bytes=record.size_bytes,
                    duration_ms=record.duration_ms,
                )
            else:
                logger.error(
                    "backup_failed",
                    trigger=trigger.value,
                    record_id=record.id,
                    error=record.error_message,
                )
            return record
        finally:
            self._running = False
            self._inflight = None

    async def _append(self, record: BackupRecord) -> None:
        try:
            await self.ledger.append(record)
        except LedgerError as e:
            logger.error("backup_history_write_failed", record_id=record.id, error=str(e))

    def get_state(self) -> SchedulerState:
        return SchedulerState(
            enabled=self.enabled,
            interval_seconds=self.interval_seconds,
            last_run_at=self._last_run_at,
            next_run_at=self._timer.next_fire_at,
            running=self._running,
            timer_active=self._timer.running,
        )

    def get_status(self) -> BackupOverview:
        """Current scheduler state, last outcome and snapshot directory summary."""
        snapshots = self.store.list_snapshots()
        return BackupOverview(
            state=self.get_state(),
            last_backup=self.ledger.latest(),
            last_success=self.ledger.latest(lambda r: r.status == BackupStatus.SUCCESS),
            backup_dir=str(self.store.backup_dir),
            retention_count=self.store.retention_count,
            encryption_enabled=self.store.encrypts,
            snapshot_count=len(snapshots),
            total_size_bytes=sum(s.size_bytes for s in snapshots),
            history_count=len(self.ledger),
        )

    def get_history(self, limit: int = 30) -> list[BackupRecord]:
        """Most recent backup records, newest first."""
        return self.ledger.recent(limit)

    def restore_last_run(self) -> None:
        """Seed ``last_run_at`` from the ledger after a restart."""
        latest = self.ledger.latest(lambda r: r.status != BackupStatus.SKIPPED_BUSY)
        if latest is not None:
            self._last_run_at = latest.started_at

    @staticmethod
    def _format(value: datetime | None) -> str | None:
        return value.isoformat() if value else None
