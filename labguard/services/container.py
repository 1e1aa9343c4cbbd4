"""Wiring of the persistence-safety services from configuration."""

from dataclasses import dataclass

import structlog

from labguard.common.clock import Clock, SystemClock
from labguard.common.config import Config
from labguard.core.checksum import ChecksumEngine
from labguard.core.db import Database
from labguard.core.encryption import SnapshotCipher
from labguard.core.ledger import Ledger
from labguard.core.models import BackupRecord, IntegrityRecord
from labguard.core.snapshot import SnapshotStore

from .backup_service import BackupScheduler
from .certificate_service import CertificateAuthority, CertificateProvisioner
from .integrity_service import IntegrityChecker

logger = structlog.get_logger(__name__)


@dataclass
class SafetyServices:
    """Every long-lived component the server and CLI need."""

    config: Config
    clock: Clock
    database: Database
    checksum_engine: ChecksumEngine
    snapshot_store: SnapshotStore
    backup_ledger: Ledger[BackupRecord]
    integrity_ledger: Ledger[IntegrityRecord]
    backup_scheduler: BackupScheduler
    integrity_checker: IntegrityChecker
    certificates: CertificateProvisioner

    async def load(self) -> None:
        """Open the live store (if it exists yet) and read both ledgers."""
        if self.database.db_path.is_file():
            await self.database.connect()
        else:
            logger.warning("live_store_missing", db_path=str(self.database.db_path))
        await self.backup_ledger.load()
        await self.integrity_ledger.load()
        self.backup_scheduler.restore_last_run()
        self.integrity_checker.restore_last_run()

    async def start(self) -> None:
        """
        Load state, run the startup integrity check, and arm both timers.

        The startup check finishes before this returns, so callers can start
        accepting traffic afterwards.
        """
        await self.load()

        if self.config.integrity.run_on_startup:
            record = await self.integrity_checker.run_startup_check()
            logger.info(
                "startup_integrity_check_completed",
                status=record.status.value,
                detail=record.detail,
            )

        self.backup_scheduler.start()
        self.integrity_checker.start()
        logger.info("safety_services_started")

    async def stop_timers(self) -> None:
        await self.backup_scheduler.stop()
        await self.integrity_checker.stop()

    async def drain(self) -> None:
        """Wait for in-flight backup and integrity runs."""
        await self.backup_scheduler.drain()
        await self.integrity_checker.drain()

    async def close_store(self) -> None:
        await self.database.close()

    async def shutdown(self) -> None:
        """Stop timers, finish in-flight runs, close the store."""
        await self.stop_timers()
        await self.drain()
        await self.close_store()
        logger.info("safety_services_stopped")


def build_services(
    config: Config,
    clock: Clock | None = None,
    authority: CertificateAuthority | None = None,
) -> SafetyServices:
    """
    Construct all services from a resolved configuration.

    Args:
        config: Configuration with resolved paths
        clock: Time source (real time when omitted)
        authority: Certificate generator (``cryptography`` when omitted)

    Returns:
        SafetyServices ready for ``start()``
    """
    clock = clock or SystemClock()

    database = Database(
        config.get_database_path(),
        enable_wal=config.database.enable_wal,
        timeout=config.database.timeout,
    )
    checksum_engine = ChecksumEngine(config.backup.checksum_algorithm)
    cipher = SnapshotCipher.from_config(config.backup.encryption_key)
    snapshot_store = SnapshotStore(
        source_path=config.get_database_path(),
        backup_dir=config.get_backup_dir(),
        retention_count=config.backup.retention_count,
        checksum_engine=checksum_engine,
        clock=clock,
        file_prefix=config.backup.file_prefix,
        cipher=cipher,
    )

    backup_ledger: Ledger[BackupRecord] = Ledger(
        config.get_backup_ledger_path(),
        BackupRecord,
        "started_at",
        max_records=config.backup.history_limit,
        on_evict=snapshot_store.delete_snapshot_file,
    )
    integrity_ledger: Ledger[IntegrityRecord] = Ledger(
        config.get_integrity_ledger_path(),
        IntegrityRecord,
        "checked_at",
        max_records=config.integrity.history_limit,
    )

    backup_scheduler = BackupScheduler(
        snapshot_store,
        backup_ledger,
        interval_seconds=config.backup.interval_seconds,
        clock=clock,
        enabled=config.backup.enabled,
    )
    integrity_checker = IntegrityChecker(
        backup_ledger,
        integrity_ledger,
        checksum_engine,
        interval_seconds=config.backup.interval_seconds,
        offset_seconds=config.integrity.offset_seconds,
        clock=clock,
        structural_check=config.integrity.structural_check,
        database=database if config.integrity.check_live_store else None,
        enabled=config.integrity.enabled,
        cipher=cipher,
    )

    return SafetyServices(
        config=config,
        clock=clock,
        database=database,
        checksum_engine=checksum_engine,
        snapshot_store=snapshot_store,
        backup_ledger=backup_ledger,
        integrity_ledger=integrity_ledger,
        backup_scheduler=backup_scheduler,
        integrity_checker=integrity_checker,
        certificates=CertificateProvisioner(config, authority=authority, clock=clock),
    )
