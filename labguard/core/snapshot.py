"""Point-in-time snapshots of the live SQLite store.

A snapshot is taken with SQLite's online backup API, so it holds every
transaction committed before the backup started, including pages still in
the WAL. It is written under a temporary name, flushed to disk and then
renamed into place. A file carrying a final snapshot name is therefore
always complete. After each snapshot the oldest files beyond the retention
count are deleted.

When a cipher is configured the snapshot is encrypted before the rename and
gets an ``.enc`` suffix; its checksum covers the encrypted bytes.

Example:
    >>> store = SnapshotStore(db_path, backup_dir, retention_count=30,
    ...                       checksum_engine=ChecksumEngine())
    >>> record = await store.snapshot(RunTrigger.MANUAL)
    >>> record.status
    <BackupStatus.SUCCESS: 'success'>
"""

import asyncio
import os
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import aiofiles.os
import aiosqlite
import structlog

from labguard.common.clock import Clock, SystemClock

from .checksum import ChecksumEngine
from .encryption import ENCRYPTED_SUFFIX, SnapshotCipher
from .exceptions import SnapshotIOError
from .models import BackupRecord, BackupStatus, RunTrigger

logger = structlog.get_logger(__name__)

__all__ = ["BackupRecord", "SnapshotFile", "SnapshotStore"]

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S_%f"


@dataclass(frozen=True)
class SnapshotFile:
    """A finalized snapshot on disk."""

    path: Path
    filename: str
    created_at: datetime
    size_bytes: int
    mtime: float
    encrypted: bool = False


class SnapshotStore:
    """Creates, lists and prunes snapshot files in one backup directory.

    Attributes:
        source_path: Live store file being copied
        backup_dir: Directory holding snapshot files
        retention_count: Number of snapshot files kept after each run
        cipher: Encrypts new snapshots when set
    """

    def __init__(
        self,
        source_path: Path,
        backup_dir: Path,
        retention_count: int,
        checksum_engine: ChecksumEngine,
        clock: Optional[Clock] = None,
        file_prefix: str = "lab-data-backup",
        cipher: Optional[SnapshotCipher] = None,
    ):
        if retention_count < 1:
            raise ValueError("retention_count must be at least 1")
        self.source_path = source_path
        self.backup_dir = backup_dir
        self.retention_count = retention_count
        self.checksum_engine = checksum_engine
        self.clock = clock or SystemClock()
        self.file_prefix = file_prefix
        self.cipher = cipher
        self._name_pattern = re.compile(
            rf"^{re.escape(file_prefix)}-(?P<ts>\d{{8}}_\d{{6}}_\d{{6}})-(?P<id>[0-9a-f]{{8}})"
            rf"\.db(?P<enc>{re.escape(ENCRYPTED_SUFFIX)})?$"
        )

    @property
    def encrypts(self) -> bool:
        return self.cipher is not None

    def build_filename(self, when: datetime, record_id: str, encrypted: bool = False) -> str:
        stamp = when.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)
        suffix = ENCRYPTED_SUFFIX if encrypted else ""
        return f"{self.file_prefix}-{stamp}-{record_id[:8]}.db{suffix}"

    def _temp_path_for(self, final_path: Path, stage: str = "") -> Path:
        return final_path.with_name(f".{final_path.name}{stage}.tmp")

    def _parse_timestamp(self, filename: str) -> Optional[datetime]:
        match = self._name_pattern.match(filename)
        if not match:
            return None
        return datetime.strptime(match.group("ts"), TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)

    def is_encrypted_name(self, filename: str) -> bool:
        match = self._name_pattern.match(filename)
        return bool(match and match.group("enc"))

    async def snapshot(self, trigger: RunTrigger = RunTrigger.MANUAL) -> BackupRecord:
        """
        Back up the live store into a new snapshot file.

        Never raises for I/O problems: a missing source, an unwritable
        directory or a full disk produce a ``failure`` record and leave no
        file under a final snapshot name.

        Args:
            trigger: What started this run

        Returns:
            BackupRecord with status ``success`` or ``failure``
        """
        record_id = uuid.uuid4().hex
        started_at = self.clock.now()
        started_mono = self.clock.monotonic()
        encrypted = self.encrypts
        filename = self.build_filename(started_at, record_id, encrypted=encrypted)
        final_path = self.backup_dir / filename
        temp_path = self._temp_path_for(final_path)
        plain_path = self._temp_path_for(final_path, ".plain") if encrypted else temp_path

        logger.info(
            "snapshot_starting",
            record_id=record_id,
            trigger=trigger.value,
            source_path=str(self.source_path),
            backup_path=str(final_path),
            encrypted=encrypted,
        )

        self.cleanup_stale_temp_files()

        try:
            if not self.source_path.is_file():
                raise SnapshotIOError(
                    f"Source database not found: {self.source_path}",
                    source_path=self.source_path,
                )

            await self._backup_to(plain_path, final_path)

            loop = asyncio.get_running_loop()
            if encrypted:
                await loop.run_in_executor(None, self._sync_encrypt, plain_path, temp_path, final_path)
            await loop.run_in_executor(None, self._sync_finalize, temp_path, final_path)

            checksum = await self.checksum_engine.compute(final_path)
            size_bytes = final_path.stat().st_size

        except Exception as e:
            self._discard(plain_path, temp_path, final_path)
            error = str(e) if isinstance(e, SnapshotIOError) else f"Failed to create snapshot: {e}"
            duration_ms = self._elapsed_ms(started_mono)
            logger.error(
                "snapshot_failed",
                record_id=record_id,
                backup_path=str(final_path),
                error=error,
                duration_ms=duration_ms,
            )
            return BackupRecord(
                id=record_id,
                started_at=started_at,
                finished_at=self.clock.now(),
                status=BackupStatus.FAILURE,
                trigger=trigger,
                checksum_algorithm=self.checksum_engine.algorithm,
                duration_ms=duration_ms,
                error_message=error,
            )

        deleted = self.apply_retention()
        duration_ms = self._elapsed_ms(started_mono)

        logger.info(
            "snapshot_created",
            record_id=record_id,
            filename=filename,
            size_bytes=size_bytes,
            checksum=checksum[:16] + "...",
            encrypted=encrypted,
            retention_deleted=len(deleted),
            duration_ms=duration_ms,
        )

        return BackupRecord(
            id=record_id,
            started_at=started_at,
            finished_at=self.clock.now(),
            status=BackupStatus.SUCCESS,
            trigger=trigger,
            file_path=str(final_path),
            filename=filename,
            size_bytes=size_bytes,
            checksum=checksum,
            checksum_algorithm=self.checksum_engine.algorithm,
            encrypted=encrypted,
            duration_ms=duration_ms,
        )

    def _elapsed_ms(self, started_mono: float) -> int:
        return max(0, int((self.clock.monotonic() - started_mono) * 1000))

    async def _backup_to(self, destination: Path, final_path: Path) -> None:
        """Copy every committed page of the live store into ``destination``."""
        try:
            await aiofiles.os.makedirs(self.backup_dir, exist_ok=True)

            async with aiosqlite.connect(str(self.source_path)) as source_conn:
                async with aiosqlite.connect(str(destination)) as backup_conn:
                    await source_conn.backup(backup_conn)
                    # The copy inherits the WAL flag; a snapshot is a single self-contained file
                    await backup_conn.execute("PRAGMA journal_mode = DELETE")

            logger.debug("snapshot_backup_completed", source_db=str(self.source_path))
        except (OSError, aiosqlite.Error) as e:
            raise SnapshotIOError(
                f"Failed to write snapshot {final_path.name}: {e}",
                source_path=self.source_path,
                backup_path=final_path,
            ) from e

    def _sync_encrypt(self, plain_path: Path, temp_path: Path, final_path: Path) -> None:
        """Encrypt the plain copy into the temp file. Runs in a worker thread."""
        assert self.cipher is not None
        try:
            self.cipher.encrypt_file(plain_path, temp_path)
            plain_path.unlink()
        except OSError as e:
            raise SnapshotIOError(
                f"Failed to encrypt snapshot {final_path.name}: {e}",
                source_path=self.source_path,
                backup_path=final_path,
            ) from e

    def _sync_finalize(self, temp_path: Path, final_path: Path) -> None:
        """Flush, rename. Runs in a worker thread."""
        try:
            fd = os.open(temp_path, os.O_RDONLY)
            try:
                os.fsync(fd)
            finally:
                os.close(fd)

            os.replace(temp_path, final_path)
            self._fsync_dir(self.backup_dir)
        except OSError as e:
            raise SnapshotIOError(
                f"Failed to write snapshot {final_path.name}: {e}",
                source_path=self.source_path,
                backup_path=final_path,
            ) from e

    @staticmethod
    def _fsync_dir(directory: Path) -> None:
        try:
            fd = os.open(directory, os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(fd)
        except OSError:
            # Some filesystems refuse fsync on directories
            pass
        finally:
            os.close(fd)

    def _discard(self, *paths: Path) -> None:
        for path in paths:
            for leftover in (path, path.with_name(path.name + "-journal")):
                try:
                    leftover.unlink(missing_ok=True)
                except OSError as e:
                    logger.warning("snapshot_cleanup_failed", path=str(leftover), error=str(e))

    def cleanup_stale_temp_files(self) -> List[str]:
        """Remove temporary files (and their journals) left behind by an interrupted run."""
        if not self.backup_dir.is_dir():
            return []

        removed = []
        for path in self.backup_dir.glob(f".{self.file_prefix}-*.tmp*"):
            try:
                path.unlink()
                removed.append(path.name)
                logger.info("stale_snapshot_temp_removed", filename=path.name)
            except OSError as e:
                logger.warning("stale_snapshot_temp_remove_failed", filename=path.name, error=str(e))
        return removed

    def list_snapshots(self) -> List[SnapshotFile]:
        """
        List finalized snapshot files, plain and encrypted, newest first.

        Ordering uses the timestamp embedded in the filename, with the file's
        modification time breaking ties.
        """
        if not self.backup_dir.is_dir():
            return []

        snapshots = []
        for path in self.backup_dir.glob(f"{self.file_prefix}-*.db*"):
            created_at = self._parse_timestamp(path.name)
            if created_at is None:
                continue
            try:
                stat = path.stat()
            except OSError:
                continue
            snapshots.append(
                SnapshotFile(
                    path=path,
                    filename=path.name,
                    created_at=created_at,
                    size_bytes=stat.st_size,
                    mtime=stat.st_mtime,
                    encrypted=self.is_encrypted_name(path.name),
                )
            )

        snapshots.sort(key=lambda s: (s.created_at, s.mtime), reverse=True)
        return snapshots

    def apply_retention(self) -> List[str]:
        """
        Delete the oldest snapshot files beyond ``retention_count``.

        Plain and encrypted snapshots count towards the same bound. Deletion
        failures are logged and skipped.

        Returns:
            List of deleted snapshot filenames
        """
        snapshots = self.list_snapshots()
        if len(snapshots) <= self.retention_count:
            return []

        deleted = []
        for snapshot in snapshots[self.retention_count :]:
            try:
                snapshot.path.unlink()
                deleted.append(snapshot.filename)
                logger.info(
                    "snapshot_deleted",
                    filename=snapshot.filename,
                    age_reason="exceeded_retention_count",
                )
            except OSError as e:
                logger.error(
                    "snapshot_delete_failed",
                    filename=snapshot.filename,
                    error=str(e),
                )

        logger.info(
            "snapshot_retention_applied",
            deleted_count=len(deleted),
            remaining_count=len(snapshots) - len(deleted),
        )
        return deleted

    async def delete_snapshot_file(self, record: BackupRecord) -> bool:
        """Remove the file of an evicted ledger record if it is still present."""
        if not record.file_path:
            return False
        path = Path(record.file_path)
        if path.parent.resolve() != self.backup_dir.resolve():
            logger.warning("snapshot_delete_outside_backup_dir", path=str(path))
            return False
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            return False
        logger.info("snapshot_deleted", filename=path.name, age_reason="evicted_from_history")
        return True
