"""Tests for SnapshotStore."""

import os
import sqlite3
from datetime import timedelta
from pathlib import Path

import pytest

from labguard.common.clock import ManualClock
from labguard.core.checksum import ChecksumEngine
from labguard.core.encryption import SnapshotCipher
from labguard.core.models import BackupStatus, RunTrigger
from labguard.core.snapshot import SnapshotStore

KEY = bytes(range(32))


class TestSnapshot:
    """Tests for taking snapshots."""

    @pytest.mark.asyncio
    async def test_snapshot_success(self, snapshot_store: SnapshotStore, checksum_engine: ChecksumEngine):
        record = await snapshot_store.snapshot(RunTrigger.MANUAL)

        assert record.status == BackupStatus.SUCCESS
        assert record.trigger == RunTrigger.MANUAL
        assert record.filename.startswith("lab-data-backup-")
        assert record.filename.endswith(".db")
        assert record.error_message is None

        path = Path(record.file_path)
        assert path.parent == snapshot_store.backup_dir
        assert record.size_bytes == path.stat().st_size
        assert record.checksum == await checksum_engine.compute(path)

    @pytest.mark.asyncio
    async def test_snapshot_is_a_usable_database(self, snapshot_store: SnapshotStore):
        record = await snapshot_store.snapshot()

        conn = sqlite3.connect(record.file_path)
        try:
            count = conn.execute("SELECT COUNT(*) FROM subjects").fetchone()[0]
        finally:
            conn.close()
        assert count == 25

    @pytest.mark.asyncio
    async def test_snapshot_includes_uncheckpointed_writes(self, snapshot_store: SnapshotStore):
        """Rows still sitting in the WAL are part of the snapshot."""
        conn = sqlite3.connect(snapshot_store.source_path)
        conn.execute("PRAGMA wal_autocheckpoint=0")
        conn.execute("INSERT INTO subjects (experiment_id, label) VALUES (1, 'late-arrival')")
        conn.commit()
        try:
            record = await snapshot_store.snapshot()
        finally:
            conn.close()

        snap = sqlite3.connect(record.file_path)
        try:
            labels = [row[0] for row in snap.execute("SELECT label FROM subjects")]
        finally:
            snap.close()
        assert "late-arrival" in labels

    @pytest.mark.asyncio
    async def test_snapshot_sees_commits_behind_an_open_reader(self, snapshot_store: SnapshotStore):
        """A reader pinning the WAL does not hide later commits from the snapshot."""
        reader = sqlite3.connect(snapshot_store.source_path, isolation_level=None)
        writer = sqlite3.connect(snapshot_store.source_path)
        try:
            reader.execute("BEGIN")
            reader.execute("SELECT COUNT(*) FROM subjects").fetchone()
            writer.execute("CREATE TABLE sessions (id INTEGER PRIMARY KEY, started TEXT)")
            writer.execute("INSERT INTO sessions (started) VALUES ('2026-03-01')")
            writer.commit()

            record = await snapshot_store.snapshot()
        finally:
            reader.execute("COMMIT")
            reader.close()
            writer.close()

        assert record.status == BackupStatus.SUCCESS
        snap = sqlite3.connect(record.file_path)
        try:
            tables = {row[0] for row in snap.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
            sessions = snap.execute("SELECT COUNT(*) FROM sessions").fetchone()[0]
        finally:
            snap.close()
        assert "sessions" in tables
        assert sessions == 1

    @pytest.mark.asyncio
    async def test_snapshot_is_a_single_file(self, snapshot_store: SnapshotStore):
        """The copy is switched out of WAL mode, so it never needs side files."""
        record = await snapshot_store.snapshot()

        uri = f"{Path(record.file_path).resolve().as_uri()}?mode=ro&immutable=1"
        snap = sqlite3.connect(uri, uri=True)
        try:
            journal_mode = snap.execute("PRAGMA journal_mode").fetchone()[0]
        finally:
            snap.close()
        assert journal_mode == "delete"
        assert sorted(p.name for p in snapshot_store.backup_dir.iterdir()) == [record.filename]

    @pytest.mark.asyncio
    async def test_missing_source_yields_failure(self, tmp_path: Path, manual_clock: ManualClock):
        store = SnapshotStore(
            source_path=tmp_path / "absent.db",
            backup_dir=tmp_path / "backups",
            retention_count=3,
            checksum_engine=ChecksumEngine(),
            clock=manual_clock,
        )

        record = await store.snapshot()

        assert record.status == BackupStatus.FAILURE
        assert record.checksum is None
        assert "not found" in record.error_message
        assert store.list_snapshots() == []

    @pytest.mark.asyncio
    async def test_unwritable_destination_leaves_no_file(self, tmp_path: Path, live_db: Path):
        """A backup directory that cannot be created produces a failure and no file."""
        blocker = tmp_path / "blocked"
        blocker.write_text("not a directory")
        store = SnapshotStore(
            source_path=live_db,
            backup_dir=blocker,
            retention_count=3,
            checksum_engine=ChecksumEngine(),
        )

        record = await store.snapshot()

        assert record.status == BackupStatus.FAILURE
        assert record.file_path is None
        assert blocker.read_text() == "not a directory"
        assert not any(p.name.startswith("lab-data-backup") for p in tmp_path.iterdir())

    @pytest.mark.asyncio
    async def test_read_only_directory_leaves_no_partial_file(self, tmp_path: Path, live_db: Path):
        if os.geteuid() == 0:
            pytest.skip("root ignores directory permissions")
        backup_dir = tmp_path / "readonly"
        backup_dir.mkdir()
        backup_dir.chmod(0o500)
        store = SnapshotStore(
            source_path=live_db,
            backup_dir=backup_dir,
            retention_count=3,
            checksum_engine=ChecksumEngine(),
        )
        try:
            record = await store.snapshot()
            assert record.status == BackupStatus.FAILURE
            assert list(backup_dir.iterdir()) == []
        finally:
            backup_dir.chmod(0o700)

    @pytest.mark.asyncio
    async def test_stale_temp_file_removed(self, snapshot_store: SnapshotStore):
        """A temp file left by a killed copy is cleaned up by the next snapshot."""
        snapshot_store.backup_dir.mkdir(parents=True, exist_ok=True)
        stale = snapshot_store.backup_dir / ".lab-data-backup-20250101_000000_000000-deadbeef.db.tmp"
        stale.write_bytes(b"half a copy")

        record = await snapshot_store.snapshot()

        assert record.status == BackupStatus.SUCCESS
        assert not stale.exists()
        assert [s.filename for s in snapshot_store.list_snapshots()] == [record.filename]


class TestRetention:
    """Tests for snapshot retention."""

    @pytest.mark.asyncio
    async def test_keeps_newest_k(self, snapshot_store: SnapshotStore, manual_clock: ManualClock):
        records = []
        for _ in range(5):
            records.append(await snapshot_store.snapshot())
            manual_clock.advance(60)

        remaining = [s.filename for s in snapshot_store.list_snapshots()]

        assert len(remaining) == 3
        assert remaining == [r.filename for r in reversed(records[-3:])]

    @pytest.mark.asyncio
    async def test_same_timestamp_keeps_count(self, snapshot_store: SnapshotStore):
        """Snapshots taken within the same clock instant still respect the bound."""
        for _ in range(5):
            await snapshot_store.snapshot()

        assert len(snapshot_store.list_snapshots()) == 3

    def test_ignores_foreign_files(self, snapshot_store: SnapshotStore, manual_clock: ManualClock):
        backup_dir = snapshot_store.backup_dir
        backup_dir.mkdir(parents=True, exist_ok=True)
        (backup_dir / "notes.txt").write_text("keep me")
        (backup_dir / "lab-data-backup-manual.db").write_text("unparsable name")
        for i in range(4):
            when = manual_clock.now() + timedelta(hours=i)
            name = snapshot_store.build_filename(when, f"{i:08x}")
            (backup_dir / name).write_bytes(b"x")

        deleted = snapshot_store.apply_retention()

        assert len(deleted) == 1
        assert deleted[0] == snapshot_store.build_filename(manual_clock.now(), "00000000")
        assert (backup_dir / "notes.txt").exists()
        assert (backup_dir / "lab-data-backup-manual.db").exists()


class TestEncryptedSnapshots:
    """Tests for snapshots encrypted at rest."""

    @pytest.fixture
    def encrypted_store(self, snapshot_store: SnapshotStore) -> SnapshotStore:
        snapshot_store.cipher = SnapshotCipher(KEY)
        return snapshot_store

    @pytest.mark.asyncio
    async def test_encrypted_snapshot(
        self, encrypted_store: SnapshotStore, checksum_engine: ChecksumEngine, tmp_path: Path
    ):
        record = await encrypted_store.snapshot()

        assert record.status == BackupStatus.SUCCESS
        assert record.encrypted is True
        assert record.filename.endswith(".db.enc")

        path = Path(record.file_path)
        assert not path.read_bytes().startswith(b"SQLite format 3")
        assert record.checksum == await checksum_engine.compute(path)
        assert sorted(p.name for p in encrypted_store.backup_dir.iterdir()) == [record.filename]

        restored = tmp_path / "restored.db"
        SnapshotCipher(KEY).decrypt_file(path, restored)
        conn = sqlite3.connect(restored)
        try:
            count = conn.execute("SELECT COUNT(*) FROM subjects").fetchone()[0]
        finally:
            conn.close()
        assert count == 25

    @pytest.mark.asyncio
    async def test_retention_covers_plain_and_encrypted(
        self, snapshot_store: SnapshotStore, manual_clock: ManualClock
    ):
        plain = []
        for _ in range(2):
            plain.append(await snapshot_store.snapshot())
            manual_clock.advance(60)
        snapshot_store.cipher = SnapshotCipher(KEY)
        encrypted = []
        for _ in range(2):
            encrypted.append(await snapshot_store.snapshot())
            manual_clock.advance(60)

        remaining = snapshot_store.list_snapshots()

        assert [s.filename for s in remaining] == [
            encrypted[1].filename,
            encrypted[0].filename,
            plain[1].filename,
        ]
        assert [s.encrypted for s in remaining] == [True, True, False]
        assert not Path(plain[0].file_path).exists()

    @pytest.mark.asyncio
    async def test_stale_encryption_temp_files_removed(self, encrypted_store: SnapshotStore):
        backup_dir = encrypted_store.backup_dir
        backup_dir.mkdir(parents=True, exist_ok=True)
        leftovers = [
            backup_dir / ".lab-data-backup-20250101_000000_000000-deadbeef.db.enc.plain.tmp",
            backup_dir / ".lab-data-backup-20250101_000000_000000-deadbeef.db.enc.plain.tmp-journal",
            backup_dir / ".lab-data-backup-20250101_000000_000000-deadbeef.db.enc.tmp",
        ]
        for path in leftovers:
            path.write_bytes(b"interrupted")

        record = await encrypted_store.snapshot()

        assert record.status == BackupStatus.SUCCESS
        assert sorted(p.name for p in backup_dir.iterdir()) == [record.filename]


class TestEvictionDelete:
    """Tests for deleting the file of an evicted ledger record."""

    @pytest.mark.asyncio
    async def test_deletes_file_inside_backup_dir(self, snapshot_store: SnapshotStore):
        record = await snapshot_store.snapshot()

        assert await snapshot_store.delete_snapshot_file(record) is True
        assert not Path(record.file_path).exists()
        assert await snapshot_store.delete_snapshot_file(record) is False

    @pytest.mark.asyncio
    async def test_refuses_paths_outside_backup_dir(self, snapshot_store: SnapshotStore, tmp_path: Path):
        record = await snapshot_store.snapshot()
        outsider = tmp_path / "elsewhere.db"
        outsider.write_bytes(b"keep")

        moved = record.model_copy(update={"file_path": str(outsider)})

        assert await snapshot_store.delete_snapshot_file(moved) is False
        assert outsider.exists()
