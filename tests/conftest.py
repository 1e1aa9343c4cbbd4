"""Shared pytest fixtures for all tests."""

import asyncio
import sqlite3
import time
from pathlib import Path
from typing import AsyncGenerator, Callable

import pytest
import pytest_asyncio

from labguard.common.clock import ManualClock
from labguard.common.config import (
    BackupConfig,
    Config,
    IntegrityConfig,
    LoggingConfig,
)
from labguard.core.checksum import ChecksumEngine
from labguard.core.ledger import Ledger
from labguard.core.models import BackupRecord, IntegrityRecord
from labguard.core.snapshot import SnapshotStore
from labguard.services import SafetyServices, build_services


def create_live_store(db_path: Path, rows: int = 25) -> Path:
    """Create a small WAL-mode SQLite store resembling the tracker's."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(
            "CREATE TABLE experiments (id INTEGER PRIMARY KEY, name TEXT NOT NULL)"
        )
        conn.execute(
            "CREATE TABLE subjects ("
            " id INTEGER PRIMARY KEY,"
            " experiment_id INTEGER REFERENCES experiments(id),"
            " label TEXT NOT NULL)"
        )
        conn.execute("INSERT INTO experiments (id, name) VALUES (1, 'Open field')")
        conn.executemany(
            "INSERT INTO subjects (experiment_id, label) VALUES (1, ?)",
            [(f"mouse-{i:03d}",) for i in range(rows)],
        )
        conn.commit()
    finally:
        conn.close()
    return db_path


async def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll ``predicate`` on the real event loop until it holds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("Condition not met within timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def manual_clock() -> ManualClock:
    """Provide a clock that only moves when advanced."""
    return ManualClock()


@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    """Provide a configuration rooted in a temp directory."""
    config = Config(
        data_dir=tmp_path / "data",
        logging=LoggingConfig(level="WARNING", format="text"),
        backup=BackupConfig(interval_seconds=60, retention_count=3, history_limit=100),
        integrity=IntegrityConfig(offset_seconds=10, history_limit=30),
    )
    return config.resolve_paths(create_dirs=True)


@pytest.fixture
def live_db(test_config: Config) -> Path:
    """Provide a populated live store at the configured database path."""
    return create_live_store(test_config.get_database_path())


@pytest.fixture
def checksum_engine() -> ChecksumEngine:
    return ChecksumEngine()


@pytest.fixture
def snapshot_store(
    test_config: Config, live_db: Path, checksum_engine: ChecksumEngine, manual_clock: ManualClock
) -> SnapshotStore:
    """Provide a snapshot store over the live store."""
    return SnapshotStore(
        source_path=live_db,
        backup_dir=test_config.get_backup_dir(),
        retention_count=test_config.backup.retention_count,
        checksum_engine=checksum_engine,
        clock=manual_clock,
    )


@pytest_asyncio.fixture
async def backup_ledger(
    test_config: Config, snapshot_store: SnapshotStore
) -> Ledger[BackupRecord]:
    ledger: Ledger[BackupRecord] = Ledger(
        test_config.get_backup_ledger_path(),
        BackupRecord,
        "started_at",
        max_records=test_config.backup.history_limit,
        on_evict=snapshot_store.delete_snapshot_file,
    )
    await ledger.load()
    return ledger


@pytest_asyncio.fixture
async def integrity_ledger(test_config: Config) -> Ledger[IntegrityRecord]:
    ledger: Ledger[IntegrityRecord] = Ledger(
        test_config.get_integrity_ledger_path(),
        IntegrityRecord,
        "checked_at",
        max_records=test_config.integrity.history_limit,
    )
    await ledger.load()
    return ledger


@pytest_asyncio.fixture
async def services(
    test_config: Config, live_db: Path, manual_clock: ManualClock
) -> AsyncGenerator[SafetyServices, None]:
    """Provide loaded services (timers not started)."""
    services = build_services(test_config, clock=manual_clock)
    await services.load()
    yield services
    await services.shutdown()


@pytest.fixture
def settle() -> Callable[..., "asyncio.Future[None]"]:
    """Provide the ``wait_for`` polling helper to tests."""
    return wait_for


@pytest.fixture
def make_live_store() -> Callable[..., Path]:
    """Provide the live store factory to tests that need their own layout."""
    return create_live_store
