"""Live store connection management."""

from pathlib import Path
from typing import Any, List, Optional

import aiosqlite
import structlog

from ..exceptions import StoreError

logger = structlog.get_logger(__name__)


class Database:
    """Manages the async SQLite connection to the live store.

    The experiment tracker owns the schema; this class only opens the file
    and runs integrity pragmas on it.
    """

    def __init__(
        self,
        db_path: Path,
        enable_wal: bool = True,
        timeout: int = 30,
    ):
        """
        Initialize database connection manager.

        Args:
            db_path: Path to SQLite database file
            enable_wal: Enable Write-Ahead Logging mode
            timeout: Connection timeout in seconds
        """
        self.db_path = db_path
        self.enable_wal = enable_wal
        self.timeout = timeout
        self._connection: Optional[aiosqlite.Connection] = None

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    async def connect(self) -> aiosqlite.Connection:
        """
        Establish database connection.

        Returns:
            Active database connection

        Raises:
            StoreError: If connection fails
        """
        if self._connection is not None:
            return self._connection

        try:
            # mode=rw: the tracker owns the store, never create it here
            self._connection = await aiosqlite.connect(
                f"{self.db_path.resolve().as_uri()}?mode=rw",
                timeout=self.timeout,
                uri=True,
            )
            self._connection.row_factory = aiosqlite.Row

            await self._connection.execute("PRAGMA foreign_keys = ON")

            if self.enable_wal:
                await self._connection.execute("PRAGMA journal_mode = WAL")

            logger.info(
                "database_connected",
                db_path=str(self.db_path),
                wal_mode=self.enable_wal,
            )

            return self._connection

        except Exception as e:
            logger.error(
                "database_connection_failed",
                db_path=str(self.db_path),
                error=str(e),
            )
            self._connection = None
            raise StoreError(
                f"Failed to connect to database: {e}",
                path=self.db_path,
            ) from e

    async def run_integrity_checks(self) -> List[str]:
        """
        Run integrity_check, quick_check and foreign_key_check.

        Returns:
            List of problems found (empty when the store is healthy)
        """
        issues: List[str] = []
        try:
            conn = await self.connect()

            cursor = await conn.execute("PRAGMA integrity_check")
            for row in await cursor.fetchall():
                if row[0] != "ok":
                    issues.append(row[0])

            cursor = await conn.execute("PRAGMA quick_check")
            for row in await cursor.fetchall():
                if row[0] != "ok" and row[0] not in issues:
                    issues.append(f"quick_check: {row[0]}")

            cursor = await conn.execute("PRAGMA foreign_key_check")
            for row in await cursor.fetchall():
                issues.append(
                    f"Foreign key violation: {row[0]} row {row[1]} references missing {row[2]}"
                )
        except Exception as e:
            issues.append(f"Error running integrity check: {e}")

        return issues

    async def close(self) -> None:
        """Close database connection."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("database_closed", db_path=str(self.db_path))

    async def __aenter__(self) -> aiosqlite.Connection:
        return await self.connect()

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()


async def check_snapshot_structure(snapshot_path: Path) -> List[str]:
    """
    Open a snapshot read-only and run SQLite's integrity pragmas on it.

    The snapshot is opened with ``immutable=1`` so no journal, WAL or shm files
    are created next to it and its bytes are never touched.

    Returns:
        List of problems found (empty when the snapshot is well-formed)
    """
    uri = f"{snapshot_path.resolve().as_uri()}?mode=ro&immutable=1"
    issues: List[str] = []
    try:
        async with aiosqlite.connect(uri, uri=True) as conn:
            for pragma in ("integrity_check", "quick_check"):
                cursor = await conn.execute(f"PRAGMA {pragma}")
                for row in await cursor.fetchall():
                    value = row[0]
                    if value != "ok":
                        entry = value if pragma == "integrity_check" else f"quick_check: {value}"
                        if entry not in issues and value not in issues:
                            issues.append(entry)
    except aiosqlite.DatabaseError as e:
        issues.append(f"Snapshot is not a readable SQLite database: {e}")

    return issues
