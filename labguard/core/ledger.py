"""Append-only, capped, JSON-file ledgers of run records."""

import asyncio
import inspect
import json
import os
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any, Generic, List, Optional, Type, TypeVar

import aiofiles
import aiofiles.os
import structlog
from pydantic import BaseModel, ValidationError

from .exceptions import LedgerError

logger = structlog.get_logger(__name__)

R = TypeVar("R", bound=BaseModel)


class Ledger(Generic[R]):
    """
    Time-ordered history of immutable records, newest first.

    Records are kept in memory and persisted as a JSON document after each
    append. The file is rewritten through a temporary file and ``os.replace``
    so a crash never leaves a truncated ledger. When more than
    ``max_records`` entries exist, the oldest are evicted and handed to
    ``on_evict``, which may be a plain function or a coroutine function.

    The ledger lives outside the live store so that history survives a
    restore of the database.

    Example:
        >>> ledger = Ledger(path, BackupRecord, "started_at", max_records=100)
        >>> await ledger.load()
        >>> await ledger.append(record)
        >>> ledger.recent(30)
    """

    def __init__(
        self,
        path: Path,
        record_type: Type[R],
        timestamp_field: str,
        max_records: int,
        on_evict: Optional[Callable[[R], Any]] = None,
    ):
        if max_records < 1:
            raise ValueError("max_records must be at least 1")
        self.path = path
        self.record_type = record_type
        self.timestamp_field = timestamp_field
        self.max_records = max_records
        self.on_evict = on_evict
        self._records: List[R] = []
        self._lock = asyncio.Lock()
        self._loaded = False

    def _timestamp(self, record: R) -> datetime:
        return getattr(record, self.timestamp_field)

    async def load(self) -> None:
        """
        Load records from disk.

        A missing file means an empty ledger. An unreadable or corrupt file is
        moved aside to ``<name>.corrupt`` and the ledger starts empty.
        """
        async with self._lock:
            self._records = []
            self._loaded = True

            if not await aiofiles.os.path.exists(self.path):
                logger.debug("ledger_not_found", path=str(self.path))
                return

            try:
                async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                    content = await f.read()
                payload = json.loads(content) if content.strip() else {}
                raw_records = payload.get("records", [])
                records = [self.record_type.model_validate(item) for item in raw_records]
            except (OSError, ValueError, ValidationError, AttributeError) as e:
                corrupt_path = self.path.with_name(self.path.name + ".corrupt")
                logger.error(
                    "ledger_load_failed",
                    path=str(self.path),
                    moved_to=str(corrupt_path),
                    error=str(e),
                )
                try:
                    await aiofiles.os.replace(self.path, corrupt_path)
                except OSError as move_error:
                    logger.error(
                        "ledger_quarantine_failed",
                        path=str(self.path),
                        error=str(move_error),
                    )
                return

            records.sort(key=self._timestamp, reverse=True)
            self._records = records[: self.max_records]
            logger.info("ledger_loaded", path=str(self.path), records=len(self._records))

    async def append(self, record: R) -> None:
        """
        Add a record, evict past the cap, and persist.

        Raises:
            LedgerError: If the ledger file cannot be written
        """
        async with self._lock:
            # Insert keeping newest-first order; equal timestamps keep arrival order
            ts = self._timestamp(record)
            index = 0
            while index < len(self._records) and self._timestamp(self._records[index]) > ts:
                index += 1
            self._records.insert(index, record)

            evicted: List[R] = []
            if len(self._records) > self.max_records:
                evicted = self._records[self.max_records :]
                self._records = self._records[: self.max_records]

            await self._persist()

        for old in evicted:
            logger.info(
                "ledger_record_evicted",
                path=str(self.path),
                record_id=getattr(old, "id", None),
            )
            if self.on_evict is not None:
                try:
                    result = self.on_evict(old)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.warning(
                        "ledger_evict_callback_failed",
                        record_id=getattr(old, "id", None),
                        error=str(e),
                    )

    async def _persist(self) -> None:
        payload = {"records": [r.model_dump(mode="json") for r in self._records]}
        temp_path = self.path.with_name(f".{self.path.name}.tmp")
        try:
            await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
            async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(payload, indent=2))
                await f.flush()
                await asyncio.get_running_loop().run_in_executor(None, os.fsync, f.fileno())
            await aiofiles.os.replace(temp_path, self.path)
        except OSError as e:
            logger.error("ledger_write_failed", path=str(self.path), error=str(e))
            try:
                await aiofiles.os.remove(temp_path)
            except OSError:
                pass
            raise LedgerError(f"Failed to write ledger {self.path}: {e}", path=self.path) from e

    def recent(self, limit: int = 30) -> List[R]:
        """Most recent ``limit`` records, newest first."""
        if limit < 1:
            return []
        return list(self._records[:limit])

    def latest(self, predicate: Optional[Callable[[R], bool]] = None) -> Optional[R]:
        """Newest record, optionally the newest one matching ``predicate``."""
        for record in self._records:
            if predicate is None or predicate(record):
                return record
        return None

    def find(self, record_id: str) -> Optional[R]:
        for record in self._records:
            if getattr(record, "id", None) == record_id:
                return record
        return None

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Any:
        return iter(list(self._records))
