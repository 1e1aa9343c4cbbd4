"""Content digests of files."""

import hashlib
from pathlib import Path
from typing import Any

import aiofiles
import structlog

from .exceptions import ChecksumMismatchError, ConfigurationError

logger = structlog.get_logger(__name__)


class ChecksumEngine:
    """
    Compute hex digests of files in fixed-size chunks.

    The digest depends only on the file's bytes, so two copies of a file
    always hash the same.

    Example:
        >>> engine = ChecksumEngine()
        >>> digest = await engine.compute(Path("lab-data.db"))
    """

    SUPPORTED_ALGORITHMS = ("sha256", "sha512", "blake2b")
    DEFAULT_CHUNK_SIZE = 1024 * 1024

    def __init__(self, algorithm: str = "sha256", chunk_size: int = DEFAULT_CHUNK_SIZE):
        algorithm = algorithm.lower()
        if algorithm not in self.SUPPORTED_ALGORITHMS:
            raise ConfigurationError(
                f"Unsupported checksum algorithm: {algorithm}",
                field="backup.checksum_algorithm",
            )
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        self.algorithm = algorithm
        self.chunk_size = chunk_size

    def _new_hasher(self) -> Any:
        return hashlib.new(self.algorithm)

    async def compute(self, file_path: Path) -> str:
        """
        Compute the digest of a file without blocking the event loop.

        Raises:
            OSError: If the file cannot be read
        """
        hasher = self._new_hasher()
        async with aiofiles.open(file_path, "rb") as f:
            while True:
                chunk = await f.read(self.chunk_size)
                if not chunk:
                    break
                hasher.update(chunk)

        digest = hasher.hexdigest()
        logger.debug(
            "file_checksum_computed",
            file_path=str(file_path),
            algorithm=self.algorithm,
            checksum=digest[:16] + "...",
        )
        return digest

    def compute_sync(self, file_path: Path) -> str:
        """Blocking variant for code already running in a worker thread."""
        hasher = self._new_hasher()
        with open(file_path, "rb") as f:
            while True:
                chunk = f.read(self.chunk_size)
                if not chunk:
                    break
                hasher.update(chunk)
        return hasher.hexdigest()

    def compute_bytes(self, data: bytes) -> str:
        hasher = self._new_hasher()
        hasher.update(data)
        return hasher.hexdigest()

    async def verify(self, file_path: Path, expected: str) -> str:
        """
        Recompute a file's digest and compare it with ``expected``.

        Returns:
            The actual digest (equal to ``expected``)

        Raises:
            ChecksumMismatchError: If the digests differ
            OSError: If the file cannot be read
        """
        actual = await self.compute(file_path)
        if actual != expected:
            raise ChecksumMismatchError(
                f"Checksum mismatch for {file_path.name}: expected {expected}, got {actual}",
                path=file_path,
                expected=expected,
                actual=actual,
            )
        return actual
