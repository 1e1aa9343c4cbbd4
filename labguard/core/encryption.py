"""AES-GCM encryption of snapshot files at rest.

An encrypted snapshot is laid out as ``nonce (12 bytes) | ciphertext | tag
(16 bytes)``. The key is configured as a hex or base64 string of 16, 24 or
32 bytes.
"""

import base64
import binascii
import os
from pathlib import Path
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .exceptions import SnapshotIOError

NONCE_SIZE = 12
TAG_SIZE = 16
ENCRYPTED_SUFFIX = ".enc"


def decode_key(raw: str) -> bytes:
    """
    Decode a hex or base64 encoded AES key.

    Raises:
        ValueError: If the string is neither encoding or the key length is wrong
    """
    cleaned = raw.strip()
    try:
        key = bytes.fromhex(cleaned)
    except ValueError:
        try:
            key = base64.b64decode(cleaned, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError("Encryption key must be hex or base64 encoded") from e
    if len(key) not in (16, 24, 32):
        raise ValueError("Encryption key must be 128, 192 or 256 bits")
    return key


class SnapshotCipher:
    """Encrypts and decrypts whole snapshot files. Methods block; run them in an executor."""

    def __init__(self, key: bytes, chunk_size: int = 1024 * 1024):
        if len(key) not in (16, 24, 32):
            raise ValueError("Encryption key must be 128, 192 or 256 bits")
        self._key = key
        self.chunk_size = chunk_size

    @classmethod
    def from_config(cls, raw_key: Optional[str]) -> Optional["SnapshotCipher"]:
        """Build a cipher from the configured key, or None when encryption is off."""
        if not raw_key:
            return None
        return cls(decode_key(raw_key))

    def encrypt_file(self, source: Path, destination: Path) -> None:
        """Write the encrypted form of ``source`` to ``destination`` and fsync it."""
        nonce = os.urandom(NONCE_SIZE)
        encryptor = Cipher(algorithms.AES(self._key), modes.GCM(nonce)).encryptor()
        with open(source, "rb") as src, open(destination, "wb") as dst:
            dst.write(nonce)
            for chunk in iter(lambda: src.read(self.chunk_size), b""):
                dst.write(encryptor.update(chunk))
            dst.write(encryptor.finalize())
            dst.write(encryptor.tag)
            dst.flush()
            os.fsync(dst.fileno())

    def decrypt_file(self, source: Path, destination: Path) -> None:
        """
        Write the plaintext of an encrypted snapshot to ``destination``.

        Raises:
            SnapshotIOError: If the file is truncated or fails authentication
        """
        total_size = source.stat().st_size
        if total_size < NONCE_SIZE + TAG_SIZE:
            raise SnapshotIOError(
                f"Encrypted snapshot is too small: {source.name}",
                backup_path=source,
            )

        with open(source, "rb") as src:
            nonce = src.read(NONCE_SIZE)
            src.seek(total_size - TAG_SIZE)
            tag = src.read(TAG_SIZE)
            src.seek(NONCE_SIZE)
            decryptor = Cipher(algorithms.AES(self._key), modes.GCM(nonce, tag)).decryptor()
            remaining = total_size - NONCE_SIZE - TAG_SIZE
            with open(destination, "wb") as dst:
                while remaining > 0:
                    chunk = src.read(min(self.chunk_size, remaining))
                    if not chunk:
                        break
                    remaining -= len(chunk)
                    dst.write(decryptor.update(chunk))
                try:
                    dst.write(decryptor.finalize())
                except InvalidTag as e:
                    raise SnapshotIOError(
                        f"Encrypted snapshot failed authentication: {source.name}",
                        backup_path=source,
                    ) from e
