"""Tests for snapshot encryption at rest."""

import base64
from pathlib import Path

import pytest

from labguard.core.encryption import NONCE_SIZE, TAG_SIZE, SnapshotCipher, decode_key
from labguard.core.exceptions import SnapshotIOError

KEY = bytes(range(32))


class TestDecodeKey:
    """Tests for configured key parsing."""

    def test_hex(self):
        assert decode_key(KEY.hex()) == KEY

    def test_base64(self):
        assert decode_key(base64.b64encode(KEY[:16]).decode()) == KEY[:16]

    @pytest.mark.parametrize("raw", ["not-a-key", "abcd", base64.b64encode(b"x" * 20).decode()])
    def test_rejects_bad_keys(self, raw: str):
        with pytest.raises(ValueError):
            decode_key(raw)

    def test_from_config_disabled_without_key(self):
        assert SnapshotCipher.from_config(None) is None
        assert SnapshotCipher.from_config("") is None


class TestSnapshotCipher:
    """Tests for whole-file AES-GCM encryption."""

    def test_encrypt_then_decrypt(self, tmp_path: Path):
        plain = tmp_path / "plain.db"
        plain.write_bytes(b"SQLite format 3\x00" + b"page" * 5000)
        sealed = tmp_path / "sealed.db.enc"
        opened = tmp_path / "opened.db"
        cipher = SnapshotCipher(KEY, chunk_size=1024)

        cipher.encrypt_file(plain, sealed)
        cipher.decrypt_file(sealed, opened)

        assert sealed.stat().st_size == plain.stat().st_size + NONCE_SIZE + TAG_SIZE
        assert b"SQLite format 3" not in sealed.read_bytes()
        assert opened.read_bytes() == plain.read_bytes()

    def test_wrong_key_fails_authentication(self, tmp_path: Path):
        plain = tmp_path / "plain.db"
        plain.write_bytes(b"lab data")
        sealed = tmp_path / "sealed.db.enc"
        SnapshotCipher(KEY).encrypt_file(plain, sealed)

        with pytest.raises(SnapshotIOError, match="authentication"):
            SnapshotCipher(bytes(32)).decrypt_file(sealed, tmp_path / "out.db")

    def test_tampered_ciphertext_fails_authentication(self, tmp_path: Path):
        plain = tmp_path / "plain.db"
        plain.write_bytes(b"lab data" * 100)
        sealed = tmp_path / "sealed.db.enc"
        SnapshotCipher(KEY).encrypt_file(plain, sealed)
        data = bytearray(sealed.read_bytes())
        data[NONCE_SIZE + 10] ^= 0xFF
        sealed.write_bytes(bytes(data))

        with pytest.raises(SnapshotIOError):
            SnapshotCipher(KEY).decrypt_file(sealed, tmp_path / "out.db")

    def test_truncated_file_rejected(self, tmp_path: Path):
        sealed = tmp_path / "short.db.enc"
        sealed.write_bytes(b"\x00" * (NONCE_SIZE + TAG_SIZE - 1))

        with pytest.raises(SnapshotIOError, match="too small"):
            SnapshotCipher(KEY).decrypt_file(sealed, tmp_path / "out.db")
