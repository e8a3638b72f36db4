"""Tests for vault crypto operations."""

import secrets
import stat
from pathlib import Path

import pytest
from cryptography.exceptions import InvalidTag

from keyrelay.vault.crypto import (
    decrypt,
    decrypt_fields,
    encrypt,
    encrypt_fields,
    get_master_key,
    init_master_key,
)


class TestEncryptDecrypt:
    def test_roundtrip(self):
        key = secrets.token_bytes(32)
        encrypted = encrypt("TestPass123!", key)
        assert decrypt(encrypted, key) == "TestPass123!"

    def test_different_nonces(self):
        key = secrets.token_bytes(32)
        a = encrypt("same", key)
        b = encrypt("same", key)
        assert a != b  # Different nonces

    def test_wrong_key_fails(self):
        encrypted = encrypt("secret", secrets.token_bytes(32))
        with pytest.raises(InvalidTag):
            decrypt(encrypted, secrets.token_bytes(32))

    def test_tampered_ciphertext_fails(self):
        key = secrets.token_bytes(32)
        encrypted = bytearray(encrypt("secret", key))
        encrypted[-1] ^= 0x01
        with pytest.raises(InvalidTag):
            decrypt(bytes(encrypted), key)

    def test_truncated_data_fails(self):
        key = secrets.token_bytes(32)
        with pytest.raises(ValueError, match="too short"):
            decrypt(b"short", key)


class TestFieldMaps:
    def test_preserves_arbitrary_fields(self):
        key = secrets.token_bytes(32)
        fields = {"username": "alice", "password": "p@ss", "role": "admin", "tenant": "ünï"}
        assert decrypt_fields(encrypt_fields(fields, key), key) == fields

    def test_ciphertext_hides_values(self):
        key = secrets.token_bytes(32)
        blob = encrypt_fields({"username": "alice", "password": "hunter2"}, key)
        assert b"hunter2" not in blob
        assert b"alice" not in blob

    def test_non_object_payload_rejected(self):
        key = secrets.token_bytes(32)
        with pytest.raises(ValueError, match="not an object"):
            decrypt_fields(encrypt('["a"]', key), key)


class TestMasterKey:
    def test_init_creates_key(self, tmp_path: Path):
        key_path = init_master_key(tmp_path / "keys" / ".vault-key")
        assert key_path.exists()
        assert len(key_path.read_bytes()) == 32
        mode = key_path.stat().st_mode
        assert mode & stat.S_IRGRP == 0  # No group read
        assert mode & stat.S_IROTH == 0  # No other read

    def test_init_idempotent(self, tmp_path: Path):
        key_path = tmp_path / ".vault-key"
        init_master_key(key_path)
        first_key = key_path.read_bytes()
        init_master_key(key_path)
        assert key_path.read_bytes() == first_key

    def test_get_master_key(self, tmp_path: Path):
        key_path = init_master_key(tmp_path / ".vault-key")
        assert get_master_key(key_path) == key_path.read_bytes()

    def test_get_master_key_cached(self, tmp_path: Path):
        key_path = init_master_key(tmp_path / ".vault-key")
        first = get_master_key(key_path)
        key_path.unlink()
        assert get_master_key(key_path) == first

    def test_missing_key_raises(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError, match="init-key"):
            get_master_key(tmp_path / "nope")

    def test_wrong_length_rejected(self, tmp_path: Path):
        key_path = tmp_path / ".vault-key"
        key_path.write_bytes(b"x" * 16)
        with pytest.raises(ValueError, match="32 bytes"):
            get_master_key(key_path)

    def test_reads_configured_path(self, tmp_path: Path, monkeypatch):
        from keyrelay.config import reset_config

        key_path = init_master_key(tmp_path / "configured-key")
        monkeypatch.setenv("KEYRELAY_VAULT_KEY_FILE", str(key_path))
        reset_config()
        assert get_master_key() == key_path.read_bytes()
