"""
AES-256-GCM encryption for stored credential fields.

The master key is a 32-byte random key in a 0600 key file shared by every vault
instance behind the load balancer. Each record gets a unique 12-byte nonce
prepended to the ciphertext.
"""

from __future__ import annotations

import json
import secrets
import stat
from pathlib import Path
from typing import Any

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

_cached_key: bytes | None = None


def init_master_key(key_path: Path | str) -> Path:
    """Generate a new master key file. Returns the path. Idempotent — skips if exists."""
    key_path = Path(key_path)
    if key_path.exists():
        return key_path
    key_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.write_bytes(secrets.token_bytes(32))
    key_path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 600
    return key_path


def get_master_key(key_path: Path | str | None = None) -> bytes:
    """Load the master key from disk (cached after first read)."""
    global _cached_key
    if _cached_key is not None:
        return _cached_key

    if key_path is None:
        from keyrelay.config import get_config

        key_path = get_config().vault.key_file
    key_path = Path(key_path)
    if not key_path.exists():
        raise FileNotFoundError(
            f"Vault master key not found at {key_path}. "
            "Run 'keyrelay vault init-key' to generate one."
        )
    key = key_path.read_bytes()
    if len(key) != 32:
        raise ValueError(f"Vault master key must be 32 bytes, got {len(key)}")
    _cached_key = key
    return _cached_key


def reset_key_cache() -> None:
    """Clear the cached master key (for testing)."""
    global _cached_key
    _cached_key = None


def encrypt(plaintext: str, master_key: bytes) -> bytes:
    """Encrypt plaintext with AES-256-GCM. Returns nonce (12 bytes) + ciphertext + tag (16 bytes)."""
    nonce = secrets.token_bytes(12)
    ciphertext = AESGCM(master_key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return nonce + ciphertext


def decrypt(data: bytes, master_key: bytes) -> str:
    """Decrypt nonce + ciphertext + tag back to plaintext."""
    if len(data) < 28:  # 12 nonce + 16 tag minimum
        raise ValueError("Encrypted data too short")
    plaintext = AESGCM(master_key).decrypt(data[:12], data[12:], None)
    return plaintext.decode("utf-8")


def encrypt_fields(fields: dict[str, Any], master_key: bytes) -> bytes:
    return encrypt(json.dumps(fields, separators=(",", ":")), master_key)


def decrypt_fields(data: bytes, master_key: bytes) -> dict[str, Any]:
    fields = json.loads(decrypt(data, master_key))
    if not isinstance(fields, dict):
        raise ValueError("Decrypted credential payload is not an object")
    return fields
