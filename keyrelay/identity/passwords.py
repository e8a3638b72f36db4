"""Password hashing for identity users (scrypt via ``cryptography``).

Stored format: ``scrypt$<n>$<r>$<p>$<salt-hex>$<hash-hex>``
"""

from __future__ import annotations

import os

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1
SALT_SIZE = 16
HASH_LENGTH = 32


def hash_password(password: str) -> str:
    salt = os.urandom(SALT_SIZE)
    kdf = Scrypt(salt=salt, length=HASH_LENGTH, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    digest = kdf.derive(password.encode("utf-8"))
    return f"scrypt${SCRYPT_N}${SCRYPT_R}${SCRYPT_P}${salt.hex()}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    """Constant-time check of ``password`` against a stored hash."""
    try:
        scheme, n, r, p, salt_hex, digest_hex = stored.split("$")
    except ValueError:
        return False
    if scheme != "scrypt":
        return False
    try:
        digest = bytes.fromhex(digest_hex)
        kdf = Scrypt(
            salt=bytes.fromhex(salt_hex), length=len(digest), n=int(n), r=int(r), p=int(p)
        )
    except ValueError:
        return False
    try:
        kdf.verify(password.encode("utf-8"), digest)
    except InvalidKey:
        return False
    return True
