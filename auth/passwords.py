"""
auth/passwords.py -- One-way password hashing and constant-time verification.

Security design decisions:
  KDF: scrypt from the cryptography package. scrypt is memory-hard, so a
       stolen hash database is expensive to brute-force on GPUs as well as
       CPUs. Cost parameters are module constants and never come from a
       request, so an attacker cannot turn the KDF into a DoS lever.

  Format: "<salt_hex>:<derived_key_hex>". The salt is 16 random bytes; the
       KDF salt input is the ASCII of its hex encoding, which keeps hashes
       written by earlier MotoManager releases verifiable.

  Verification never raises. A corrupt stored hash behaves exactly like a
       wrong password, and the derived key is compared with
       hmac.compare_digest so the comparison time does not depend on where
       the first mismatching byte sits.

  DUMMY_HASH enables timing equalization in UserDirectory.verify_login() so
       response time does not reveal whether an identifier exists.

The functions hold no shared mutable state, so concurrent logins can hash in
parallel worker threads.
"""

from __future__ import annotations

import hmac
import re
import secrets

from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

_SALT_BYTES = 16
_KEY_LENGTH = 64

# Node.js / OpenSSL scrypt defaults: 16 MiB of memory per derivation.
_SCRYPT_N = 2**14
_SCRYPT_R = 8
_SCRYPT_P = 1

_HEX_RE = re.compile(r"(?:[0-9a-fA-F]{2})+")


def _derive(plain: str, salt_hex: str) -> bytes:
    kdf = Scrypt(
        salt=salt_hex.encode("ascii"),
        length=_KEY_LENGTH,
        n=_SCRYPT_N,
        r=_SCRYPT_R,
        p=_SCRYPT_P,
    )
    return kdf.derive(plain.encode("utf-8"))


def hash_password(plain: str) -> str:
    """Return a salted scrypt hash of plain. Two calls never return the same string."""
    salt_hex = secrets.token_hex(_SALT_BYTES)
    return f"{salt_hex}:{_derive(plain, salt_hex).hex()}"


def verify_password(plain: str, stored_hash: str | None) -> bool:
    """Return True if plain matches stored_hash, False on mismatch or malformed input."""
    if not isinstance(stored_hash, str):
        return False
    salt_hex, sep, key_hex = stored_hash.partition(":")
    if not sep or not _HEX_RE.fullmatch(salt_hex) or not _HEX_RE.fullmatch(key_hex):
        return False

    expected = bytes.fromhex(key_hex)
    # Length is a property of the stored record, not of the guess, so this
    # early return leaks nothing about the password being tested.
    if len(expected) != _KEY_LENGTH:
        return False

    try:
        derived = _derive(plain, salt_hex)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(derived, expected)


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
DUMMY_HASH: str = hash_password("motomanager_timing_dummy")
