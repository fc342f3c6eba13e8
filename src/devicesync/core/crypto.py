"""Cryptographic helpers for devicesync.

The session store seals its JSON document with AES-256-GCM under a 32-byte
store key. That key is either random (kept in the OS keyring) or derived
from a passphrase with Argon2id. The relay only ever stores SHA-256
digests of bearer tokens and pairing codes.

Sealed values are text: ``base64(nonce || ciphertext || tag)``. The
``context`` string is bound as associated data, so a value sealed for one
purpose cannot be replayed as another.
"""

import base64
import binascii
import hashlib
import os

from argon2.low_level import Type, hash_secret_raw
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KEY_SIZE = 32
SALT_SIZE = 16
NONCE_SIZE = 12

# Argon2id cost for the passphrase-derived store key
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 64 * 1024  # KiB
ARGON2_PARALLELISM = 4


def generate_key() -> bytes:
    """Create a random store key."""
    return os.urandom(KEY_SIZE)


def generate_salt() -> bytes:
    """Create a random salt for derive_key()."""
    return os.urandom(SALT_SIZE)


def derive_key(passphrase: str, salt: bytes) -> bytes:
    """Derive a store key from a passphrase with Argon2id.

    Args:
        passphrase: Passphrase protecting the session store.
        salt: Salt kept next to the session file.

    Returns:
        KEY_SIZE bytes.
    """
    return hash_secret_raw(
        secret=passphrase.encode("utf-8"),
        salt=salt,
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST,
        parallelism=ARGON2_PARALLELISM,
        hash_len=KEY_SIZE,
        type=Type.ID,
    )


def seal(plaintext: bytes, key: bytes, context: str) -> str:
    """Encrypt and authenticate plaintext for the given context.

    Returns:
        Base64 text holding nonce, ciphertext and tag.
    """
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(key).encrypt(nonce, plaintext, context.encode("utf-8"))
    return base64.b64encode(nonce + sealed).decode("ascii")


def unseal(sealed: str, key: bytes, context: str) -> bytes:
    """Reverse seal().

    Raises:
        ValueError: If the value is not valid base64 or is too short.
        cryptography.exceptions.InvalidTag: Wrong key, wrong context or
            tampered data.
    """
    try:
        raw = base64.b64decode(sealed, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Sealed value is not base64: {e}") from e
    if len(raw) <= NONCE_SIZE:
        raise ValueError("Sealed value is truncated")
    return AESGCM(key).decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], context.encode("utf-8"))


def hash_token(token: str) -> str:
    """SHA-256 hex digest of a bearer token or pairing code."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
