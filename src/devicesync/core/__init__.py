"""Core module - Shared config, crypto, and types."""

from devicesync.core.config import EngineConfig, ServerConfig
from devicesync.core.crypto import (
    derive_key,
    generate_key,
    generate_salt,
    hash_token,
    seal,
    unseal,
)
from devicesync.core.types import ConnectionState

__all__ = [
    # Config
    "EngineConfig",
    "ServerConfig",
    # Crypto
    "derive_key",
    "generate_key",
    "generate_salt",
    "hash_token",
    "seal",
    "unseal",
    # Types
    "ConnectionState",
]
