"""Configuration utilities for the DeviceSync CLI.

This module provides shared configuration functions used across CLI commands.

Layout of the config directory (``~/.devicesync``, or ``$DEVICESYNC_HOME``):
    config.json     server URL, device label, engine tuning
    session.json    encrypted session (see SessionStore)
    session.salt    salt for passphrase-derived keys
    local.db        local store (entities + applied-event ledger)
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from devicesync.core.config import EngineConfig, ServerConfig

HOME_ENV_VAR = "DEVICESYNC_HOME"
PASSPHRASE_ENV_VAR = "DEVICESYNC_PASSPHRASE"


def get_config_dir() -> Path:
    """Get the configuration directory for DeviceSync.

    Returns:
        Path to $DEVICESYNC_HOME, or ~/.devicesync.
    """
    override = os.environ.get(HOME_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".devicesync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def get_local_db_path() -> Path:
    """Get the path to the local store database."""
    return get_config_dir() / "local.db"


def get_passphrase() -> str | None:
    """Passphrase protecting the session store, when the keyring is not used."""
    return os.environ.get(PASSPHRASE_ENV_VAR) or None


def load_config() -> dict[str, Any]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def get_server_config(config: dict[str, Any]) -> ServerConfig | None:
    """Build the server configuration, or None if no server is configured."""
    server_url = config.get("server_url")
    if not server_url:
        return None
    return ServerConfig(
        server_url=server_url,
        verify_ssl=bool(config.get("verify_ssl", True)),
    )


def get_engine_config(config: dict[str, Any]) -> EngineConfig:
    """Build the engine configuration from the optional ``engine`` section."""
    return EngineConfig.from_dict(config.get("engine") or {})


def sanitize_device_label(label: str) -> str:
    """Sanitize a device label for display on the remote side.

    Keeps alphanumeric characters, spaces, hyphens, and underscores; other
    characters are replaced with underscores. Surrounding whitespace is
    stripped and the result is capped at 64 characters.

    Args:
        label: The label to sanitize.

    Returns:
        Safe device label.
    """
    cleaned = "".join(c if c.isalnum() or c in " -_" else "_" for c in label.strip())
    return cleaned[:64]


def setup_cli_logging(verbose: bool) -> None:
    """Send devicesync log records to stderr."""
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    root_logger = logging.getLogger("devicesync")
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
