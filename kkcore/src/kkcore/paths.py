"""
Shared path utilities for the KeepKey Vault data directory.
"""

from __future__ import annotations

import os
from pathlib import Path

DATA_DIR_ENV = "KEEPKEY_VAULT_DATA_DIR"
CONFIG_FILE_ENV = "KEEPKEY_VAULT_CONFIG_FILE"


def get_data_dir_path() -> Path:
    """Return ~/.keepkey-vault or $KEEPKEY_VAULT_DATA_DIR without touching the filesystem."""
    env_path = os.getenv(DATA_DIR_ENV)
    return Path(env_path) if env_path else Path.home() / ".keepkey-vault"


def get_default_data_dir() -> Path:
    """
    Get the default KeepKey Vault data directory.

    Returns ~/.keepkey-vault or $KEEPKEY_VAULT_DATA_DIR if set.
    Creates the directory if it doesn't exist.
    """
    data_dir = get_data_dir_path()
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def get_config_file_path() -> Path:
    """
    Resolve the config file location.

    $KEEPKEY_VAULT_CONFIG_FILE wins over <data dir>/config.toml.
    """
    env_path = os.getenv(CONFIG_FILE_ENV)
    if env_path:
        return Path(env_path)
    return get_data_dir_path() / "config.toml"
