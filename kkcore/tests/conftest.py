"""
Shared fixtures for kkcore tests.
"""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest

from kkcore.settings import reset_settings


@pytest.fixture(autouse=True)
def isolated_data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[Path, None, None]:
    """Point the data directory at a temp dir so a user config never leaks in."""
    data_dir = tmp_path / ".keepkey-vault"
    data_dir.mkdir(parents=True)
    monkeypatch.setenv("KEEPKEY_VAULT_DATA_DIR", str(data_dir))
    monkeypatch.delenv("KEEPKEY_VAULT_CONFIG_FILE", raising=False)
    reset_settings()
    yield data_dir
    reset_settings()
