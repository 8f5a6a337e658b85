"""
Root pytest configuration for all KeepKey Vault tests.

Provides fixtures shared by the kkcore and kkwallet test suites.
"""

from __future__ import annotations

from collections.abc import Iterator

import pytest
from loguru import logger


@pytest.fixture
def log_messages() -> Iterator[list[str]]:
    """Collect loguru messages (as "LEVEL message") emitted during a test.

    loguru does not go through the stdlib logging module, so pytest's caplog
    does not see it.
    """
    messages: list[str] = []
    handler_id = logger.add(
        lambda m: messages.append(f"{m.record['level'].name} {m.record['message']}"),
        level="TRACE",
        format="{message}",
    )
    yield messages
    logger.remove(handler_id)
