"""
Centralized version management for KeepKey Vault.

This is the single source of truth for the project version.
"""

from __future__ import annotations

# Format: MAJOR.MINOR.PATCH (Semantic Versioning)
__version__ = "0.4.0"

VERSION = __version__


def get_version() -> str:
    """Return the current version string."""
    return __version__
