"""
kkcore - Core library for KeepKey Vault components

Provides shared Bitcoin encoding, settings and CLI helpers.
"""

from kkcore.models import NetworkType, ScriptType
from kkcore.version import __version__

__all__ = [
    "NetworkType",
    "ScriptType",
    "__version__",
]
