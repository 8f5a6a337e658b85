"""
Shared constants for KeepKey Vault components.
"""

from __future__ import annotations

SATS_PER_BTC = 100_000_000

# Outputs at or below this value are not created; the value goes to fees instead
DUST_THRESHOLD = 546

# CAIP-2 chain id for Bitcoin mainnet, used as the asset id by fee oracles
BITCOIN_ASSET_ID = "bip122:000000000019d6689c085ae165831e93"

DEFAULT_SEQUENCE = 0xFFFFFFFF
