"""
Core enums shared by all KeepKey Vault components.
"""

from __future__ import annotations

from enum import Enum, StrEnum
from typing import assert_never


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"

    @property
    def coin_type(self) -> int:
        """BIP44 coin type: 0 for mainnet, 1 for every test network."""
        return 0 if self is NetworkType.MAINNET else 1


class SighashRegime(StrEnum):
    """Signature-hash rule set an input is signed under."""

    LEGACY = "legacy"  # hashes the full previous transaction
    BIP143 = "bip143"  # segwit v0, commits to the spent amount only


class ScriptType(StrEnum):
    """
    Spending-condition template of a wallet input or change output.

    Values are the wire names used by KeepKey tooling.
    """

    LEGACY = "p2pkh"
    WRAPPED_SEGWIT = "p2sh-p2wpkh"
    NATIVE_SEGWIT = "p2wpkh"

    @property
    def sighash_regime(self) -> SighashRegime:
        match self:
            case ScriptType.LEGACY:
                return SighashRegime.LEGACY
            case ScriptType.WRAPPED_SEGWIT | ScriptType.NATIVE_SEGWIT:
                return SighashRegime.BIP143
            case _:
                assert_never(self)

    @property
    def is_segwit(self) -> bool:
        return self.sighash_regime is SighashRegime.BIP143

    @property
    def requires_previous_transaction(self) -> bool:
        """Legacy sighash needs the whole funding transaction to prove the amount."""
        return self.sighash_regime is SighashRegime.LEGACY

    @property
    def purpose(self) -> int:
        """BIP43 purpose of the standard derivation path template."""
        match self:
            case ScriptType.LEGACY:
                return 44
            case ScriptType.WRAPPED_SEGWIT:
                return 49
            case ScriptType.NATIVE_SEGWIT:
                return 84
            case _:
                assert_never(self)

    @property
    def output_type(self) -> str:
        """Address type of an output paying to this script type."""
        match self:
            case ScriptType.LEGACY:
                return "p2pkh"
            case ScriptType.WRAPPED_SEGWIT:
                return "p2sh"
            case ScriptType.NATIVE_SEGWIT:
                return "p2wpkh"
            case _:
                assert_never(self)


class FeeTier(StrEnum):
    SLOW = "slow"
    MEDIUM = "medium"
    FAST = "fast"
