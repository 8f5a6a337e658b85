"""
Base interfaces to the blockchain data services the send pipeline consumes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from kkwallet.wallet.keys import ExtendedKey
from kkwallet.wallet.models import ChangeAddress, FeeRates, Utxo


class UtxoSource(ABC):
    @abstractmethod
    async def list_unspent(self, extended_key: ExtendedKey) -> list[Utxo]:
        """Get spendable outputs owned by an extended public key"""


class FeeOracle(ABC):
    @abstractmethod
    async def get_fee_rates(self, asset_id: str) -> FeeRates:
        """Get slow/medium/fast fee-rate estimates in sat/vB"""


class ChangeAddressDeriver(ABC):
    @abstractmethod
    async def next_change_address(self, extended_key: ExtendedKey) -> ChangeAddress:
        """Get the first unused internal-chain address of an extended public key"""


class PreviousTransactionSource(ABC):
    @abstractmethod
    async def get_raw_transaction(self, txid: str) -> str:
        """Get a transaction's serialized hex by txid"""


class BroadcastNetwork(ABC):
    @abstractmethod
    async def broadcast(self, raw_hex: str) -> str:
        """Broadcast transaction, returns txid. Raises BroadcastRejected"""


class BlockchainBackend(
    UtxoSource, FeeOracle, ChangeAddressDeriver, PreviousTransactionSource, BroadcastNetwork
):
    """
    A single service providing every blockchain interface.

    Implementations own their connections and release them in close().
    """

    async def close(self) -> None:
        """Release network resources"""
