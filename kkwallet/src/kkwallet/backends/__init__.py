"""
Blockchain backend implementations.
"""

from kkwallet.backends.base import (
    BlockchainBackend,
    BroadcastNetwork,
    ChangeAddressDeriver,
    FeeOracle,
    PreviousTransactionSource,
    UtxoSource,
)
from kkwallet.backends.mempool import MempoolBackend

__all__ = [
    "BlockchainBackend",
    "BroadcastNetwork",
    "ChangeAddressDeriver",
    "FeeOracle",
    "MempoolBackend",
    "PreviousTransactionSource",
    "UtxoSource",
]
