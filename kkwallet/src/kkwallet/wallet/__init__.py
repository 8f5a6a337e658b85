"""
Wallet functionality: keys, data model, coin selection and assembly.
"""

from kkwallet.wallet.assembler import TransactionAssembler
from kkwallet.wallet.coin_selection import CoinSelector
from kkwallet.wallet.keys import ExtendedKey, KeyRegistry
from kkwallet.wallet.models import SelectionResult, UnsignedTransaction, Utxo

__all__ = [
    "CoinSelector",
    "ExtendedKey",
    "KeyRegistry",
    "SelectionResult",
    "TransactionAssembler",
    "UnsignedTransaction",
    "Utxo",
]
