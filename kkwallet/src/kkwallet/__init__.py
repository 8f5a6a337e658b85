"""
KeepKey Vault send pipeline: coin selection, assembly, device signing and broadcast.
"""

from kkwallet.backends.base import BlockchainBackend
from kkwallet.broadcast import Broadcaster
from kkwallet.signing.coordinator import SigningCoordinator
from kkwallet.wallet.service import SendRequest, SendService

__all__ = ["BlockchainBackend", "Broadcaster", "SendRequest", "SendService", "SigningCoordinator"]
