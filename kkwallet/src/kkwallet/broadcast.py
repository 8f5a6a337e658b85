"""
Broadcasting finished transactions.
"""

from __future__ import annotations

import re

from loguru import logger

from kkwallet.backends.base import BroadcastNetwork
from kkwallet.errors import BroadcastRejected
from kkwallet.wallet.models import FinishedTransaction

# Rejections meaning the network already has the transaction
ALREADY_KNOWN_PATTERNS = (
    "txn-already-known",
    "txn-already-in-mempool",
    "transaction already in block chain",
    "transaction outputs already in utxo set",
    "transaction already exists",
)

# RPC_VERIFY_ALREADY_IN_CHAIN, whatever message text accompanies it
ALREADY_IN_CHAIN_CODE = re.compile(r'"code"\s*:\s*-27\b')


def is_already_known(reason: str) -> bool:
    if ALREADY_IN_CHAIN_CODE.search(reason):
        return True
    reason = reason.lower()
    return any(pattern in reason for pattern in ALREADY_KNOWN_PATTERNS)


class Broadcaster:
    """
    Submits finished transactions to the network.

    Broadcasting the same transaction twice is not an error: an "already
    known" rejection returns the transaction's txid. There is no retry.
    """

    def __init__(self, network: BroadcastNetwork):
        self.network = network

    async def broadcast(self, finished: FinishedTransaction) -> str:
        """
        Broadcast a signed transaction.

        Returns:
            Transaction ID

        Raises:
            BroadcastRejected: With the network's reason, verbatim
        """
        logger.info(f"Broadcasting transaction {finished.txid}")
        try:
            txid = await self.network.broadcast(finished.raw_hex)
        except BroadcastRejected as e:
            if is_already_known(e.reason):
                logger.info(f"Transaction {finished.txid} already known to the network")
                return finished.txid
            logger.error(f"Broadcast of {finished.txid} rejected: {e.reason}")
            raise

        if txid != finished.txid:
            logger.warning(f"Network reported txid {txid}, expected {finished.txid}")
        logger.info(f"Broadcast successful: {finished.txid}")
        return finished.txid
