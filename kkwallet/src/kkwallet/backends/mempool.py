"""
Mempool.space API blockchain backend.
Beginner-friendly backend that requires no setup.

Works with the public instance or any self-hosted Esplora-compatible API.
UTXO discovery derives addresses from the extended public key and scans each
chain until ``gap_limit`` consecutive addresses have no history.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

import httpx
from loguru import logger

from kkcore.bitcoin import address_to_scriptpubkey
from kkcore.constants import BITCOIN_ASSET_ID
from kkcore.models import NetworkType
from kkcore.settings import DEFAULT_MEMPOOL_URLS
from kkwallet.backends.base import BlockchainBackend
from kkwallet.errors import BackendUnavailable, BroadcastRejected
from kkwallet.wallet.keys import EXTERNAL_CHAIN, INTERNAL_CHAIN, ExtendedKey
from kkwallet.wallet.models import ChangeAddress, FeeRates, Utxo


class MempoolBackend(BlockchainBackend):
    """
    Blockchain backend using Mempool.space API.

    Args:
        base_url: API root; defaults to mempool.space for the network
        network: Network the wallet keys belong to
        gap_limit: Unused addresses scanned past the last used one
        timeout: HTTP timeout in seconds
        transport: Optional httpx transport (tests inject httpx.MockTransport)
    """

    def __init__(
        self,
        base_url: str | None = None,
        network: NetworkType | str = NetworkType.MAINNET,
        gap_limit: int = 20,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.network = NetworkType(network)
        self.base_url = (base_url or DEFAULT_MEMPOOL_URLS[self.network.value]).rstrip("/")
        self.gap_limit = gap_limit
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def _get(self, path: str) -> httpx.Response:
        try:
            response = await self.client.get(f"{self.base_url}{path}")
            response.raise_for_status()
            return response
        except httpx.HTTPError as e:
            logger.warning(f"Mempool API request {path} failed: {e}")
            raise BackendUnavailable(f"Mempool API request {path} failed: {e}") from e

    async def get_block_height(self) -> int:
        response = await self._get("/blocks/tip/height")
        try:
            height = int(response.text.strip())
        except ValueError as e:
            raise BackendUnavailable(f"Invalid tip height: {response.text[:64]!r}") from e
        logger.debug(f"Current block height: {height}")
        return height

    async def _address_stats(self, address: str) -> dict[str, Any]:
        return (await self._get(f"/address/{address}")).json()

    @staticmethod
    def _has_history(stats: dict[str, Any]) -> bool:
        chain_txs = stats.get("chain_stats", {}).get("tx_count", 0)
        mempool_txs = stats.get("mempool_stats", {}).get("tx_count", 0)
        return chain_txs + mempool_txs > 0

    async def list_unspent(self, extended_key: ExtendedKey) -> list[Utxo]:
        tip_height = await self.get_block_height()
        utxos: list[Utxo] = []

        for chain in (EXTERNAL_CHAIN, INTERNAL_CHAIN):
            index = 0
            unused = 0
            while unused < self.gap_limit:
                address = extended_key.address(chain, index)
                if not self._has_history(await self._address_stats(address)):
                    unused += 1
                    index += 1
                    continue

                unused = 0
                response = await self._get(f"/address/{address}/utxo")
                path = extended_key.child_path(chain, index)
                scriptpubkey = address_to_scriptpubkey(address).hex()
                for utxo_data in response.json():
                    status = utxo_data.get("status", {})
                    height = status.get("block_height") if status.get("confirmed") else None
                    confirmations = tip_height - height + 1 if height else 0
                    utxos.append(
                        Utxo(
                            txid=utxo_data["txid"],
                            vout=utxo_data["vout"],
                            value=utxo_data["value"],
                            confirmations=confirmations,
                            address=address,
                            path=path,
                            script_type=extended_key.script_type,
                            xpub=extended_key.xpub,
                            scriptpubkey=scriptpubkey,
                            height=height,
                        )
                    )
                index += 1

        logger.info(
            f"Found {len(utxos)} UTXO(s) for {extended_key.script_type} account "
            f"{extended_key.derivation_path}"
        )
        return utxos

    async def get_fee_rates(self, asset_id: str) -> FeeRates:
        if asset_id != BITCOIN_ASSET_ID:
            raise ValueError(f"Unsupported asset: {asset_id}")

        data = (await self._get("/v1/fees/recommended")).json()
        try:
            rates = FeeRates(
                slow=Decimal(str(data["hourFee"])),
                medium=Decimal(str(data["halfHourFee"])),
                fast=Decimal(str(data["fastestFee"])),
            )
        except (KeyError, ArithmeticError) as e:
            raise BackendUnavailable(f"Malformed fee estimate response: {data}") from e

        logger.debug(f"Fee rates: slow={rates.slow} medium={rates.medium} fast={rates.fast}")
        return rates

    async def next_change_address(self, extended_key: ExtendedKey) -> ChangeAddress:
        index = 0
        while True:
            address = extended_key.address(INTERNAL_CHAIN, index)
            if not self._has_history(await self._address_stats(address)):
                path = extended_key.child_path(INTERNAL_CHAIN, index)
                logger.debug(f"Next change address {address} at {path}")
                return ChangeAddress(
                    address=address,
                    derivation_path=path,
                    script_type=extended_key.script_type,
                )
            index += 1

    async def get_raw_transaction(self, txid: str) -> str:
        response = await self._get(f"/tx/{txid}/hex")
        return response.text.strip()

    async def broadcast(self, raw_hex: str) -> str:
        try:
            response = await self.client.post(f"{self.base_url}/tx", content=raw_hex)
        except httpx.HTTPError as e:
            logger.error(f"Failed to broadcast transaction: {e}")
            raise BackendUnavailable(f"Broadcast failed: {e}") from e

        if response.status_code == 400:
            reason = response.text.strip()
            logger.error(f"Transaction rejected: {reason}")
            raise BroadcastRejected(reason)

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Failed to broadcast transaction: {e}")
            raise BackendUnavailable(f"Broadcast failed: {e}") from e

        txid = response.text.strip()
        logger.info(f"Broadcast transaction: {txid}")
        return txid

    async def close(self) -> None:
        await self.client.aclose()
