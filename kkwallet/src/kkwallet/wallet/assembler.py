"""
Transaction assembly: turns a coin selection into the unsigned signing payload.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import TYPE_CHECKING

from loguru import logger

from kkcore.bitcoin import get_txid, parse_transaction
from kkcore.constants import DEFAULT_SEQUENCE
from kkwallet.errors import AssemblyError
from kkwallet.wallet.keys import KeyRegistry
from kkwallet.wallet.models import (
    SelectionOutput,
    SelectionResult,
    UnsignedInput,
    UnsignedOutput,
    UnsignedTransaction,
    Utxo,
)

if TYPE_CHECKING:
    from kkwallet.backends.base import PreviousTransactionSource


class TransactionAssembler:
    """
    Builds UnsignedTransaction objects.

    Legacy (P2PKH) inputs need the full previous transaction so the device
    can verify the spent amount; those are fetched from ``prev_tx_source``.
    """

    def __init__(
        self,
        prev_tx_source: PreviousTransactionSource,
        version: int = 1,
        locktime: int = 0,
        coin_name: str = "Bitcoin",
    ):
        self.prev_tx_source = prev_tx_source
        self.version = version
        self.locktime = locktime
        self.coin_name = coin_name

    async def assemble(self, selection: SelectionResult, keys: KeyRegistry) -> UnsignedTransaction:
        """Fetch previous transactions for legacy inputs, then build."""
        txids = sorted(
            {u.txid for u in selection.inputs if u.script_type.requires_previous_transaction}
        )
        if txids:
            logger.debug(f"Fetching {len(txids)} previous transaction(s) for legacy inputs")
        raw_txs = await asyncio.gather(
            *(self.prev_tx_source.get_raw_transaction(txid) for txid in txids)
        )
        return self.build_unsigned(selection, keys, dict(zip(txids, raw_txs, strict=True)))

    def build_unsigned(
        self,
        selection: SelectionResult,
        keys: KeyRegistry,
        prev_txs: Mapping[str, str],
    ) -> UnsignedTransaction:
        """
        Build the unsigned transaction without any I/O.

        Args:
            selection: Result of coin selection
            keys: Registry holding the key that owns every input
            prev_txs: Raw previous transactions by txid (legacy inputs only)

        Raises:
            AssemblyError: If input metadata does not match the registered
                keys, or a previous transaction is missing or inconsistent
        """
        if not selection.is_balanced:
            raise AssemblyError("Selection inputs do not equal outputs plus fee")

        inputs = tuple(self._build_input(utxo, keys, prev_txs) for utxo in selection.inputs)
        outputs = tuple(self._build_output(output, keys) for output in selection.outputs)

        unsigned = UnsignedTransaction(
            inputs=inputs,
            outputs=outputs,
            version=self.version,
            locktime=self.locktime,
            coin_name=self.coin_name,
        )
        logger.info(
            f"Assembled unsigned transaction: {len(inputs)} input(s), "
            f"{len(outputs)} output(s), fee {unsigned.fee:,} sats"
        )
        return unsigned

    def _build_input(
        self, utxo: Utxo, keys: KeyRegistry, prev_txs: Mapping[str, str]
    ) -> UnsignedInput:
        key = keys.get(utxo.xpub)
        if key is None:
            raise AssemblyError(f"UTXO {utxo.outpoint} belongs to an unregistered key")
        if utxo.script_type is not key.script_type:
            raise AssemblyError(
                f"UTXO {utxo.outpoint} is tagged {utxo.script_type} "
                f"but its key is {key.script_type}"
            )
        if not key.owns_path(utxo.path):
            raise AssemblyError(
                f"UTXO {utxo.outpoint} path {utxo.path} is not under {key.derivation_path}"
            )

        prev_tx_hex = None
        if utxo.script_type.requires_previous_transaction:
            prev_tx_hex = prev_txs.get(utxo.txid)
            if prev_tx_hex is None:
                raise AssemblyError(f"Missing previous transaction for legacy input {utxo.outpoint}")
            _verify_previous_transaction(utxo, prev_tx_hex)

        return UnsignedInput(
            prev_txid=utxo.txid,
            prev_index=utxo.vout,
            value=utxo.value,
            derivation_path=utxo.path,
            script_type=utxo.script_type,
            prev_tx_hex=prev_tx_hex,
            sequence=DEFAULT_SEQUENCE,
        )

    def _build_output(self, output: SelectionOutput, keys: KeyRegistry) -> UnsignedOutput:
        if not output.is_change:
            return UnsignedOutput(amount=output.amount, address=output.address)

        path = output.derivation_path
        script_type = output.script_type
        if path is None or script_type is None:
            raise AssemblyError("Change output is missing its derivation path or script type")
        if not any(k.script_type is script_type and k.owns_path(path) for k in keys):
            raise AssemblyError(f"Change path {path} is not under any registered {script_type} key")

        return UnsignedOutput(
            amount=output.amount,
            is_change=True,
            derivation_path=path,
            script_type=script_type,
        )


def _verify_previous_transaction(utxo: Utxo, prev_tx_hex: str) -> None:
    try:
        parsed = parse_transaction(prev_tx_hex)
        txid = get_txid(prev_tx_hex)
    except ValueError as e:
        raise AssemblyError(f"Previous transaction {utxo.txid} is malformed: {e}") from e

    if txid != utxo.txid:
        raise AssemblyError(f"Previous transaction hashes to {txid}, expected {utxo.txid}")
    if utxo.vout >= len(parsed.outputs):
        raise AssemblyError(f"Previous transaction {utxo.txid} has no output {utxo.vout}")
    value = parsed.outputs[utxo.vout]["value"]
    if value != utxo.value:
        raise AssemblyError(
            f"Previous output {utxo.outpoint} holds {value} sats, UTXO claims {utxo.value}"
        )
