"""
Send pipeline service.

Wires the stages together: registry + UTXO source + fee oracle -> selector ->
assembler -> signing coordinator -> broadcaster. Every stage is usable on its
own; this module only sequences them and fetches fresh chain data per build.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal

from loguru import logger
from pydantic.dataclasses import dataclass

from kkcore.bitcoin import format_amount, validate_address
from kkcore.constants import BITCOIN_ASSET_ID
from kkcore.models import FeeTier, NetworkType, ScriptType
from kkwallet.backends.base import BlockchainBackend
from kkwallet.broadcast import Broadcaster
from kkwallet.errors import InvalidDestination
from kkwallet.signing.coordinator import SigningCoordinator
from kkwallet.wallet.assembler import TransactionAssembler
from kkwallet.wallet.coin_selection import CoinSelector
from kkwallet.wallet.keys import KeyRegistry
from kkwallet.wallet.models import (
    FinishedTransaction,
    Outpoint,
    SelectionResult,
    UnsignedTransaction,
    Utxo,
)


@dataclass(frozen=True)
class SendRequest:
    """
    What the user asked for.

    Exactly one of ``amount`` and ``send_max`` is set. ``fee_rate`` (sat/vB)
    overrides ``fee_tier``.
    """

    destination: str
    amount: int | None = None
    send_max: bool = False
    fee_tier: FeeTier = FeeTier.MEDIUM
    fee_rate: Decimal | None = None
    script_types: tuple[ScriptType, ...] | None = None
    locked: tuple[Outpoint, ...] = ()

    def __post_init__(self) -> None:
        if self.send_max == (self.amount is not None):
            raise ValueError("Specify either an amount or send_max, not both")
        if self.amount is not None and self.amount <= 0:
            raise ValueError(f"Amount must be positive, got {self.amount}")
        if self.fee_rate is not None and self.fee_rate <= 0:
            raise ValueError(f"Fee rate must be positive, got {self.fee_rate}")


@dataclass(frozen=True)
class PreparedSend:
    """A built, not yet signed, send."""

    selection: SelectionResult
    unsigned: UnsignedTransaction

    @property
    def send_amount(self) -> int:
        return self.selection.send_amount

    @property
    def fee(self) -> int:
        return self.selection.fee

    @property
    def change_amount(self) -> int:
        change = self.selection.change
        return change.amount if change is not None else 0


class SendService:
    """
    Runs the send pipeline for the keys in a registry.

    Args:
        keys: Registered extended public keys (all on one network)
        backend: Blockchain data service
        selector: Coin selector
        assembler: Transaction assembler
        coordinator: Signing coordinator for the connected device
        broadcaster: Broadcaster
        min_fee_rate: Floor applied to estimated and manual fee rates
    """

    def __init__(
        self,
        keys: KeyRegistry,
        backend: BlockchainBackend,
        selector: CoinSelector,
        assembler: TransactionAssembler,
        coordinator: SigningCoordinator,
        broadcaster: Broadcaster,
        min_fee_rate: Decimal = Decimal("1"),
        asset_id: str = BITCOIN_ASSET_ID,
    ):
        if not len(keys):
            raise ValueError("At least one extended key must be registered")
        self.keys = keys
        self.backend = backend
        self.selector = selector
        self.assembler = assembler
        self.coordinator = coordinator
        self.broadcaster = broadcaster
        self.min_fee_rate = min_fee_rate
        self.asset_id = asset_id

    async def fetch_utxos(self, script_types: tuple[ScriptType, ...] | None = None) -> list[Utxo]:
        """UTXOs of every registered key (optionally restricted to some script types)."""
        keys = [k for k in self.keys if script_types is None or k.script_type in script_types]
        results = await asyncio.gather(*(self.backend.list_unspent(k) for k in keys))
        utxos = [u for key_utxos in results for u in key_utxos]
        logger.info(
            f"Found {len(utxos)} UTXO(s) across {len(keys)} key(s), "
            f"total {format_amount(sum(u.value for u in utxos))}"
        )
        return utxos

    async def resolve_fee_rate(self, request: SendRequest) -> Decimal:
        if request.fee_rate is not None:
            rate = request.fee_rate
            logger.info(f"Using manual fee rate: {rate} sat/vB")
        else:
            rates = await self.backend.get_fee_rates(self.asset_id)
            rate = rates.for_tier(request.fee_tier)
            logger.info(f"Fee estimate ({request.fee_tier}): {rate} sat/vB")

        if rate < self.min_fee_rate:
            logger.warning(
                f"Fee rate {rate} sat/vB is below the minimum {self.min_fee_rate} sat/vB, "
                "using the minimum instead"
            )
            rate = self.min_fee_rate
        return rate

    def check_destination(self, destination: str) -> None:
        network = self.keys.network
        try:
            validate_address(destination, network or NetworkType.MAINNET)
        except ValueError as e:
            logger.error(f"Invalid destination {destination!r}: {e}")
            raise InvalidDestination(destination, str(e)) from e

    async def build(self, request: SendRequest) -> PreparedSend:
        """
        Select coins and assemble the unsigned transaction.

        Raises:
            InvalidDestination: Before any network access, if the destination
                is malformed or on another network
            InsufficientFunds, NoSpendableAssetFound: From coin selection
            AssemblyError: If UTXO metadata is inconsistent
        """
        self.check_destination(request.destination)

        utxos, fee_rate = await asyncio.gather(
            self.fetch_utxos(request.script_types), self.resolve_fee_rate(request)
        )

        if request.send_max:
            selection = self.selector.select_drain(
                utxos, request.destination, fee_rate, locked=request.locked
            )
        else:
            assert request.amount is not None
            change = await self.backend.next_change_address(self.keys.change_key())
            selection = self.selector.select(
                utxos,
                request.destination,
                request.amount,
                fee_rate,
                change,
                locked=request.locked,
            )

        unsigned = await self.assembler.assemble(selection, self.keys)
        return PreparedSend(selection=selection, unsigned=unsigned)

    async def sign(self, prepared: PreparedSend) -> FinishedTransaction:
        return await self.coordinator.sign(prepared.unsigned)

    async def broadcast(self, finished: FinishedTransaction) -> str:
        return await self.broadcaster.broadcast(finished)

    async def send(self, request: SendRequest) -> str:
        """Build, sign and broadcast without interactive confirmation."""
        prepared = await self.build(request)
        finished = await self.sign(prepared)
        return await self.broadcast(finished)
