"""
Coin selection for wallet spending.

Two strategies with separate code paths:
- select(): pay an exact amount, returning change above the dust threshold
- select_drain(): spend every eligible UTXO to a single output, no change

Both are pure: UTXOs are filtered and sorted, never mutated.
"""

from __future__ import annotations

from collections.abc import Collection, Sequence
from decimal import Decimal

from loguru import logger

from kkcore.bitcoin import calculate_fee, estimate_vsize, get_address_type
from kkcore.constants import BITCOIN_ASSET_ID, DUST_THRESHOLD
from kkwallet.errors import InsufficientFunds, InvalidDestination, NoSpendableAssetFound
from kkwallet.wallet.models import ChangeAddress, Outpoint, SelectionOutput, SelectionResult, Utxo


def utxo_sort_key(utxo: Utxo) -> tuple[int, int, str, int]:
    """Most confirmations first, then smallest value, then outpoint."""
    return (-utxo.confirmations, utxo.value, utxo.txid, utxo.vout)


class CoinSelector:
    """
    Chooses inputs for a send.

    Args:
        dust_threshold: Change at or below this (sats) is folded into the fee
        min_confirmations: UTXOs with fewer confirmations are not spendable
        asset_id: CAIP-19 style id reported when no UTXOs exist
    """

    def __init__(
        self,
        dust_threshold: int = DUST_THRESHOLD,
        min_confirmations: int = 1,
        asset_id: str = BITCOIN_ASSET_ID,
    ):
        if dust_threshold < 0:
            raise ValueError("dust_threshold cannot be negative")
        if min_confirmations < 0:
            raise ValueError("min_confirmations cannot be negative")
        self.dust_threshold = dust_threshold
        self.min_confirmations = min_confirmations
        self.asset_id = asset_id

    def eligible_utxos(
        self, utxos: Sequence[Utxo], locked: Collection[Outpoint] = ()
    ) -> list[Utxo]:
        """
        Spendable UTXOs in selection order.

        Locked (frozen) outpoints are never auto-selected.

        Raises:
            NoSpendableAssetFound: If the wallet holds no UTXOs at all
        """
        if not utxos:
            raise NoSpendableAssetFound(self.asset_id)

        locked_set = set(locked)
        eligible = [u for u in utxos if u.confirmations >= self.min_confirmations]
        eligible = [u for u in eligible if u.outpoint not in locked_set]
        skipped = len(utxos) - len(eligible)
        if skipped:
            logger.debug(f"Skipping {skipped} UTXO(s): unconfirmed or locked")

        eligible.sort(key=utxo_sort_key)
        return eligible

    def select(
        self,
        utxos: Sequence[Utxo],
        destination: str,
        amount: int,
        fee_rate: Decimal,
        change: ChangeAddress,
        locked: Collection[Outpoint] = (),
    ) -> SelectionResult:
        """
        Select UTXOs to pay exactly ``amount`` to ``destination``.

        Inputs are accumulated in sort order until they cover the amount plus
        the fee of a transaction with a change output. Change at or below the
        dust threshold is dropped and added to the fee. If every eligible
        input together still misses the two-output target but covers the
        single-output fee, a transaction without change is built.

        Raises:
            InsufficientFunds: If eligible inputs cannot cover amount + fee
            NoSpendableAssetFound: If there are no UTXOs at all
            InvalidDestination: If the destination cannot be decoded
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValueError(f"Amount must be a positive integer (sats), got {amount!r}")
        fee_rate = _check_fee_rate(fee_rate)
        dest_type = _destination_type(destination)
        change_type = change.script_type.output_type

        eligible = self.eligible_utxos(utxos, locked)

        selected: list[Utxo] = []
        total = 0
        for utxo in eligible:
            selected.append(utxo)
            total += utxo.value

            input_types = [u.script_type for u in selected]
            vsize = estimate_vsize(input_types, [dest_type, change_type])
            fee = calculate_fee(vsize, fee_rate)
            if total < amount + fee:
                continue

            remainder = total - amount - fee
            if remainder > self.dust_threshold:
                outputs = (
                    SelectionOutput(address=destination, amount=amount),
                    SelectionOutput(
                        address=change.address,
                        amount=remainder,
                        is_change=True,
                        derivation_path=change.derivation_path,
                        script_type=change.script_type,
                    ),
                )
                return self._finish(selected, outputs, fee, fee_rate, vsize, 0)

            return self._without_change(selected, destination, dest_type, amount, fee_rate)

        # Every eligible input is in; a single-output transaction may still fit
        if selected:
            input_types = [u.script_type for u in selected]
            vsize = estimate_vsize(input_types, [dest_type])
            fee = calculate_fee(vsize, fee_rate)
            if total >= amount + fee:
                return self._without_change(selected, destination, dest_type, amount, fee_rate)
            needed = amount + fee
        else:
            needed = amount

        logger.warning(f"Insufficient funds: need {needed:,} sats, have {total:,} sats")
        raise InsufficientFunds(needed=needed, available=total)

    def select_drain(
        self,
        utxos: Sequence[Utxo],
        destination: str,
        fee_rate: Decimal,
        locked: Collection[Outpoint] = (),
    ) -> SelectionResult:
        """
        Spend every eligible UTXO to ``destination`` with no change output.

        Raises:
            InsufficientFunds: If nothing is eligible, or the fee leaves no
                more than the dust threshold for the output
            NoSpendableAssetFound: If there are no UTXOs at all
        """
        fee_rate = _check_fee_rate(fee_rate)
        dest_type = _destination_type(destination)

        eligible = self.eligible_utxos(utxos, locked)
        total = sum(u.value for u in eligible)
        if not eligible:
            raise InsufficientFunds(needed=1, available=0, message="No confirmed unlocked UTXOs")

        vsize = estimate_vsize([u.script_type for u in eligible], [dest_type])
        fee = calculate_fee(vsize, fee_rate)
        amount = total - fee
        if amount <= self.dust_threshold:
            logger.warning(f"Drain of {total:,} sats is consumed by a {fee:,} sat fee")
            raise InsufficientFunds(
                needed=fee + self.dust_threshold + 1,
                available=total,
                message=f"Funds ({total:,} sats) are consumed by the fee ({fee:,} sats)",
            )

        outputs = (SelectionOutput(address=destination, amount=amount),)
        return self._finish(eligible, outputs, fee, fee_rate, vsize, 0)

    def _without_change(
        self,
        selected: list[Utxo],
        destination: str,
        dest_type: str,
        amount: int,
        fee_rate: Decimal,
    ) -> SelectionResult:
        vsize = estimate_vsize([u.script_type for u in selected], [dest_type])
        min_fee = calculate_fee(vsize, fee_rate)
        total = sum(u.value for u in selected)
        fee = total - amount
        folded = fee - min_fee
        if folded:
            logger.info(f"Folding {folded:,} sats of sub-dust change into the fee")
        outputs = (SelectionOutput(address=destination, amount=amount),)
        return self._finish(selected, outputs, fee, fee_rate, vsize, folded)

    def _finish(
        self,
        selected: list[Utxo],
        outputs: tuple[SelectionOutput, ...],
        fee: int,
        fee_rate: Decimal,
        vsize: int,
        folded_change: int,
    ) -> SelectionResult:
        result = SelectionResult(
            inputs=tuple(selected),
            outputs=outputs,
            fee=fee,
            fee_rate=fee_rate,
            vsize=vsize,
            folded_change=folded_change,
        )
        if not result.is_balanced:
            raise RuntimeError("Selection does not balance inputs against outputs + fee")
        logger.info(
            f"Selected {len(selected)} UTXO(s) totalling {result.total_in:,} sats: "
            f"{len(outputs)} output(s), fee {fee:,} sats ({vsize} vB at {fee_rate} sat/vB)"
        )
        return result


def _check_fee_rate(fee_rate: Decimal | int | str) -> Decimal:
    if isinstance(fee_rate, float):
        raise TypeError("Fee rate must be a Decimal, not float")
    rate = Decimal(fee_rate)
    if not rate.is_finite() or rate <= 0:
        raise ValueError(f"Fee rate must be positive, got {fee_rate}")
    return rate


def _destination_type(destination: str) -> str:
    try:
        return get_address_type(destination)
    except ValueError as e:
        raise InvalidDestination(destination, str(e)) from e
