"""
Wallet data models.

All amounts are integer satoshis and fee rates are Decimal sat/vB.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Annotated

from pydantic import Field
from pydantic.dataclasses import dataclass

from kkcore.bitcoin import get_txid
from kkcore.constants import DEFAULT_SEQUENCE
from kkcore.models import FeeTier, ScriptType

HARDENED = 0x80000000


def parse_derivation_path(path: str) -> list[int]:
    """
    Parse a BIP32 path (e.g. "m/84'/0'/0'/1/3") into child indices.

    Both ' and h mark hardened components.
    """
    parts = path.split("/")
    if parts[0] != "m":
        raise ValueError(f"Path must start with 'm': {path}")

    indices = []
    for part in parts[1:]:
        hardened = part.endswith(("'", "h"))
        index_str = part[:-1] if hardened else part
        if not index_str.isdigit():
            raise ValueError(f"Invalid path component {part!r} in {path}")
        index = int(index_str)
        if index >= HARDENED:
            raise ValueError(f"Path component out of range: {part}")
        indices.append(index + HARDENED if hardened else index)
    return indices


def format_derivation_path(indices: list[int] | tuple[int, ...]) -> str:
    parts = ["m"]
    for index in indices:
        parts.append(f"{index - HARDENED}'" if index >= HARDENED else str(index))
    return "/".join(parts)


@dataclass(frozen=True)
class Outpoint:
    txid: str
    vout: int

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"


@dataclass(frozen=True)
class Utxo:
    """An unspent output owned by one of the registered extended keys."""

    txid: str
    vout: int
    value: Annotated[int, Field(ge=0)]
    confirmations: int
    address: str
    path: str  # full derivation path, e.g. m/84'/0'/0'/0/5
    script_type: ScriptType
    xpub: str  # owning extended key
    scriptpubkey: str = ""
    height: int | None = None

    @property
    def outpoint(self) -> Outpoint:
        return Outpoint(self.txid, self.vout)


@dataclass(frozen=True)
class ChangeAddress:
    address: str
    derivation_path: str
    script_type: ScriptType


@dataclass(frozen=True)
class SelectionOutput:
    address: str
    amount: int
    is_change: bool = False
    derivation_path: str | None = None
    script_type: ScriptType | None = None


@dataclass(frozen=True)
class SelectionResult:
    """
    Result of coin selection.

    ``sum(inputs.value) == sum(outputs.amount) + fee`` always holds.
    ``folded_change`` is the sub-dust remainder that was added to the fee.
    """

    inputs: tuple[Utxo, ...]
    outputs: tuple[SelectionOutput, ...]
    fee: int
    fee_rate: Decimal
    vsize: int
    folded_change: int = 0

    @property
    def total_in(self) -> int:
        return sum(u.value for u in self.inputs)

    @property
    def total_out(self) -> int:
        return sum(o.amount for o in self.outputs)

    @property
    def is_balanced(self) -> bool:
        return self.total_in == self.total_out + self.fee

    @property
    def change(self) -> SelectionOutput | None:
        return next((o for o in self.outputs if o.is_change), None)

    @property
    def send_amount(self) -> int:
        return sum(o.amount for o in self.outputs if not o.is_change)


@dataclass(frozen=True)
class UnsignedInput:
    """
    One input with the metadata the device needs to sign it.

    Legacy inputs carry the full previous transaction; segwit inputs commit to
    the amount in the sighash and never do.
    """

    prev_txid: str
    prev_index: int
    value: int
    derivation_path: str
    script_type: ScriptType
    prev_tx_hex: str | None = None
    sequence: int = DEFAULT_SEQUENCE

    @property
    def address_n(self) -> list[int]:
        return parse_derivation_path(self.derivation_path)


@dataclass(frozen=True)
class UnsignedOutput:
    """A spend output (address) or a change output (derivation path + script type)."""

    amount: int
    is_change: bool = False
    address: str | None = None
    derivation_path: str | None = None
    script_type: ScriptType | None = None

    def __post_init__(self) -> None:
        if self.is_change:
            if self.derivation_path is None or self.script_type is None:
                raise ValueError("Change outputs need a derivation path and script type")
            if self.address is not None:
                raise ValueError("Change outputs are addressed by derivation path only")
        elif self.address is None:
            raise ValueError("Spend outputs need an address")

    @property
    def address_n(self) -> list[int]:
        if self.derivation_path is None:
            return []
        return parse_derivation_path(self.derivation_path)


@dataclass(frozen=True)
class UnsignedTransaction:
    """Canonical signing payload handed to the signing coordinator."""

    inputs: tuple[UnsignedInput, ...]
    outputs: tuple[UnsignedOutput, ...]
    version: int = 1
    locktime: int = 0
    coin_name: str = "Bitcoin"

    @property
    def total_in(self) -> int:
        return sum(i.value for i in self.inputs)

    @property
    def total_out(self) -> int:
        return sum(o.amount for o in self.outputs)

    @property
    def fee(self) -> int:
        return self.total_in - self.total_out


@dataclass(frozen=True)
class FinishedTransaction:
    """A fully signed transaction. Build with from_raw_hex so txid always matches."""

    raw_hex: str
    txid: str

    @classmethod
    def from_raw_hex(cls, raw_hex: str) -> FinishedTransaction:
        return cls(raw_hex=raw_hex, txid=get_txid(raw_hex))


@dataclass(frozen=True)
class FeeRates:
    """Tiered fee-rate estimates in sat/vB."""

    slow: Decimal
    medium: Decimal
    fast: Decimal

    def for_tier(self, tier: FeeTier) -> Decimal:
        match tier:
            case FeeTier.SLOW:
                return self.slow
            case FeeTier.MEDIUM:
                return self.medium
            case FeeTier.FAST:
                return self.fast
