"""
KeepKey transaction-signing protocol messages.

The host sends SignTx and the device drives the exchange with TxRequest
messages, asking for metadata, inputs and outputs of the transaction being
signed and of legacy previous transactions (identified by ``tx_hash``).
Signed bytes come back in ``serialized`` chunks. At any point the device may
interrupt with a ButtonRequest, PinMatrixRequest or PassphraseRequest.

Messages are pydantic models tagged by ``type`` so a JSON transport can
decode any device reply through DEVICE_MESSAGE_ADAPTER. Byte fields are hex.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Annotated, Literal, assert_never

from pydantic import BaseModel, Field, TypeAdapter

from kkcore.models import ScriptType


class RequestType(IntEnum):
    TXINPUT = 0
    TXOUTPUT = 1
    TXMETA = 2
    TXFINISHED = 3
    TXEXTRADATA = 4


class FailureType(IntEnum):
    UNEXPECTED_MESSAGE = 1
    BUTTON_EXPECTED = 2
    SYNTAX_ERROR = 3
    ACTION_CANCELLED = 4
    PIN_EXPECTED = 5
    PIN_CANCELLED = 6
    PIN_INVALID = 7
    INVALID_SIGNATURE = 8
    OTHER = 9
    NOT_ENOUGH_FUNDS = 10
    NOT_INITIALIZED = 11
    PIN_MISMATCH = 12
    FIRMWARE_ERROR = 99


class ButtonRequestType(IntEnum):
    OTHER = 1
    FEE_OVER_THRESHOLD = 2
    CONFIRM_OUTPUT = 3
    RESET_DEVICE = 4
    CONFIRM_WORD = 5
    WIPE_DEVICE = 6
    PROTECT_CALL = 7
    SIGN_TX = 8


class InputScriptType(IntEnum):
    SPENDADDRESS = 0
    SPENDMULTISIG = 1
    EXTERNAL = 2
    SPENDWITNESS = 3
    SPENDP2SHWITNESS = 4


class OutputScriptType(IntEnum):
    PAYTOADDRESS = 0
    PAYTOSCRIPTHASH = 1
    PAYTOMULTISIG = 2
    PAYTOOPRETURN = 3
    PAYTOWITNESS = 4
    PAYTOP2SHWITNESS = 5


class OutputAddressType(IntEnum):
    SPEND = 0
    TRANSFER = 1
    CHANGE = 2
    EXCHANGE = 3


def input_script_type(script_type: ScriptType) -> InputScriptType:
    match script_type:
        case ScriptType.LEGACY:
            return InputScriptType.SPENDADDRESS
        case ScriptType.WRAPPED_SEGWIT:
            return InputScriptType.SPENDP2SHWITNESS
        case ScriptType.NATIVE_SEGWIT:
            return InputScriptType.SPENDWITNESS
        case _:
            assert_never(script_type)


def change_script_type(script_type: ScriptType) -> OutputScriptType:
    """Script type the device uses to derive a change output's scriptPubKey."""
    match script_type:
        case ScriptType.LEGACY:
            return OutputScriptType.PAYTOADDRESS
        case ScriptType.WRAPPED_SEGWIT:
            return OutputScriptType.PAYTOP2SHWITNESS
        case ScriptType.NATIVE_SEGWIT:
            return OutputScriptType.PAYTOWITNESS
        case _:
            assert_never(script_type)


# =============================================================================
# Transaction structures
# =============================================================================


class TxInputType(BaseModel):
    address_n: list[int] = Field(default_factory=list)
    prev_hash: str
    prev_index: int
    script_sig: str | None = None
    sequence: int | None = None
    script_type: InputScriptType | None = None
    amount: int | None = None


class TxOutputType(BaseModel):
    address: str | None = None
    address_n: list[int] = Field(default_factory=list)
    amount: int
    script_type: OutputScriptType = OutputScriptType.PAYTOADDRESS
    address_type: OutputAddressType | None = None


class TxOutputBinType(BaseModel):
    amount: int
    script_pubkey: str


class TransactionType(BaseModel):
    version: int | None = None
    lock_time: int | None = None
    inputs_cnt: int | None = None
    outputs_cnt: int | None = None
    inputs: list[TxInputType] = Field(default_factory=list)
    outputs: list[TxOutputType] = Field(default_factory=list)
    bin_outputs: list[TxOutputBinType] = Field(default_factory=list)
    extra_data_len: int | None = None


class TxRequestDetails(BaseModel):
    request_index: int | None = None
    tx_hash: str | None = None
    extra_data_len: int | None = None
    extra_data_offset: int | None = None


class TxRequestSerialized(BaseModel):
    signature_index: int | None = None
    signature: str | None = None
    serialized_tx: str | None = None


# =============================================================================
# Host -> device
# =============================================================================


class SignTx(BaseModel):
    type: Literal["SignTx"] = "SignTx"
    outputs_count: int
    inputs_count: int
    coin_name: str = "Bitcoin"
    version: int = 1
    lock_time: int = 0


class TxAck(BaseModel):
    type: Literal["TxAck"] = "TxAck"
    tx: TransactionType


class ButtonAck(BaseModel):
    type: Literal["ButtonAck"] = "ButtonAck"


class PinMatrixAck(BaseModel):
    type: Literal["PinMatrixAck"] = "PinMatrixAck"
    pin: str


class PassphraseAck(BaseModel):
    type: Literal["PassphraseAck"] = "PassphraseAck"
    passphrase: str


class Cancel(BaseModel):
    type: Literal["Cancel"] = "Cancel"


HostMessage = SignTx | TxAck | ButtonAck | PinMatrixAck | PassphraseAck | Cancel


# =============================================================================
# Device -> host
# =============================================================================


class TxRequest(BaseModel):
    type: Literal["TxRequest"] = "TxRequest"
    request_type: RequestType | None = None
    details: TxRequestDetails | None = None
    serialized: TxRequestSerialized | None = None


class ButtonRequest(BaseModel):
    type: Literal["ButtonRequest"] = "ButtonRequest"
    code: int | None = None
    data: str | None = None


class PinMatrixRequest(BaseModel):
    type: Literal["PinMatrixRequest"] = "PinMatrixRequest"
    pin_type: int | None = None  # 1 current, 2 new first, 3 new second


class PassphraseRequest(BaseModel):
    type: Literal["PassphraseRequest"] = "PassphraseRequest"


class Failure(BaseModel):
    type: Literal["Failure"] = "Failure"
    code: int | None = None
    message: str | None = None


class Success(BaseModel):
    type: Literal["Success"] = "Success"
    message: str | None = None


DeviceMessage = Annotated[
    TxRequest | ButtonRequest | PinMatrixRequest | PassphraseRequest | Failure | Success,
    Field(discriminator="type"),
]

DEVICE_MESSAGE_ADAPTER: TypeAdapter[DeviceMessage] = TypeAdapter(DeviceMessage)
