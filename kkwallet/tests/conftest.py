"""
Shared fixtures for kkwallet tests.

Keys are built from fixed private keys so tests can check public derivation
against private derivation. FakeDevice plays the KeepKey side of the signing
protocol.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Generator, Iterator
from pathlib import Path
from typing import Any

import pytest
from coincurve import PrivateKey

from kkcore.bitcoin import address_to_scriptpubkey, get_txid, serialize_transaction
from kkcore.models import NetworkType, ScriptType
from kkcore.settings import reset_settings
from kkwallet.signing.authority import SigningAuthority
from kkwallet.signing.messages import (
    ButtonAck,
    ButtonRequest,
    ButtonRequestType,
    DeviceMessage,
    Failure,
    FailureType,
    HostMessage,
    InputScriptType,
    OutputAddressType,
    PassphraseAck,
    PassphraseRequest,
    PinMatrixAck,
    PinMatrixRequest,
    RequestType,
    SignTx,
    TxAck,
    TxInputType,
    TxOutputType,
    TxRequest,
    TxRequestDetails,
    TxRequestSerialized,
)
from kkwallet.signing.session import SessionEvent, SessionEventKind
from kkwallet.wallet.keys import ExtendedKey, KeyRegistry
from kkwallet.wallet.models import ChangeAddress, Utxo, format_derivation_path

ACCOUNT_SECRETS = {
    ScriptType.NATIVE_SEGWIT: bytes([0x11] * 32),
    ScriptType.WRAPPED_SEGWIT: bytes([0x22] * 32),
    ScriptType.LEGACY: bytes([0x33] * 32),
}
CHAIN_CODE = bytes(range(32))


@pytest.fixture(autouse=True)
def isolated_data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[Path, None, None]:
    data_dir = tmp_path / ".keepkey-vault"
    data_dir.mkdir(parents=True)
    monkeypatch.setenv("KEEPKEY_VAULT_DATA_DIR", str(data_dir))
    monkeypatch.delenv("KEEPKEY_VAULT_CONFIG_FILE", raising=False)
    reset_settings()
    yield data_dir
    reset_settings()


# =============================================================================
# Keys and UTXOs
# =============================================================================


def make_key(script_type: ScriptType, network: NetworkType = NetworkType.MAINNET) -> ExtendedKey:
    public_key = PrivateKey(ACCOUNT_SECRETS[script_type]).public_key.format(compressed=True)
    return ExtendedKey.from_node(public_key, CHAIN_CODE, script_type, network)


@pytest.fixture
def account_secret() -> Callable[[ScriptType], bytes]:
    return ACCOUNT_SECRETS.__getitem__


@pytest.fixture
def chain_code() -> bytes:
    return CHAIN_CODE


@pytest.fixture
def native_key() -> ExtendedKey:
    return make_key(ScriptType.NATIVE_SEGWIT)


@pytest.fixture
def wrapped_key() -> ExtendedKey:
    return make_key(ScriptType.WRAPPED_SEGWIT)


@pytest.fixture
def legacy_key() -> ExtendedKey:
    return make_key(ScriptType.LEGACY)


@pytest.fixture
def registry(native_key: ExtendedKey, wrapped_key: ExtendedKey, legacy_key: ExtendedKey) -> KeyRegistry:
    return KeyRegistry([native_key, wrapped_key, legacy_key])


@pytest.fixture
def destination() -> str:
    # BIP173 example P2WPKH address
    return "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"


@pytest.fixture
def change_address(native_key: ExtendedKey) -> ChangeAddress:
    return ChangeAddress(
        address=native_key.address(1, 0),
        derivation_path=native_key.child_path(1, 0),
        script_type=ScriptType.NATIVE_SEGWIT,
    )


def build_funding_tx(address: str, value: int, vout: int = 0, salt: int = 0) -> str:
    """A transaction paying ``value`` to ``address`` at output ``vout``."""
    outputs = [{"value": 1000 + i, "scriptpubkey": "6a"} for i in range(vout)]
    outputs.append({"value": value, "scriptpubkey": address_to_scriptpubkey(address).hex()})
    inputs = [{"txid": f"{salt:064x}", "vout": 0, "scriptsig": "51", "sequence": 0xFFFFFFFF}]
    return serialize_transaction(1, inputs, outputs, 0).hex()


UtxoFactory = Callable[..., Utxo]


@pytest.fixture
def make_utxo() -> UtxoFactory:
    counter = iter(range(1, 10_000))

    def factory(
        key: ExtendedKey,
        value: int,
        confirmations: int = 6,
        chain: int = 0,
        index: int = 0,
        txid: str | None = None,
        vout: int = 0,
    ) -> Utxo:
        address = key.address(chain, index)
        return Utxo(
            txid=txid or f"{next(counter):064x}",
            vout=vout,
            value=value,
            confirmations=confirmations,
            address=address,
            path=key.child_path(chain, index),
            script_type=key.script_type,
            xpub=key.xpub,
            scriptpubkey=address_to_scriptpubkey(address).hex(),
        )

    return factory


@pytest.fixture
def make_legacy_utxo() -> Callable[..., tuple[Utxo, str]]:
    """Legacy UTXO plus the raw funding transaction it comes from."""
    counter = iter(range(1, 10_000))

    def factory(
        key: ExtendedKey, value: int, confirmations: int = 6, index: int = 0, vout: int = 0
    ) -> tuple[Utxo, str]:
        address = key.address(0, index)
        prev_hex = build_funding_tx(address, value, vout=vout, salt=next(counter))
        utxo = Utxo(
            txid=get_txid(prev_hex),
            vout=vout,
            value=value,
            confirmations=confirmations,
            address=address,
            path=key.child_path(0, index),
            script_type=key.script_type,
            xpub=key.xpub,
        )
        return utxo, prev_hex

    return factory


# =============================================================================
# Signing authority doubles
# =============================================================================


class FakeDevice(SigningAuthority):
    """
    In-memory KeepKey answering the transaction-signing protocol.

    Asks for every input, walks legacy previous transactions by tx_hash,
    asks for every output (with a button press per spend output), then
    returns a serialized transaction with placeholder signatures.
    """

    def __init__(
        self,
        keys: KeyRegistry,
        pin: str | None = None,
        passphrase: bool = False,
        reject: bool = False,
        tamper: bool = False,
    ):
        self.keys = keys
        self.pin = pin
        self.passphrase = passphrase
        self.reject = reject
        self.tamper = tamper
        self.unlocked = pin is None
        self.received: list[HostMessage] = []
        self.request_ids: list[str] = []
        self.inputs: list[TxInputType] = []
        self.outputs: list[TxOutputType] = []
        self.prev_amounts: dict[str, list[int]] = {}
        self.passphrase_entered: str | None = None
        self.cancel_calls = 0
        self._flow: Generator[DeviceMessage, HostMessage, None] | None = None

    async def exchange(self, message: HostMessage, request_id: str) -> DeviceMessage:
        self.received.append(message)
        self.request_ids.append(request_id)
        await asyncio.sleep(0)
        if isinstance(message, SignTx):
            self._flow = self._sign_flow(message)
            return next(self._flow)
        assert self._flow is not None, f"{message.type} before SignTx"
        return self._flow.send(message)

    async def cancel(self) -> None:
        self.cancel_calls += 1

    def _sign_flow(self, sign_tx: SignTx) -> Generator[DeviceMessage, HostMessage, None]:
        self.inputs, self.outputs = [], []

        if not self.unlocked:
            ack = yield PinMatrixRequest(pin_type=1)
            assert isinstance(ack, PinMatrixAck)
            if ack.pin != self.pin:
                yield Failure(code=FailureType.PIN_INVALID, message="PIN invalid")
                return
            self.unlocked = True

        if self.passphrase:
            ack = yield PassphraseRequest()
            assert isinstance(ack, PassphraseAck)
            self.passphrase_entered = ack.passphrase

        for i in range(sign_tx.inputs_count):
            ack = yield TxRequest(
                request_type=RequestType.TXINPUT, details=TxRequestDetails(request_index=i)
            )
            assert isinstance(ack, TxAck)
            tx_input = ack.tx.inputs[0]
            self.inputs.append(tx_input)
            if tx_input.script_type is InputScriptType.SPENDADDRESS:
                yield from self._walk_previous(tx_input.prev_hash)

        for i in range(sign_tx.outputs_count):
            ack = yield TxRequest(
                request_type=RequestType.TXOUTPUT, details=TxRequestDetails(request_index=i)
            )
            assert isinstance(ack, TxAck)
            tx_output = ack.tx.outputs[0]
            self.outputs.append(tx_output)
            if tx_output.address_type is not OutputAddressType.CHANGE:
                ack = yield ButtonRequest(code=ButtonRequestType.CONFIRM_OUTPUT)
                assert isinstance(ack, ButtonAck)
                if self.reject:
                    yield Failure(code=FailureType.ACTION_CANCELLED, message="Signing cancelled")
                    return

        ack = yield ButtonRequest(code=ButtonRequestType.SIGN_TX)
        assert isinstance(ack, ButtonAck)

        yield TxRequest(
            request_type=RequestType.TXFINISHED,
            serialized=TxRequestSerialized(
                signature_index=0, signature="30" * 71, serialized_tx=self._serialize(sign_tx)
            ),
        )

    def _walk_previous(self, tx_hash: str) -> Generator[DeviceMessage, HostMessage, None]:
        meta = yield TxRequest(
            request_type=RequestType.TXMETA, details=TxRequestDetails(tx_hash=tx_hash)
        )
        assert isinstance(meta, TxAck)
        for i in range(meta.tx.inputs_cnt or 0):
            ack = yield TxRequest(
                request_type=RequestType.TXINPUT,
                details=TxRequestDetails(request_index=i, tx_hash=tx_hash),
            )
            assert isinstance(ack, TxAck) and ack.tx.inputs
        amounts = []
        for i in range(meta.tx.outputs_cnt or 0):
            ack = yield TxRequest(
                request_type=RequestType.TXOUTPUT,
                details=TxRequestDetails(request_index=i, tx_hash=tx_hash),
            )
            assert isinstance(ack, TxAck)
            amounts.append(ack.tx.bin_outputs[0].amount)
        self.prev_amounts[tx_hash] = amounts

    def _change_scriptpubkey(self, address_n: list[int]) -> str:
        path = format_derivation_path(address_n)
        for key in self.keys:
            if key.owns_path(path):
                address = key.address(address_n[-2], address_n[-1])
                return address_to_scriptpubkey(address).hex()
        raise AssertionError(f"Device cannot derive change path {path}")

    def _serialize(self, sign_tx: SignTx) -> str:
        inputs: list[dict[str, Any]] = []
        witnesses: list[list[bytes]] = []
        for tx_input in self.inputs:
            segwit = tx_input.script_type is not InputScriptType.SPENDADDRESS
            wrapped = tx_input.script_type is InputScriptType.SPENDP2SHWITNESS
            inputs.append(
                {
                    "txid": tx_input.prev_hash,
                    "vout": tx_input.prev_index,
                    "scriptsig": "160014" + "00" * 20 if wrapped else ("" if segwit else "47" + "30" * 71),
                    "sequence": tx_input.sequence,
                }
            )
            witnesses.append([b"\x30" * 71, b"\x02" * 33] if segwit else [])

        outputs = []
        for i, tx_output in enumerate(self.outputs):
            if tx_output.address_type is OutputAddressType.CHANGE:
                scriptpubkey = self._change_scriptpubkey(tx_output.address_n)
            else:
                assert tx_output.address is not None
                scriptpubkey = address_to_scriptpubkey(tx_output.address).hex()
            amount = tx_output.amount + (1 if self.tamper and i == 0 else 0)
            outputs.append({"value": amount, "scriptpubkey": scriptpubkey})

        return serialize_transaction(
            sign_tx.version, inputs, outputs, sign_tx.lock_time, witnesses
        ).hex()


class HangingAuthority(SigningAuthority):
    """Never answers; records cancellations."""

    def __init__(self) -> None:
        self.cancel_calls = 0
        self.request_ids: list[str] = []

    async def exchange(self, message: HostMessage, request_id: str) -> DeviceMessage:
        self.request_ids.append(request_id)
        await asyncio.Event().wait()
        raise AssertionError("unreachable")

    async def cancel(self) -> None:
        self.cancel_calls += 1


class ScriptedAuthority(SigningAuthority):
    """Returns a fixed sequence of device replies, whatever the host sends."""

    def __init__(self, replies: list[DeviceMessage | Exception]):
        self.replies = list(replies)
        self.received: list[HostMessage] = []
        self.cancel_calls = 0

    async def exchange(self, message: HostMessage, request_id: str) -> DeviceMessage:
        self.received.append(message)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def cancel(self) -> None:
        self.cancel_calls += 1


@pytest.fixture
def make_device(registry: KeyRegistry) -> Callable[..., FakeDevice]:
    return lambda **kwargs: FakeDevice(registry, **kwargs)


@pytest.fixture
def hanging_authority() -> HangingAuthority:
    return HangingAuthority()


@pytest.fixture
def scripted_authority() -> Callable[[list[Any]], ScriptedAuthority]:
    return ScriptedAuthority


@pytest.fixture
def next_event() -> Callable[..., Any]:
    """Await the next event of a given kind from a subscription queue."""

    async def wait(
        queue: asyncio.Queue[SessionEvent], kind: SessionEventKind, timeout: float = 2.0
    ) -> SessionEvent:
        async def _find() -> SessionEvent:
            while True:
                event = await queue.get()
                if event.kind is kind:
                    return event

        return await asyncio.wait_for(_find(), timeout)

    return wait


@pytest.fixture
def drain_events() -> Callable[[asyncio.Queue[SessionEvent]], Iterator[SessionEvent]]:
    def drain(queue: asyncio.Queue[SessionEvent]) -> Iterator[SessionEvent]:
        while not queue.empty():
            yield queue.get_nowait()

    return drain
