"""
Bitcoin utilities for KeepKey Vault.

This module provides consolidated Bitcoin operations:
- Address encoding/decoding/validation (bech32, base58)
- Hash functions (hash160, hash256)
- Transaction parsing/serialization and txid calculation
- Varint encoding/decoding
- Virtual size and fee estimation per script type

Uses external libraries for security-critical operations:
- bech32: BIP173 bech32 encoding
- base58: Base58Check encoding
"""

from __future__ import annotations

import hashlib
import struct
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import ROUND_CEILING, Decimal
from typing import Any, assert_never

import base58
import bech32 as bech32_lib

from kkcore.constants import SATS_PER_BTC
from kkcore.models import NetworkType, ScriptType

# Network prefixes for address encoding
HRP_MAP = {
    NetworkType.MAINNET: "bc",
    NetworkType.TESTNET: "tb",
    NetworkType.SIGNET: "tb",
    NetworkType.REGTEST: "bcrt",
}

# Base58 version bytes
P2PKH_VERSION = {
    NetworkType.MAINNET: 0x00,
    NetworkType.TESTNET: 0x6F,
    NetworkType.SIGNET: 0x6F,
    NetworkType.REGTEST: 0x6F,
}

P2SH_VERSION = {
    NetworkType.MAINNET: 0x05,
    NetworkType.TESTNET: 0xC4,
    NetworkType.SIGNET: 0xC4,
    NetworkType.REGTEST: 0xC4,
}

# Serialized output size in bytes (8 value + 1 script length + scriptPubKey)
OUTPUT_SIZES = {
    "p2pkh": 34,
    "p2sh": 32,
    "p2wpkh": 31,
    "p2wsh": 43,
}

# version (4) + locktime (4), in weight units
TX_BASE_WEIGHT = 8 * 4
SEGWIT_MARKER_WEIGHT = 2


# =============================================================================
# Amount Utilities
# =============================================================================


def sats_to_btc(sats: int) -> float:
    """
    Convert satoshis to BTC. Only use for display/output.

    Args:
        sats: Amount in satoshis

    Returns:
        Amount in BTC
    """
    return sats / SATS_PER_BTC


def format_amount(sats: int, include_unit: bool = True) -> str:
    """
    Format satoshi amount as string.
    Default: '1,000,000 sats (0.01000000 BTC)'

    Args:
        sats: Amount in satoshis
        include_unit: Whether to include units and BTC conversion

    Returns:
        Formatted string
    """
    if include_unit:
        btc_val = sats_to_btc(sats)
        return f"{sats:,} sats ({btc_val:.8f} BTC)"
    return f"{sats:,}"


def validate_satoshi_amount(sats: int) -> None:
    """
    Validate that amount is a non-negative integer.

    Raises:
        TypeError: If amount is not an integer
        ValueError: If amount is negative
    """
    if isinstance(sats, bool) or not isinstance(sats, int):
        raise TypeError(f"Amount must be an integer (satoshis), got {type(sats)}")
    if sats < 0:
        raise ValueError(f"Amount cannot be negative, got {sats}")


# =============================================================================
# Hash Functions
# =============================================================================


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data)) - Used for Bitcoin addresses."""
    return hashlib.new("ripemd160", hashlib.sha256(data).digest()).digest()


def hash256(data: bytes) -> bytes:
    """SHA256(SHA256(data)) - Used for Bitcoin txids and block hashes."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


# =============================================================================
# Varint Encoding/Decoding
# =============================================================================


def encode_varint(n: int) -> bytes:
    """Encode integer as Bitcoin varint."""
    if n < 0xFD:
        return bytes([n])
    elif n <= 0xFFFF:
        return bytes([0xFD]) + struct.pack("<H", n)
    elif n <= 0xFFFFFFFF:
        return bytes([0xFE]) + struct.pack("<I", n)
    else:
        return bytes([0xFF]) + struct.pack("<Q", n)


def decode_varint(data: bytes, offset: int = 0) -> tuple[int, int]:
    """
    Decode Bitcoin varint from bytes.

    Args:
        data: Input bytes
        offset: Starting offset in data

    Returns:
        (value, new_offset) tuple
    """
    first = data[offset]
    if first < 0xFD:
        return first, offset + 1
    elif first == 0xFD:
        return struct.unpack("<H", data[offset + 1 : offset + 3])[0], offset + 3
    elif first == 0xFE:
        return struct.unpack("<I", data[offset + 1 : offset + 5])[0], offset + 5
    else:
        return struct.unpack("<Q", data[offset + 1 : offset + 9])[0], offset + 9


# =============================================================================
# Address Encoding/Decoding
# =============================================================================


def get_hrp(network: str | NetworkType) -> str:
    """
    Get bech32 human-readable part for network.

    Args:
        network: Network type (string or enum)

    Returns:
        HRP string (bc, tb, bcrt)
    """
    if isinstance(network, str):
        network = NetworkType(network)
    return HRP_MAP[network]


def pubkey_to_p2wpkh_address(pubkey: bytes, network: str | NetworkType = "mainnet") -> str:
    """Convert compressed public key to P2WPKH (native SegWit) address."""
    if len(pubkey) != 33:
        raise ValueError(f"Invalid compressed pubkey length: {len(pubkey)}")

    result = bech32_lib.encode(get_hrp(network), 0, hash160(pubkey))
    if result is None:
        raise ValueError("Failed to encode bech32 address")
    return result


def pubkey_to_p2pkh_address(pubkey: bytes, network: str | NetworkType = "mainnet") -> str:
    """Convert compressed public key to legacy P2PKH address."""
    if isinstance(network, str):
        network = NetworkType(network)
    payload = bytes([P2PKH_VERSION[network]]) + hash160(pubkey)
    return base58.b58encode_check(payload).decode("ascii")


def pubkey_to_p2sh_p2wpkh_address(pubkey: bytes, network: str | NetworkType = "mainnet") -> str:
    """Convert compressed public key to P2SH-wrapped P2WPKH address."""
    if isinstance(network, str):
        network = NetworkType(network)
    redeem_script = pubkey_to_p2wpkh_script(pubkey)
    payload = bytes([P2SH_VERSION[network]]) + hash160(redeem_script)
    return base58.b58encode_check(payload).decode("ascii")


def pubkey_to_address(
    pubkey: bytes, script_type: ScriptType, network: str | NetworkType = "mainnet"
) -> str:
    """Encode a public key as an address of the given script type."""
    match script_type:
        case ScriptType.LEGACY:
            return pubkey_to_p2pkh_address(pubkey, network)
        case ScriptType.WRAPPED_SEGWIT:
            return pubkey_to_p2sh_p2wpkh_address(pubkey, network)
        case ScriptType.NATIVE_SEGWIT:
            return pubkey_to_p2wpkh_address(pubkey, network)
        case _:
            assert_never(script_type)


def pubkey_to_p2wpkh_script(pubkey: bytes) -> bytes:
    """
    Create P2WPKH scriptPubKey from public key.

    Returns:
        22-byte P2WPKH scriptPubKey (OP_0 <20-byte-hash>)
    """
    return bytes([0x00, 0x14]) + hash160(pubkey)


def address_to_scriptpubkey(address: str) -> bytes:
    """
    Convert Bitcoin address to scriptPubKey.

    Supports:
    - P2WPKH (bc1q..., tb1q..., bcrt1q...)
    - P2WSH (bc1q... 62 chars)
    - P2PKH (1..., m..., n...)
    - P2SH (3..., 2...)

    Raises:
        ValueError: If the address cannot be decoded
    """
    lowered = address.lower()
    if lowered.startswith(("bc1", "tb1", "bcrt1")):
        hrp = lowered[: lowered.rindex("1")]

        witver, witprog_list = bech32_lib.decode(hrp, address)
        if witver is None or witprog_list is None:
            raise ValueError(f"Invalid bech32 address: {address}")

        witprog = bytes(witprog_list)

        if witver == 0:
            if len(witprog) == 20:
                return bytes([0x00, 0x14]) + witprog
            elif len(witprog) == 32:
                return bytes([0x00, 0x20]) + witprog

        raise ValueError(f"Unsupported witness version: {witver}")

    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise ValueError(f"Invalid base58 address: {address}") from e

    if len(decoded) != 21:
        raise ValueError(f"Invalid base58 payload length: {len(decoded)}")

    version = decoded[0]
    payload = decoded[1:]

    if version in (0x00, 0x6F):
        # OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG
        return bytes([0x76, 0xA9, 0x14]) + payload + bytes([0x88, 0xAC])
    elif version in (0x05, 0xC4):
        # OP_HASH160 <20-byte-scripthash> OP_EQUAL
        return bytes([0xA9, 0x14]) + payload + bytes([0x87])

    raise ValueError(f"Unknown address version: {version}")


def get_address_type(address: str) -> str:
    """
    Classify an address by the scriptPubKey it decodes to.

    Returns:
        One of "p2pkh", "p2sh", "p2wpkh", "p2wsh"
    """
    script = address_to_scriptpubkey(address)
    if len(script) == 25:
        return "p2pkh"
    if len(script) == 23:
        return "p2sh"
    if len(script) == 22:
        return "p2wpkh"
    return "p2wsh"


def validate_address(address: str, network: str | NetworkType = "mainnet") -> str:
    """
    Check that an address decodes and belongs to the given network.

    Args:
        address: Address string
        network: Network the address must belong to

    Returns:
        The address type (see get_address_type)

    Raises:
        ValueError: With a human-readable reason if the address is unusable
    """
    if isinstance(network, str):
        network = NetworkType(network)

    if not address or address != address.strip():
        raise ValueError("Address is empty or has surrounding whitespace")

    lowered = address.lower()
    if lowered.startswith(("bc1", "tb1", "bcrt1")):
        hrp = lowered[: lowered.rindex("1")]
        if hrp != get_hrp(network):
            raise ValueError(f"Address prefix '{hrp}' does not belong to {network.value}")
        return get_address_type(address)

    address_type = get_address_type(address)
    version = base58.b58decode_check(address)[0]
    expected = P2PKH_VERSION[network] if address_type == "p2pkh" else P2SH_VERSION[network]
    if version != expected:
        raise ValueError(f"Address version {version:#04x} does not belong to {network.value}")
    return address_type


def scriptpubkey_to_address(scriptpubkey: bytes, network: str | NetworkType = "mainnet") -> str:
    """
    Convert scriptPubKey to address.

    Supports P2WPKH, P2WSH, P2PKH, P2SH.
    """
    if isinstance(network, str):
        network = NetworkType(network)

    hrp = get_hrp(network)

    # P2WPKH / P2WSH
    if scriptpubkey[:1] == b"\x00" and len(scriptpubkey) in (22, 34):
        result = bech32_lib.encode(hrp, 0, scriptpubkey[2:])
        if result is None:
            raise ValueError(f"Failed to encode segwit address: {scriptpubkey.hex()}")
        return result

    # P2PKH
    if (
        len(scriptpubkey) == 25
        and scriptpubkey[0] == 0x76
        and scriptpubkey[1] == 0xA9
        and scriptpubkey[2] == 0x14
        and scriptpubkey[23] == 0x88
        and scriptpubkey[24] == 0xAC
    ):
        payload = bytes([P2PKH_VERSION[network]]) + scriptpubkey[3:23]
        return base58.b58encode_check(payload).decode("ascii")

    # P2SH
    if (
        len(scriptpubkey) == 23
        and scriptpubkey[0] == 0xA9
        and scriptpubkey[1] == 0x14
        and scriptpubkey[22] == 0x87
    ):
        payload = bytes([P2SH_VERSION[network]]) + scriptpubkey[2:22]
        return base58.b58encode_check(payload).decode("ascii")

    raise ValueError(f"Unsupported scriptPubKey: {scriptpubkey.hex()}")


# =============================================================================
# Size and Fee Estimation
# =============================================================================


def input_weight(script_type: ScriptType) -> int:
    """
    Weight units consumed by one input spending the given script type.

    Assumes a 72-byte DER signature and a 33-byte compressed public key.
    """
    match script_type:
        case ScriptType.LEGACY:
            # outpoint 36 + len 1 + scriptSig 107 + sequence 4, all non-witness
            return 148 * 4
        case ScriptType.WRAPPED_SEGWIT:
            # 41 base + 23-byte scriptSig push, witness: count + sig + pubkey
            return 64 * 4 + 108
        case ScriptType.NATIVE_SEGWIT:
            return 41 * 4 + 108
        case _:
            assert_never(script_type)


def output_size(output_type: str) -> int:
    """Serialized size in bytes of an output of the given address type."""
    try:
        return OUTPUT_SIZES[output_type]
    except KeyError as e:
        raise ValueError(f"Unknown output type: {output_type}") from e


def estimate_vsize(input_types: Sequence[ScriptType], output_types: Sequence[str]) -> int:
    """
    Estimate the virtual size of a transaction.

    Args:
        input_types: Script type of every input
        output_types: Address type of every output ("p2pkh", "p2wpkh", ...)

    Returns:
        Virtual size in vbytes (weight / 4, rounded up)
    """
    weight = TX_BASE_WEIGHT
    weight += 4 * (len(encode_varint(len(input_types))) + len(encode_varint(len(output_types))))
    if any(t.is_segwit for t in input_types):
        weight += SEGWIT_MARKER_WEIGHT
        # Non-witness inputs still carry an empty witness stack (one 0x00 byte)
        weight += sum(1 for t in input_types if not t.is_segwit)
    weight += sum(input_weight(t) for t in input_types)
    weight += 4 * sum(output_size(t) for t in output_types)
    return -(-weight // 4)


def calculate_fee(vsize: int, fee_rate: Decimal) -> int:
    """
    Fee in satoshis for a transaction of the given vsize.

    Rounds up so that the effective rate never falls below fee_rate.
    """
    fee = (Decimal(vsize) * fee_rate).to_integral_value(rounding=ROUND_CEILING)
    return int(fee)


# =============================================================================
# Transaction Serialization/Parsing
# =============================================================================


@dataclass
class ParsedTransaction:
    """Parsed Bitcoin transaction."""

    version: int
    inputs: list[dict[str, Any]]
    outputs: list[dict[str, Any]]
    witnesses: list[list[bytes]]
    locktime: int
    has_witness: bool


def parse_transaction(tx_hex: str) -> ParsedTransaction:
    """
    Parse a Bitcoin transaction from hex.

    Handles both SegWit and non-SegWit formats.

    Raises:
        ValueError: If the data is truncated or malformed
    """
    try:
        tx_bytes = bytes.fromhex(tx_hex)
    except ValueError as e:
        raise ValueError("Transaction is not valid hex") from e

    try:
        return _parse_transaction_bytes(tx_bytes)
    except (IndexError, struct.error) as e:
        raise ValueError("Transaction data is truncated") from e


def _parse_transaction_bytes(tx_bytes: bytes) -> ParsedTransaction:
    offset = 0

    version = struct.unpack("<I", tx_bytes[offset : offset + 4])[0]
    offset += 4

    # Check for SegWit marker
    marker = tx_bytes[offset]
    flag = tx_bytes[offset + 1]
    has_witness = marker == 0x00 and flag == 0x01
    if has_witness:
        offset += 2

    input_count, offset = decode_varint(tx_bytes, offset)
    inputs = []
    for _ in range(input_count):
        txid = tx_bytes[offset : offset + 32][::-1].hex()
        offset += 32
        vout = struct.unpack("<I", tx_bytes[offset : offset + 4])[0]
        offset += 4
        script_len, offset = decode_varint(tx_bytes, offset)
        scriptsig = tx_bytes[offset : offset + script_len].hex()
        offset += script_len
        sequence = struct.unpack("<I", tx_bytes[offset : offset + 4])[0]
        offset += 4
        inputs.append({"txid": txid, "vout": vout, "scriptsig": scriptsig, "sequence": sequence})

    output_count, offset = decode_varint(tx_bytes, offset)
    outputs = []
    for _ in range(output_count):
        value = struct.unpack("<Q", tx_bytes[offset : offset + 8])[0]
        offset += 8
        script_len, offset = decode_varint(tx_bytes, offset)
        scriptpubkey = tx_bytes[offset : offset + script_len].hex()
        offset += script_len
        outputs.append({"value": value, "scriptpubkey": scriptpubkey})

    witnesses: list[list[bytes]] = []
    if has_witness:
        for _ in range(input_count):
            wit_count, offset = decode_varint(tx_bytes, offset)
            wit_items = []
            for _ in range(wit_count):
                item_len, offset = decode_varint(tx_bytes, offset)
                wit_items.append(tx_bytes[offset : offset + item_len])
                offset += item_len
            witnesses.append(wit_items)

    locktime = struct.unpack("<I", tx_bytes[offset : offset + 4])[0]
    if offset + 4 != len(tx_bytes):
        raise ValueError(f"Unexpected trailing data after locktime ({len(tx_bytes) - offset - 4} bytes)")

    return ParsedTransaction(
        version=version,
        inputs=inputs,
        outputs=outputs,
        witnesses=witnesses,
        locktime=locktime,
        has_witness=has_witness,
    )


def serialize_transaction(
    version: int,
    inputs: list[dict[str, Any]],
    outputs: list[dict[str, Any]],
    locktime: int,
    witnesses: list[list[bytes]] | None = None,
) -> bytes:
    """
    Serialize a Bitcoin transaction.

    Args:
        version: Transaction version
        inputs: List of input dicts (txid, vout, scriptsig, sequence)
        outputs: List of output dicts (value, scriptpubkey)
        locktime: Transaction locktime
        witnesses: Optional list of witness stacks

    Returns:
        Serialized transaction bytes
    """
    has_witness = witnesses is not None and any(w for w in witnesses)

    result = struct.pack("<I", version)

    if has_witness:
        result += bytes([0x00, 0x01])  # SegWit marker and flag

    result += encode_varint(len(inputs))
    for inp in inputs:
        result += bytes.fromhex(inp["txid"])[::-1]
        result += struct.pack("<I", inp["vout"])
        scriptsig = bytes.fromhex(inp.get("scriptsig", ""))
        result += encode_varint(len(scriptsig))
        result += scriptsig
        result += struct.pack("<I", inp.get("sequence", 0xFFFFFFFF))

    result += encode_varint(len(outputs))
    for out in outputs:
        result += struct.pack("<Q", out["value"])
        scriptpubkey = bytes.fromhex(out["scriptpubkey"])
        result += encode_varint(len(scriptpubkey))
        result += scriptpubkey

    if has_witness and witnesses:
        for witness in witnesses:
            result += encode_varint(len(witness))
            for item in witness:
                result += encode_varint(len(item))
                result += item

    result += struct.pack("<I", locktime)
    return result


def get_txid(tx_hex: str) -> str:
    """
    Calculate transaction ID (double SHA256 of non-witness data).

    Args:
        tx_hex: Transaction hex

    Returns:
        Transaction ID as hex string (RPC byte order)
    """
    parsed = parse_transaction(tx_hex)

    data = serialize_transaction(
        version=parsed.version,
        inputs=parsed.inputs,
        outputs=parsed.outputs,
        locktime=parsed.locktime,
        witnesses=None,
    )

    return hash256(data)[::-1].hex()
