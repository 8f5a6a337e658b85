"""
Extended public key registry.

Keys come from the device as SLIP-132 encoded extended public keys
(xpub/ypub/zpub and their testnet counterparts). The version prefix tells
which script type the account uses. Only public (non-hardened) derivation is
ever done here; the registry never sees private keys.
"""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Iterator

import base58
from coincurve import PublicKey
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from kkcore.bitcoin import hash160, pubkey_to_address
from kkcore.models import NetworkType, ScriptType
from kkwallet.wallet.models import HARDENED, format_derivation_path, parse_derivation_path

# SLIP-132 version bytes: (mainnet, testnet) per script type
SLIP132_VERSIONS: dict[ScriptType, tuple[bytes, bytes]] = {
    ScriptType.LEGACY: (bytes.fromhex("0488b21e"), bytes.fromhex("043587cf")),  # xpub / tpub
    ScriptType.WRAPPED_SEGWIT: (bytes.fromhex("049d7cb2"), bytes.fromhex("044a5262")),  # ypub / upub
    ScriptType.NATIVE_SEGWIT: (bytes.fromhex("04b24746"), bytes.fromhex("045f1cf6")),  # zpub / vpub
}

EXTERNAL_CHAIN = 0
INTERNAL_CHAIN = 1


def slip132_version(script_type: ScriptType, network: NetworkType) -> bytes:
    mainnet, testnet = SLIP132_VERSIONS[script_type]
    return mainnet if network is NetworkType.MAINNET else testnet


def _lookup_version(version: bytes) -> tuple[ScriptType, bool]:
    """Return (script type, is_mainnet) for a SLIP-132 version prefix."""
    for script_type, (mainnet, testnet) in SLIP132_VERSIONS.items():
        if version == mainnet:
            return script_type, True
        if version == testnet:
            return script_type, False
    raise ValueError(f"Unknown extended key version: {version.hex()}")


def derive_public_child(public_key: bytes, chain_code: bytes, index: int) -> tuple[bytes, bytes]:
    """
    BIP32 CKDpub: derive a non-hardened child public key.

    Args:
        public_key: 33-byte compressed parent public key
        chain_code: 32-byte parent chain code
        index: Child index (must be < 2^31)

    Returns:
        (child public key, child chain code)
    """
    if index >= HARDENED:
        raise ValueError("Cannot derive hardened child from a public key")

    digest = hmac.new(chain_code, public_key + index.to_bytes(4, "big"), hashlib.sha512).digest()
    tweak, child_chain = digest[:32], digest[32:]
    # coincurve rejects tweaks >= n and results at infinity, both invalid per BIP32
    child = PublicKey(public_key).add(tweak)
    return child.format(compressed=True), child_chain


class ExtendedKey(BaseModel):
    """
    An account-level extended public key tagged with its script type.

    Build it with ExtendedKey.parse() from the SLIP-132 string, or with
    ExtendedKey.from_node() from raw node fields as returned by the device.
    """

    model_config = ConfigDict(frozen=True)

    xpub: str
    derivation_path: str
    script_type: ScriptType
    network: NetworkType
    depth: int = Field(ge=0, le=255)
    parent_fingerprint: bytes = Field(min_length=4, max_length=4)
    child_number: int
    chain_code: bytes = Field(min_length=32, max_length=32)
    public_key: bytes = Field(min_length=33, max_length=33)

    @classmethod
    def parse(
        cls,
        xpub: str,
        network: NetworkType | str | None = None,
        derivation_path: str | None = None,
    ) -> ExtendedKey:
        """
        Decode a SLIP-132 extended public key.

        Args:
            xpub: xpub/ypub/zpub (mainnet) or tpub/upub/vpub (test networks)
            network: Expected network. Test-network prefixes are shared by
                testnet, signet and regtest, so this picks among them.
            derivation_path: Account path override. Defaults to the standard
                template for the script type with the account from the key.

        Raises:
            ValueError: If the string is not a valid extended public key or
                does not belong to the given network
        """
        try:
            raw = base58.b58decode_check(xpub)
        except ValueError as e:
            raise ValueError(f"Invalid extended key checksum: {e}") from e

        if len(raw) != 78:
            raise ValueError(f"Invalid extended key length: {len(raw)}")

        script_type, is_mainnet = _lookup_version(raw[:4])
        depth = raw[4]
        parent_fingerprint = raw[5:9]
        child_number = int.from_bytes(raw[9:13], "big")
        chain_code = raw[13:45]
        public_key = raw[45:78]

        if public_key[0] not in (0x02, 0x03):
            raise ValueError("Extended key does not hold a compressed public key")

        if network is None:
            resolved_network = NetworkType.MAINNET if is_mainnet else NetworkType.TESTNET
        else:
            resolved_network = NetworkType(network)
            if (resolved_network is NetworkType.MAINNET) != is_mainnet:
                raise ValueError(
                    f"Extended key prefix {xpub[:4]} does not belong to {resolved_network.value}"
                )

        if derivation_path is None:
            derivation_path = _account_path(script_type, resolved_network, child_number)

        return cls(
            xpub=xpub,
            derivation_path=derivation_path,
            script_type=script_type,
            network=resolved_network,
            depth=depth,
            parent_fingerprint=parent_fingerprint,
            child_number=child_number,
            chain_code=chain_code,
            public_key=public_key,
        )

    @classmethod
    def from_node(
        cls,
        public_key: bytes,
        chain_code: bytes,
        script_type: ScriptType,
        network: NetworkType | str = NetworkType.MAINNET,
        account: int = 0,
        parent_fingerprint: bytes = b"\x00\x00\x00\x00",
    ) -> ExtendedKey:
        """Serialize raw account node fields into a SLIP-132 key and parse it."""
        network = NetworkType(network)
        raw = (
            slip132_version(script_type, network)
            + bytes([3])
            + parent_fingerprint
            + (account + HARDENED).to_bytes(4, "big")
            + chain_code
            + public_key
        )
        return cls.parse(base58.b58encode_check(raw).decode("ascii"), network)

    @property
    def fingerprint(self) -> bytes:
        return hash160(self.public_key)[:4]

    def child_path(self, chain: int, index: int) -> str:
        return f"{self.derivation_path}/{chain}/{index}"

    def derive_public_key(self, chain: int, index: int) -> bytes:
        pub, chain_code = derive_public_child(self.public_key, self.chain_code, chain)
        pub, _ = derive_public_child(pub, chain_code, index)
        return pub

    def address(self, chain: int, index: int) -> str:
        """Address at <account>/<chain>/<index> encoded for this key's script type."""
        return pubkey_to_address(self.derive_public_key(chain, index), self.script_type, self.network)

    def owns_path(self, path: str) -> bool:
        """True if path is <account path>/<chain>/<index> with unhardened chain and index."""
        try:
            account = parse_derivation_path(self.derivation_path)
            full = parse_derivation_path(path)
        except ValueError:
            return False
        if len(full) != len(account) + 2 or full[: len(account)] != account:
            return False
        return all(i < HARDENED for i in full[len(account) :])


def _account_path(script_type: ScriptType, network: NetworkType, child_number: int) -> str:
    account = child_number - HARDENED if child_number >= HARDENED else child_number
    return format_derivation_path(
        [script_type.purpose + HARDENED, network.coin_type + HARDENED, account + HARDENED]
    )


class KeyRegistry:
    """
    Extended public keys known to the wallet, in registration order.

    Never holds private keys.
    """

    def __init__(self, keys: list[ExtendedKey] | None = None):
        self._keys: dict[str, ExtendedKey] = {}
        for key in keys or []:
            self.register(key)

    def register(self, key: ExtendedKey) -> None:
        if key.xpub in self._keys:
            raise ValueError(f"Extended key already registered: {key.xpub[:16]}...")
        networks = {k.network for k in self._keys.values()}
        if networks and key.network not in networks:
            raise ValueError(f"Cannot mix networks: {key.network.value} vs {networks.pop().value}")
        self._keys[key.xpub] = key
        logger.debug(f"Registered {key.script_type} key at {key.derivation_path}")

    def get(self, xpub: str) -> ExtendedKey | None:
        return self._keys.get(xpub)

    def by_script_type(self, script_type: ScriptType) -> list[ExtendedKey]:
        return [k for k in self._keys.values() if k.script_type is script_type]

    def change_key(self) -> ExtendedKey:
        """
        Key that receives change.

        Native segwit when registered, otherwise the first registered key.
        """
        if not self._keys:
            raise ValueError("No extended keys registered")
        native = self.by_script_type(ScriptType.NATIVE_SEGWIT)
        if native:
            return native[0]
        return next(iter(self._keys.values()))

    @property
    def network(self) -> NetworkType | None:
        first = next(iter(self._keys.values()), None)
        return first.network if first else None

    def __iter__(self) -> Iterator[ExtendedKey]:
        return iter(self._keys.values())

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, xpub: object) -> bool:
        return xpub in self._keys
