"""
Tests for extended public keys and the key registry.
"""

from __future__ import annotations

import hashlib
import hmac

import pytest
from coincurve import PrivateKey

from kkcore.models import NetworkType, ScriptType
from kkwallet.wallet.keys import (
    EXTERNAL_CHAIN,
    INTERNAL_CHAIN,
    ExtendedKey,
    KeyRegistry,
    derive_public_child,
)
from kkwallet.wallet.models import HARDENED, format_derivation_path, parse_derivation_path

# BIP84 test vector account key (mnemonic "abandon ... about")
BIP84_ZPUB = (
    "zpub6rFR7y4Q2AijBEqTUquhVz398htDFrtymD9xYYfG1m4wAcvPhXNfE3EfH1r1ADqtfSdVCToUG868RvUUkgDKf31mGDtKsAYz2oz2AGutZYs"
)


class TestDerivationPaths:
    def test_parse_hardened_markers(self) -> None:
        assert parse_derivation_path("m/84'/0'/0'/1/3") == [
            84 + HARDENED,
            HARDENED,
            HARDENED,
            1,
            3,
        ]
        assert parse_derivation_path("m/49h/1h/2h") == [49 + HARDENED, 1 + HARDENED, 2 + HARDENED]

    def test_format_round_trip(self) -> None:
        path = "m/44'/0'/5'/0/17"
        assert format_derivation_path(parse_derivation_path(path)) == path

    @pytest.mark.parametrize("path", ["84'/0'", "m/x", "m/2147483648"])
    def test_rejects_invalid(self, path: str) -> None:
        with pytest.raises(ValueError):
            parse_derivation_path(path)


class TestPublicDerivation:
    def test_matches_private_derivation(self, account_secret, chain_code: bytes) -> None:
        """CKDpub of the public key equals the public key of CKDpriv."""
        secret = account_secret(ScriptType.NATIVE_SEGWIT)
        parent = PrivateKey(secret)
        parent_pub = parent.public_key.format(compressed=True)

        for index in (0, 1, 7, 1000):
            digest = hmac.new(
                chain_code, parent_pub + index.to_bytes(4, "big"), hashlib.sha512
            ).digest()
            child_priv = parent.add(digest[:32])

            child_pub, child_chain = derive_public_child(parent_pub, chain_code, index)

            assert child_pub == child_priv.public_key.format(compressed=True)
            assert child_chain == digest[32:]

    def test_rejects_hardened_index(self, native_key: ExtendedKey) -> None:
        with pytest.raises(ValueError, match="hardened"):
            derive_public_child(native_key.public_key, native_key.chain_code, HARDENED)


class TestExtendedKeyParse:
    def test_bip84_vector(self) -> None:
        key = ExtendedKey.parse(BIP84_ZPUB)

        assert key.script_type is ScriptType.NATIVE_SEGWIT
        assert key.network is NetworkType.MAINNET
        assert key.derivation_path == "m/84'/0'/0'"
        assert key.depth == 3
        assert key.address(EXTERNAL_CHAIN, 0) == "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"
        assert key.address(INTERNAL_CHAIN, 0) == "bc1q8c6fshw2dlwun7ekn9qwf37cu2rn755upcp6el"

    @pytest.mark.parametrize(
        "script_type,prefix,purpose",
        [
            (ScriptType.LEGACY, "xpub", 44),
            (ScriptType.WRAPPED_SEGWIT, "ypub", 49),
            (ScriptType.NATIVE_SEGWIT, "zpub", 84),
        ],
    )
    def test_script_type_from_prefix(
        self, account_secret, chain_code: bytes, script_type: ScriptType, prefix: str, purpose: int
    ) -> None:
        public_key = PrivateKey(account_secret(script_type)).public_key.format(compressed=True)
        key = ExtendedKey.from_node(public_key, chain_code, script_type, account=2)

        assert key.xpub.startswith(prefix)
        parsed = ExtendedKey.parse(key.xpub)
        assert parsed.script_type is script_type
        assert parsed.derivation_path == f"m/{purpose}'/0'/2'"

    def test_testnet_prefixes(self, account_secret, chain_code: bytes) -> None:
        public_key = PrivateKey(account_secret(ScriptType.NATIVE_SEGWIT)).public_key.format()
        key = ExtendedKey.from_node(
            public_key, chain_code, ScriptType.NATIVE_SEGWIT, NetworkType.TESTNET
        )

        assert key.xpub.startswith("vpub")
        assert key.derivation_path == "m/84'/1'/0'"
        assert key.address(0, 0).startswith("tb1q")

    def test_network_mismatch(self) -> None:
        with pytest.raises(ValueError, match="does not belong"):
            ExtendedKey.parse(BIP84_ZPUB, NetworkType.TESTNET)

    def test_bad_checksum(self) -> None:
        corrupted = BIP84_ZPUB[:-1] + ("t" if BIP84_ZPUB[-1] != "t" else "u")
        with pytest.raises(ValueError):
            ExtendedKey.parse(corrupted)

    def test_address_types_per_script(
        self, native_key: ExtendedKey, wrapped_key: ExtendedKey, legacy_key: ExtendedKey
    ) -> None:
        assert native_key.address(0, 0).startswith("bc1q")
        assert wrapped_key.address(0, 0).startswith("3")
        assert legacy_key.address(0, 0).startswith("1")


class TestOwnsPath:
    def test_owned_paths(self, native_key: ExtendedKey) -> None:
        assert native_key.owns_path("m/84'/0'/0'/0/5")
        assert native_key.owns_path("m/84'/0'/0'/1/0")

    @pytest.mark.parametrize(
        "path",
        [
            "m/84'/0'/1'/0/5",  # other account
            "m/44'/0'/0'/0/5",  # other purpose
            "m/84'/0'/0'/0",  # too short
            "m/84'/0'/0'/0'/5",  # hardened chain
            "garbage",
        ],
    )
    def test_foreign_paths(self, native_key: ExtendedKey, path: str) -> None:
        assert not native_key.owns_path(path)


class TestKeyRegistry:
    def test_change_key_prefers_native_segwit(
        self, native_key: ExtendedKey, legacy_key: ExtendedKey
    ) -> None:
        registry = KeyRegistry([legacy_key, native_key])
        assert registry.change_key() is native_key

    def test_change_key_falls_back_to_first(
        self, wrapped_key: ExtendedKey, legacy_key: ExtendedKey
    ) -> None:
        registry = KeyRegistry([legacy_key, wrapped_key])
        assert registry.change_key() is legacy_key

    def test_change_key_requires_keys(self) -> None:
        with pytest.raises(ValueError):
            KeyRegistry().change_key()

    def test_rejects_duplicates(self, native_key: ExtendedKey) -> None:
        registry = KeyRegistry([native_key])
        with pytest.raises(ValueError, match="already registered"):
            registry.register(native_key)

    def test_rejects_mixed_networks(self, native_key: ExtendedKey, account_secret, chain_code) -> None:
        public_key = PrivateKey(account_secret(ScriptType.LEGACY)).public_key.format()
        testnet_key = ExtendedKey.from_node(
            public_key, chain_code, ScriptType.LEGACY, NetworkType.TESTNET
        )
        registry = KeyRegistry([native_key])
        with pytest.raises(ValueError, match="mix networks"):
            registry.register(testnet_key)

    def test_lookup(self, registry: KeyRegistry, wrapped_key: ExtendedKey) -> None:
        assert len(registry) == 3
        assert wrapped_key.xpub in registry
        assert registry.get(wrapped_key.xpub) is wrapped_key
        assert registry.by_script_type(ScriptType.WRAPPED_SEGWIT) == [wrapped_key]
        assert registry.network is NetworkType.MAINNET
