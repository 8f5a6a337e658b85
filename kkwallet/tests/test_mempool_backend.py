"""
Tests for the mempool.space backend, against a mocked HTTP transport.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from decimal import Decimal

import httpx
import pytest

from kkcore.constants import BITCOIN_ASSET_ID
from kkcore.models import NetworkType
from kkwallet.backends.mempool import MempoolBackend
from kkwallet.errors import BackendUnavailable, BroadcastRejected
from kkwallet.wallet.keys import EXTERNAL_CHAIN, INTERNAL_CHAIN, ExtendedKey

BASE_URL = "https://mempool.test/api"
TIP_HEIGHT = 800_000


def _stats(tx_count: int) -> dict:
    return {"chain_stats": {"tx_count": tx_count}, "mempool_stats": {"tx_count": 0}}


@pytest.fixture
def chain_state(native_key: ExtendedKey) -> dict:
    """
    Address history for the native key: external 0 and 2 are used, internal 0
    is used but empty.
    """
    used = {
        native_key.address(EXTERNAL_CHAIN, 0): [
            {
                "txid": "aa" * 32,
                "vout": 1,
                "value": 120_000,
                "status": {"confirmed": True, "block_height": TIP_HEIGHT - 5},
            }
        ],
        native_key.address(EXTERNAL_CHAIN, 2): [
            {"txid": "bb" * 32, "vout": 0, "value": 7_000, "status": {"confirmed": False}}
        ],
        native_key.address(INTERNAL_CHAIN, 0): [],
    }
    return {"used": used, "requests": []}


@pytest.fixture
def make_backend(chain_state: dict) -> Callable[..., MempoolBackend]:
    def factory(handler: Callable[[httpx.Request], httpx.Response] | None = None) -> MempoolBackend:
        def default_handler(request: httpx.Request) -> httpx.Response:
            path = request.url.path.removeprefix("/api")
            chain_state["requests"].append(path)
            if path == "/blocks/tip/height":
                return httpx.Response(200, text=str(TIP_HEIGHT))
            if path.startswith("/address/"):
                parts = path.split("/")
                address = parts[2]
                if len(parts) == 4 and parts[3] == "utxo":
                    return httpx.Response(200, json=chain_state["used"].get(address, []))
                return httpx.Response(200, json=_stats(1 if address in chain_state["used"] else 0))
            return httpx.Response(404, text="Not Found")

        return MempoolBackend(
            base_url=BASE_URL + "/",
            network=NetworkType.MAINNET,
            gap_limit=2,
            transport=httpx.MockTransport(handler or default_handler),
        )

    return factory


class TestListUnspent:
    @pytest.mark.asyncio
    async def test_scans_until_gap_limit(self, make_backend, native_key, chain_state) -> None:
        backend = make_backend()

        utxos = await backend.list_unspent(native_key)

        assert [(u.txid, u.vout) for u in utxos] == [("aa" * 32, 1), ("bb" * 32, 0)]
        stats_requests = [
            p for p in chain_state["requests"] if p.startswith("/address/") and not p.endswith("/utxo")
        ]
        # External 0..4 (0 and 2 used, then two unused), internal 0..2
        assert len(stats_requests) == 5 + 3
        await backend.close()

    @pytest.mark.asyncio
    async def test_utxo_metadata(self, make_backend, native_key) -> None:
        backend = make_backend()

        confirmed, unconfirmed = await backend.list_unspent(native_key)

        assert confirmed.confirmations == 6
        assert confirmed.height == TIP_HEIGHT - 5
        assert confirmed.value == 120_000
        assert confirmed.path == "m/84'/0'/0'/0/0"
        assert confirmed.address == native_key.address(0, 0)
        assert confirmed.script_type is native_key.script_type
        assert confirmed.xpub == native_key.xpub
        assert confirmed.scriptpubkey.startswith("0014")
        assert unconfirmed.confirmations == 0
        assert unconfirmed.height is None
        assert unconfirmed.path == "m/84'/0'/0'/0/2"

    @pytest.mark.asyncio
    async def test_unused_key(self, make_backend, wrapped_key) -> None:
        assert await make_backend().list_unspent(wrapped_key) == []

    @pytest.mark.asyncio
    async def test_server_error(self, make_backend, native_key) -> None:
        backend = make_backend(lambda request: httpx.Response(503, text="busy"))

        with pytest.raises(BackendUnavailable):
            await backend.list_unspent(native_key)

    @pytest.mark.asyncio
    async def test_garbage_tip_height(self, make_backend, native_key) -> None:
        backend = make_backend(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(BackendUnavailable, match="tip height"):
            await backend.list_unspent(native_key)


class TestFeeRates:
    @pytest.mark.asyncio
    async def test_tiers(self, make_backend) -> None:
        payload = {"fastestFee": 25, "halfHourFee": 12.5, "hourFee": 4, "economyFee": 2, "minimumFee": 1}
        backend = make_backend(lambda request: httpx.Response(200, json=payload))

        rates = await backend.get_fee_rates(BITCOIN_ASSET_ID)

        assert rates.fast == Decimal("25")
        assert rates.medium == Decimal("12.5")
        assert rates.slow == Decimal("4")

    @pytest.mark.asyncio
    async def test_unsupported_asset(self, make_backend) -> None:
        with pytest.raises(ValueError, match="Unsupported asset"):
            await make_backend().get_fee_rates("eip155:1/slip44:60")

    @pytest.mark.asyncio
    async def test_malformed_response(self, make_backend) -> None:
        backend = make_backend(lambda request: httpx.Response(200, json={"fastestFee": 5}))

        with pytest.raises(BackendUnavailable, match="Malformed"):
            await backend.get_fee_rates(BITCOIN_ASSET_ID)


class TestChangeAddress:
    @pytest.mark.asyncio
    async def test_first_unused_internal_address(self, make_backend, native_key) -> None:
        change = await make_backend().next_change_address(native_key)

        assert change.address == native_key.address(INTERNAL_CHAIN, 1)
        assert change.derivation_path == "m/84'/0'/0'/1/1"
        assert change.script_type is native_key.script_type


class TestRawTransaction:
    @pytest.mark.asyncio
    async def test_fetches_hex(self, make_backend) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            return httpx.Response(200, text="0100000000\n")

        raw = await make_backend(handler).get_raw_transaction("cc" * 32)

        assert raw == "0100000000"
        assert seen == [f"/api/tx/{'cc' * 32}/hex"]


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_success(self, make_backend) -> None:
        posted = []

        def handler(request: httpx.Request) -> httpx.Response:
            posted.append((request.method, request.url.path, request.content.decode()))
            return httpx.Response(200, text="dd" * 32)

        txid = await make_backend(handler).broadcast("0200abcd")

        assert txid == "dd" * 32
        assert posted == [("POST", "/api/tx", "0200abcd")]

    @pytest.mark.asyncio
    async def test_rejection_reason_verbatim(self, make_backend) -> None:
        reason = 'sendrawtransaction RPC error: {"code":-26,"message":"min relay fee not met"}'
        backend = make_backend(lambda request: httpx.Response(400, text=reason + "\n"))

        with pytest.raises(BroadcastRejected) as exc_info:
            await backend.broadcast("0200")

        assert exc_info.value.reason == reason
        assert json.loads(exc_info.value.reason.split(": ", 1)[1])["code"] == -26

    @pytest.mark.asyncio
    async def test_server_error(self, make_backend) -> None:
        backend = make_backend(lambda request: httpx.Response(502, text="bad gateway"))

        with pytest.raises(BackendUnavailable):
            await backend.broadcast("0200")

    @pytest.mark.asyncio
    async def test_connection_error(self, make_backend) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(BackendUnavailable, match="connection refused"):
            await make_backend(handler).broadcast("0200")


class TestDefaults:
    def test_default_url_per_network(self) -> None:
        backend = MempoolBackend(network="testnet")

        assert backend.base_url == "https://mempool.space/testnet/api"
        assert backend.network is NetworkType.TESTNET
