"""
Read-only wallet commands: key-info, utxos, fees.
"""

from __future__ import annotations

import asyncio
from typing import Annotated

import typer
from loguru import logger

from kkcore.bitcoin import format_amount
from kkcore.cli_common import ResolvedBackendSettings, resolve_backend_settings, setup_cli
from kkcore.constants import BITCOIN_ASSET_ID
from kkcore.models import NetworkType
from kkwallet.backends.mempool import MempoolBackend
from kkwallet.cli import app
from kkwallet.errors import WalletError
from kkwallet.wallet.keys import EXTERNAL_CHAIN, INTERNAL_CHAIN, ExtendedKey, KeyRegistry
from kkwallet.wallet.models import Utxo

XpubOption = Annotated[
    list[str] | None,
    typer.Option(
        "--xpub",
        "-x",
        help="Account extended public key (xpub/ypub/zpub); repeat for several accounts",
    ),
]


def load_registry(xpubs: list[str] | None, network: NetworkType) -> KeyRegistry:
    """Parse extended keys into a registry, exiting with an error on bad input."""
    if not xpubs:
        logger.error("At least one --xpub is required")
        raise typer.Exit(1)

    registry = KeyRegistry()
    try:
        for xpub in xpubs:
            registry.register(ExtendedKey.parse(xpub.strip(), network))
    except ValueError as e:
        logger.error(f"Invalid extended key: {e}")
        raise typer.Exit(1)
    return registry


def make_backend(settings: ResolvedBackendSettings) -> MempoolBackend:
    return MempoolBackend(
        base_url=settings.mempool_url,
        network=settings.network,
        gap_limit=settings.gap_limit,
        timeout=settings.http_timeout,
    )


@app.command("key-info")
def key_info(
    xpub: Annotated[str, typer.Argument(help="Account extended public key")],
    network: Annotated[str | None, typer.Option("--network", "-n", help="Bitcoin network")] = None,
    count: Annotated[int, typer.Option("--count", "-c", help="Addresses to show per chain")] = 3,
    log_level: Annotated[str | None, typer.Option("--log-level", "-l", help="Log level")] = None,
) -> None:
    """Show script type, derivation path and first addresses of an extended key."""
    settings = setup_cli(log_level)
    resolved_network = NetworkType(network) if network else settings.network_config.network

    try:
        key = ExtendedKey.parse(xpub.strip(), resolved_network)
    except ValueError as e:
        logger.error(f"Invalid extended key: {e}")
        raise typer.Exit(1)

    print(f"\nScript type:      {key.script_type}")
    print(f"Network:          {key.network.value}")
    print(f"Account path:     {key.derivation_path}")
    print(f"Fingerprint:      {key.fingerprint.hex()}")
    print(f"Parent FP:        {key.parent_fingerprint.hex()}")

    for label, chain in (("Receive", EXTERNAL_CHAIN), ("Change", INTERNAL_CHAIN)):
        print(f"\n{label} addresses:")
        for index in range(count):
            print(f"  {key.child_path(chain, index):<28} {key.address(chain, index)}")


@app.command()
def utxos(
    xpubs: XpubOption = None,
    network: Annotated[str | None, typer.Option("--network", "-n", help="Bitcoin network")] = None,
    mempool_url: Annotated[
        str | None, typer.Option("--mempool-url", envvar="MEMPOOL_URL", help="Mempool API URL")
    ] = None,
    gap_limit: Annotated[
        int | None, typer.Option("--gap-limit", "-g", help="Unused address gap limit")
    ] = None,
    log_level: Annotated[str | None, typer.Option("--log-level", "-l", help="Log level")] = None,
) -> None:
    """List unspent outputs of the given extended keys."""
    settings = setup_cli(log_level)
    backend_settings = resolve_backend_settings(
        settings, network=network, mempool_url=mempool_url, gap_limit=gap_limit
    )
    registry = load_registry(xpubs, backend_settings.network)

    try:
        found = asyncio.run(_list_utxos(registry, backend_settings))
    except WalletError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    min_conf = settings.selection.min_confirmations
    if not found:
        print("\nNo UTXOs found")
        return

    print(f"\n{'Outpoint':<70} {'Type':<12} {'Conf':>6} {'Value':>14}  Path")
    print("-" * 120)
    for utxo in found:
        marker = "" if utxo.confirmations >= min_conf else " (unconfirmed)"
        print(
            f"{str(utxo.outpoint):<70} {utxo.script_type:<12} {utxo.confirmations:>6} "
            f"{utxo.value:>14,}  {utxo.path}{marker}"
        )
    print("-" * 120)
    print(f"Total: {format_amount(sum(u.value for u in found))} in {len(found)} UTXO(s)")


async def _list_utxos(registry: KeyRegistry, backend_settings: ResolvedBackendSettings) -> list[Utxo]:
    backend = make_backend(backend_settings)
    try:
        results = await asyncio.gather(*(backend.list_unspent(key) for key in registry))
    finally:
        await backend.close()
    return [u for key_utxos in results for u in key_utxos]


@app.command()
def fees(
    network: Annotated[str | None, typer.Option("--network", "-n", help="Bitcoin network")] = None,
    mempool_url: Annotated[
        str | None, typer.Option("--mempool-url", envvar="MEMPOOL_URL", help="Mempool API URL")
    ] = None,
    log_level: Annotated[str | None, typer.Option("--log-level", "-l", help="Log level")] = None,
) -> None:
    """Show current slow / medium / fast fee-rate estimates."""
    settings = setup_cli(log_level)
    backend_settings = resolve_backend_settings(settings, network=network, mempool_url=mempool_url)

    async def _fetch() -> None:
        backend = make_backend(backend_settings)
        try:
            rates = await backend.get_fee_rates(BITCOIN_ASSET_ID)
        finally:
            await backend.close()
        print(f"\nFee rates ({backend_settings.network.value}, sat/vB):")
        print(f"  slow:   {rates.slow}")
        print(f"  medium: {rates.medium}")
        print(f"  fast:   {rates.fast}")

    try:
        asyncio.run(_fetch())
    except WalletError as e:
        logger.error(str(e))
        raise typer.Exit(1)
