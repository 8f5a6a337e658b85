"""
Send transaction command.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal, InvalidOperation
from typing import Annotated

import typer
from loguru import logger

from kkcore.bitcoin import format_amount
from kkcore.cli_common import (
    ResolvedBackendSettings,
    ResolvedSigningSettings,
    log_resolved_settings,
    resolve_backend_settings,
    resolve_signing_settings,
    setup_cli,
)
from kkcore.confirmation import PaidOutput, SendSummary, SpentInput, confirm_send
from kkcore.models import FeeTier
from kkcore.settings import KeepKeyVaultSettings
from kkwallet.broadcast import Broadcaster
from kkwallet.cli import app
from kkwallet.cli.wallet import XpubOption, load_registry, make_backend
from kkwallet.errors import SigningError, WalletError
from kkwallet.signing.authority import BridgeAuthority
from kkwallet.signing.coordinator import SigningCoordinator
from kkwallet.signing.session import (
    ChallengeDeclined,
    ChallengeKind,
    ChallengeResolved,
    SessionEvent,
    SessionEventKind,
)
from kkwallet.wallet.assembler import TransactionAssembler
from kkwallet.wallet.coin_selection import CoinSelector
from kkwallet.wallet.keys import KeyRegistry
from kkwallet.wallet.service import PreparedSend, SendRequest, SendService

PIN_MATRIX_HELP = """
Enter the PIN using the scrambled layout shown on your KeepKey.
Type the position of each digit as on a numeric keypad:
    7 8 9
    4 5 6
    1 2 3
Leave empty to cancel."""


@app.command()
def send(
    destination: Annotated[str, typer.Argument(help="Destination address")],
    amount: Annotated[
        int | None, typer.Option("--amount", "-a", help="Amount in sats")
    ] = None,
    send_max: Annotated[
        bool, typer.Option("--max", help="Send all confirmed funds (no change output)")
    ] = False,
    xpubs: XpubOption = None,
    fee_tier: Annotated[
        FeeTier | None,
        typer.Option("--fee-tier", help="Fee estimate tier. Defaults to the configured tier."),
    ] = None,
    fee_rate: Annotated[
        str | None,
        typer.Option(
            "--fee-rate",
            help="Manual fee rate in sat/vB (e.g. 1.5). Mutually exclusive with --fee-tier.",
        ),
    ] = None,
    network: Annotated[str | None, typer.Option("--network", "-n", help="Bitcoin network")] = None,
    mempool_url: Annotated[
        str | None, typer.Option("--mempool-url", envvar="MEMPOOL_URL", help="Mempool API URL")
    ] = None,
    bridge_url: Annotated[
        str | None,
        typer.Option("--bridge-url", envvar="KEEPKEY_BRIDGE_URL", help="KeepKey bridge URL"),
    ] = None,
    broadcast: Annotated[
        bool, typer.Option("--broadcast/--no-broadcast", help="Broadcast the signed transaction")
    ] = True,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")] = False,
    log_level: Annotated[str | None, typer.Option("--log-level", "-l", help="Log level")] = None,
) -> None:
    """Send bitcoin from the KeepKey accounts given by --xpub."""
    settings = setup_cli(log_level)

    if fee_rate is not None and fee_tier is not None:
        logger.error("Cannot specify both --fee-rate and --fee-tier")
        raise typer.Exit(1)
    if send_max == (amount is not None):
        logger.error("Specify exactly one of --amount and --max")
        raise typer.Exit(1)

    manual_rate: Decimal | None = None
    if fee_rate is not None:
        try:
            manual_rate = Decimal(fee_rate)
        except InvalidOperation:
            logger.error(f"Invalid fee rate: {fee_rate}")
            raise typer.Exit(1)

    try:
        request = SendRequest(
            destination=destination.strip(),
            amount=amount,
            send_max=send_max,
            fee_tier=fee_tier or settings.selection.default_fee_tier,
            fee_rate=manual_rate,
        )
    except ValueError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    backend_settings = resolve_backend_settings(settings, network=network, mempool_url=mempool_url)
    signing_settings = resolve_signing_settings(settings, bridge_url=bridge_url)
    log_resolved_settings(backend_settings, signing_settings)
    registry = load_registry(xpubs, backend_settings.network)

    try:
        asyncio.run(
            _send_transaction(
                request,
                registry,
                settings,
                backend_settings,
                signing_settings,
                broadcast,
                yes,
            )
        )
    except WalletError as e:
        logger.error(f"{e.kind}: {e}")
        raise typer.Exit(1)


def send_summary(prepared: PreparedSend, drain: bool, network: str) -> SendSummary:
    """Review screen contents for a built send."""
    selection = prepared.selection
    return SendSummary(
        inputs=tuple(
            SpentInput(str(u.outpoint), u.script_type, u.value, u.confirmations)
            for u in selection.inputs
        ),
        outputs=tuple(
            PaidOutput(o.address, o.amount, o.is_change, o.derivation_path)
            for o in selection.outputs
        ),
        fee=selection.fee,
        fee_rate=selection.fee_rate,
        vsize=selection.vsize,
        drain=drain,
        folded_change=selection.folded_change,
        network=network,
    )


async def _send_transaction(
    request: SendRequest,
    registry: KeyRegistry,
    settings: KeepKeyVaultSettings,
    backend_settings: ResolvedBackendSettings,
    signing_settings: ResolvedSigningSettings,
    broadcast: bool,
    skip_confirmation: bool,
) -> None:
    """Send transaction implementation."""
    backend = make_backend(backend_settings)
    authority = BridgeAuthority(signing_settings.bridge_url)
    coordinator = SigningCoordinator(
        authority,
        session_timeout=signing_settings.session_timeout,
        cancel_timeout=signing_settings.cancel_timeout,
        max_pin_attempts=signing_settings.max_pin_attempts,
    )
    service = SendService(
        keys=registry,
        backend=backend,
        selector=CoinSelector(
            dust_threshold=settings.selection.dust_threshold,
            min_confirmations=settings.selection.min_confirmations,
        ),
        assembler=TransactionAssembler(
            backend,
            version=settings.transaction.version,
            locktime=settings.transaction.locktime,
            coin_name=settings.transaction.coin_name,
        ),
        coordinator=coordinator,
        broadcaster=Broadcaster(backend),
        min_fee_rate=settings.selection.min_fee_rate,
    )

    try:
        prepared = await service.build(request)
        selection = prepared.selection

        logger.info(f"Sending {format_amount(prepared.send_amount)} to {request.destination}")
        logger.info(f"Fee: {format_amount(prepared.fee)} ({selection.fee_rate} sat/vB)")
        if prepared.change_amount:
            logger.info(f"Change: {format_amount(prepared.change_amount)}")

        try:
            confirmed = confirm_send(
                send_summary(prepared, request.send_max, backend_settings.network.value),
                skip_confirmation=skip_confirmation,
            )
        except RuntimeError as e:
            logger.error(str(e))
            raise typer.Exit(1)
        if not confirmed:
            logger.info("Transaction cancelled by user")
            return

        events = coordinator.subscribe()
        session = coordinator.start(prepared.unsigned)
        prompter = asyncio.create_task(
            _answer_challenges(coordinator, events, session.session_id)
        )
        try:
            finished = await session.result()
        finally:
            prompter.cancel()
            await asyncio.gather(prompter, return_exceptions=True)
            coordinator.unsubscribe(events)

        logger.info(f"Transaction signed: {finished.txid}")
        if not broadcast:
            print("\nSigned transaction (not broadcast):")
            print(finished.raw_hex)
            return

        txid = await service.broadcast(finished)
        print(f"\nTransaction broadcast: {txid}")
    finally:
        await coordinator.close()
        await backend.close()


async def _answer_challenges(
    coordinator: SigningCoordinator,
    events: asyncio.Queue[SessionEvent],
    session_id: str,
) -> None:
    """Bridge device challenges and progress to the terminal."""
    while True:
        event = await events.get()
        if event.session_id != session_id:
            continue

        match event.kind:
            case SessionEventKind.CHALLENGE_REQUESTED if event.challenge is not None:
                secret = await asyncio.to_thread(_prompt_secret, event.challenge)
                try:
                    if secret:
                        coordinator.resolve_challenge(
                            ChallengeResolved(session_id, event.challenge, secret)
                        )
                    else:
                        coordinator.decline_challenge(ChallengeDeclined(session_id, event.challenge))
                except SigningError as e:
                    logger.debug(f"Challenge answer not delivered: {e}")
            case SessionEventKind.CHALLENGE_REJECTED:
                print("Incorrect PIN, try again.")
            case SessionEventKind.AWAITING_USER_CONFIRMATION:
                print("\nConfirm the transaction on your KeepKey...")
            case _:
                pass


def _prompt_secret(kind: ChallengeKind) -> str:
    if kind is ChallengeKind.PIN:
        print(PIN_MATRIX_HELP)
        return typer.prompt("PIN", default="", show_default=False, hide_input=True)
    return typer.prompt(
        "Passphrase (leave empty to cancel)", default="", show_default=False, hide_input=True
    )
