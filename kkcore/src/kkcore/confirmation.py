"""
Pre-signing review of a send.

The host shows what it is about to hand to the device; the device shows the
same outputs again on its own screen before signing.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from decimal import Decimal

from kkcore.bitcoin import format_amount
from kkcore.models import ScriptType

RULE = "-" * 72


@dataclass(frozen=True)
class SpentInput:
    outpoint: str
    script_type: ScriptType
    value: int
    confirmations: int = 0


@dataclass(frozen=True)
class PaidOutput:
    address: str
    amount: int
    is_change: bool = False
    derivation_path: str | None = None


@dataclass(frozen=True)
class SendSummary:
    """Everything the user approves before the device is involved."""

    inputs: tuple[SpentInput, ...]
    outputs: tuple[PaidOutput, ...]
    fee: int
    fee_rate: Decimal
    vsize: int
    drain: bool = False
    folded_change: int = 0
    network: str = "mainnet"

    @property
    def total_in(self) -> int:
        return sum(i.value for i in self.inputs)

    @property
    def script_types(self) -> list[ScriptType]:
        seen: list[ScriptType] = []
        for spent in self.inputs:
            if spent.script_type not in seen:
                seen.append(spent.script_type)
        return seen


def is_interactive_mode() -> bool:
    """
    Check if we're running in interactive mode.

    Returns False if NO_INTERACTIVE env var is set or if not attached to a TTY.
    """
    if os.environ.get("NO_INTERACTIVE"):
        return False
    return sys.stdin.isatty() and sys.stdout.isatty()


def render_send_summary(summary: SendSummary) -> list[str]:
    """Lines of the review screen, without the prompt."""
    title = "SEND ALL FUNDS" if summary.drain else "SEND"
    lines = [RULE, f"{title} ({summary.network})", RULE]

    types = ", ".join(str(t) for t in summary.script_types)
    lines.append(f"Spending {len(summary.inputs)} input(s) [{types}], {format_amount(summary.total_in)}")
    for spent in summary.inputs:
        conf = "unconfirmed" if spent.confirmations == 0 else f"{spent.confirmations} conf"
        lines.append(f"  {spent.outpoint}  {spent.script_type:<12} {format_amount(spent.value)}  ({conf})")

    lines.append("Paying:")
    for paid in summary.outputs:
        label = "change" if paid.is_change else "to"
        lines.append(f"  {label:<7}{paid.address}  {format_amount(paid.amount)}")
        if paid.is_change and paid.derivation_path:
            lines.append(f"         at {paid.derivation_path}")

    lines.append(f"Fee: {format_amount(summary.fee)} ({summary.fee_rate} sat/vB, ~{summary.vsize} vB)")
    if summary.folded_change:
        lines.append(f"     includes {format_amount(summary.folded_change)} of change below dust")
    lines.append(RULE)
    return lines


def confirm_send(summary: SendSummary, skip_confirmation: bool = False) -> bool:
    """
    Show the review screen and ask the user to approve the send.

    Raises:
        RuntimeError: If in non-interactive mode without skip_confirmation
    """
    if skip_confirmation:
        return True

    if not is_interactive_mode():
        raise RuntimeError(
            "Cannot prompt for confirmation in non-interactive mode. "
            "Use --yes flag to skip confirmation."
        )

    print()
    print("\n".join(render_send_summary(summary)))
    print("The KeepKey will show each output again before it signs.")

    try:
        return input("Continue to the device? [y/N]: ").strip().lower() in ("y", "yes")
    except (KeyboardInterrupt, EOFError):
        print("\nSend cancelled.")
        return False
