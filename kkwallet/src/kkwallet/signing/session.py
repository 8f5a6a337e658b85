"""
Signing session state, challenges and progress events.
"""

from __future__ import annotations

import asyncio
import uuid
from enum import StrEnum

from pydantic.dataclasses import dataclass

from kkwallet.errors import FailureReason, SigningError
from kkwallet.wallet.models import FinishedTransaction, UnsignedTransaction


class SigningState(StrEnum):
    CREATED = "created"
    DISPATCHED = "dispatched"
    AWAITING_PIN = "awaiting_pin"
    AWAITING_PASSPHRASE = "awaiting_passphrase"
    AWAITING_USER_CONFIRMATION = "awaiting_user_confirmation"
    SIGNED = "signed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SigningState.SIGNED, SigningState.FAILED, SigningState.CANCELLED)


class ChallengeKind(StrEnum):
    PIN = "pin"
    PASSPHRASE = "passphrase"

    @property
    def awaiting_state(self) -> SigningState:
        if self is ChallengeKind.PIN:
            return SigningState.AWAITING_PIN
        return SigningState.AWAITING_PASSPHRASE


class SessionEventKind(StrEnum):
    DISPATCHED = "dispatched"
    AWAITING_PIN = "awaiting_pin"
    AWAITING_PASSPHRASE = "awaiting_passphrase"
    AWAITING_USER_CONFIRMATION = "awaiting_user_confirmation"
    SIGNED = "signed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    CHALLENGE_REQUESTED = "challenge_requested"
    CHALLENGE_REJECTED = "challenge_rejected"


@dataclass(frozen=True)
class SessionEvent:
    """Progress notification for presentation layers and challenge collaborators."""

    kind: SessionEventKind
    session_id: str
    request_id: str
    challenge: ChallengeKind | None = None
    reason: FailureReason | None = None
    message: str | None = None


@dataclass(frozen=True)
class ChallengeResolved:
    session_id: str
    kind: ChallengeKind
    secret: str


@dataclass(frozen=True)
class ChallengeDeclined:
    session_id: str
    kind: ChallengeKind


class Challenge:
    """
    One PIN or passphrase request from the device.

    The driving task awaits ``future``; the answer arrives from outside via
    the coordinator. ``None`` as the result means the user declined.
    """

    def __init__(self, kind: ChallengeKind):
        self.kind = kind
        self.future: asyncio.Future[str | None] = asyncio.get_running_loop().create_future()
        self.answered = False

    def answer(self, secret: str | None) -> None:
        self.answered = True
        self.future.set_result(secret)

    @property
    def is_open(self) -> bool:
        return not self.answered and not self.future.done()


class SigningSession:
    """
    One signing run of an UnsignedTransaction.

    ``request_id`` changes on every dispatch attempt (a wrong PIN restarts the
    exchange). The session is terminal once it reaches SIGNED, FAILED or
    CANCELLED, and then ``result()`` resolves.
    """

    def __init__(self, unsigned: UnsignedTransaction):
        self.session_id = uuid.uuid4().hex
        self.request_id = uuid.uuid4().hex
        self.unsigned = unsigned
        self.state = SigningState.CREATED
        self.failure: FailureReason | None = None
        self.challenges: dict[ChallengeKind, Challenge] = {}
        self.pin_attempts = 0
        self.task: asyncio.Task[None] | None = None
        self._result: asyncio.Future[FinishedTransaction] = (
            asyncio.get_running_loop().create_future()
        )
        # Retrieve the exception so an unawaited failed session does not log noise
        self._result.add_done_callback(lambda f: f.cancelled() or f.exception())

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def new_attempt(self) -> None:
        self.request_id = uuid.uuid4().hex

    def open_challenge(self, kind: ChallengeKind) -> Challenge:
        challenge = Challenge(kind)
        self.challenges[kind] = challenge
        self.state = kind.awaiting_state
        return challenge

    def abandon_challenges(self) -> None:
        for challenge in self.challenges.values():
            if not challenge.future.done():
                challenge.future.cancel()

    def succeed(self, finished: FinishedTransaction) -> None:
        self.state = SigningState.SIGNED
        self._result.set_result(finished)

    def fail(self, error: SigningError) -> None:
        if error.reason is FailureReason.CANCELLED:
            self.state = SigningState.CANCELLED
        else:
            self.state = SigningState.FAILED
        self.failure = error.reason
        self.abandon_challenges()
        if not self._result.done():
            self._result.set_exception(error)

    async def result(self) -> FinishedTransaction:
        """Wait for the terminal outcome; raises the SigningError on failure."""
        return await asyncio.shield(self._result)

    def __repr__(self) -> str:
        return f"SigningSession({self.session_id[:8]}, {self.state})"
