"""
Signing coordinator.

Drives the KeepKey transaction-signing exchange for one session at a time.
Each session runs in its own asyncio task; it suspends on authority replies
and on PIN/passphrase challenges, which callers answer through
resolve_challenge() / decline_challenge().

State flow:
    CREATED -> DISPATCHED -> (AWAITING_PIN | AWAITING_PASSPHRASE)* ->
    AWAITING_USER_CONFIRMATION -> SIGNED | FAILED | CANCELLED
"""

from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger

from kkcore.bitcoin import ParsedTransaction, address_to_scriptpubkey, parse_transaction
from kkwallet.errors import (
    AuthorityUnavailable,
    DuplicateChallengeResponse,
    IncorrectPin,
    NoPendingChallenge,
    SessionAlreadyActive,
    SigningCancelled,
    SigningError,
    SigningTimeout,
    UnexpectedAuthorityState,
    UserRejected,
)
from kkwallet.signing.authority import SigningAuthority
from kkwallet.signing.messages import (
    ButtonAck,
    ButtonRequest,
    DeviceMessage,
    Failure,
    FailureType,
    HostMessage,
    OutputAddressType,
    OutputScriptType,
    PassphraseAck,
    PassphraseRequest,
    PinMatrixAck,
    PinMatrixRequest,
    RequestType,
    SignTx,
    TransactionType,
    TxAck,
    TxInputType,
    TxOutputBinType,
    TxOutputType,
    TxRequest,
    change_script_type,
    input_script_type,
)
from kkwallet.signing.session import (
    Challenge,
    ChallengeDeclined,
    ChallengeKind,
    ChallengeResolved,
    SessionEvent,
    SessionEventKind,
    SigningSession,
    SigningState,
)
from kkwallet.wallet.models import FinishedTransaction, UnsignedTransaction

# Device failures that mean the user said no on the device
USER_REJECTION_FAILURES = {FailureType.ACTION_CANCELLED, FailureType.PIN_CANCELLED}
PIN_FAILURES = {FailureType.PIN_INVALID, FailureType.PIN_MISMATCH}
DEVICE_UNAVAILABLE_FAILURES = {FailureType.NOT_INITIALIZED, FailureType.FIRMWARE_ERROR}


def map_failure(failure: Failure) -> SigningError:
    """Translate a device Failure message into the signing error taxonomy."""
    text = failure.message or "no message"
    try:
        code = FailureType(failure.code) if failure.code is not None else None
    except ValueError:
        code = None

    if code in USER_REJECTION_FAILURES:
        return UserRejected(f"Rejected on device: {text}")
    if code in PIN_FAILURES:
        return IncorrectPin(f"Incorrect PIN: {text}")
    if code in DEVICE_UNAVAILABLE_FAILURES:
        return AuthorityUnavailable(f"Device cannot sign: {text}")
    return UnexpectedAuthorityState(f"Device failure {failure.code}: {text}")


class SigningCoordinator:
    """
    Coordinates signing sessions against one signing authority.

    At most one session is active at a time. Sessions are removed once they
    reach a terminal state.

    Args:
        authority: Transport to the device
        session_timeout: Longest wait, in seconds, for any single device
            reply or challenge answer
        cancel_timeout: Bound on the best-effort Cancel sent to the device
        max_pin_attempts: Wrong PINs tolerated before the session fails
    """

    def __init__(
        self,
        authority: SigningAuthority,
        session_timeout: float = 300.0,
        cancel_timeout: float = 5.0,
        max_pin_attempts: int = 3,
    ):
        self.authority = authority
        self.session_timeout = session_timeout
        self.cancel_timeout = cancel_timeout
        self.max_pin_attempts = max_pin_attempts
        self._sessions: dict[str, SigningSession] = {}
        self._active: SigningSession | None = None
        self._subscribers: list[asyncio.Queue[SessionEvent]] = []

    # =========================================================================
    # Public API
    # =========================================================================

    def start(self, unsigned: UnsignedTransaction) -> SigningSession:
        """
        Create a session and dispatch it in its own task.

        Must be called from a running event loop.

        Raises:
            SessionAlreadyActive: If another session has not finished
        """
        if self._active is not None and not self._active.is_terminal:
            raise SessionAlreadyActive(
                f"Signing session {self._active.session_id} is still {self._active.state}"
            )

        session = SigningSession(unsigned)
        self._active = session
        self._sessions[session.session_id] = session
        session.task = asyncio.create_task(self._run(session))
        logger.info(
            f"Started signing session {session.session_id[:8]} "
            f"({len(unsigned.inputs)} inputs, {len(unsigned.outputs)} outputs)"
        )
        return session

    async def sign(self, unsigned: UnsignedTransaction) -> FinishedTransaction:
        """Start a session and wait for the finished transaction."""
        return await self.start(unsigned).result()

    def get_session(self, session_id: str) -> SigningSession | None:
        return self._sessions.get(session_id)

    @property
    def active_session(self) -> SigningSession | None:
        if self._active is not None and not self._active.is_terminal:
            return self._active
        return None

    def resolve_challenge(self, response: ChallengeResolved) -> None:
        """
        Answer an open PIN or passphrase challenge.

        Raises:
            NoPendingChallenge: If no challenge of that kind is waiting
            DuplicateChallengeResponse: If that challenge was already answered
        """
        challenge = self._find_challenge(response.session_id, response.kind)
        logger.debug(f"{response.kind} challenge answered for {response.session_id[:8]}")
        challenge.answer(response.secret)

    def decline_challenge(self, response: ChallengeDeclined) -> None:
        """Refuse an open challenge; the session ends CANCELLED."""
        challenge = self._find_challenge(response.session_id, response.kind)
        logger.info(f"{response.kind} challenge declined for {response.session_id[:8]}")
        challenge.answer(None)

    async def cancel(self, session_id: str) -> None:
        """
        Abort a session from any non-terminal state.

        The device is told to cancel (best effort, bounded by cancel_timeout)
        and pending challenges are dropped. No-op for unknown or finished
        sessions.
        """
        session = self._sessions.get(session_id)
        if session is None or session.is_terminal:
            return

        logger.info(f"Cancelling signing session {session_id[:8]}")
        task = session.task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        # A task cancelled before its first step never reaches its handler
        if not session.is_terminal:
            self._terminate(session, SigningCancelled("Signing cancelled"))

    def subscribe(self) -> asyncio.Queue[SessionEvent]:
        """Queue receiving every session event from now on."""
        queue: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[SessionEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    async def close(self) -> None:
        if self.active_session is not None:
            await self.cancel(self.active_session.session_id)
        await self.authority.close()

    # =========================================================================
    # Session driver
    # =========================================================================

    async def _run(self, session: SigningSession) -> None:
        try:
            finished = await self._sign_with_retries(session)
        except asyncio.CancelledError:
            await self._notify_authority_cancel()
            self._terminate(session, SigningCancelled("Signing cancelled"))
            return
        except SigningError as e:
            if isinstance(e, SigningTimeout):
                await self._notify_authority_cancel()
            self._terminate(session, e)
            return
        except Exception as e:
            logger.exception(f"Signing session {session.session_id[:8]} crashed")
            self._terminate(session, UnexpectedAuthorityState(f"Signing aborted: {e}"))
            return

        session.succeed(finished)
        self._emit(session, SessionEventKind.SIGNED)
        self._forget(session)
        logger.info(f"Signing session {session.session_id[:8]} signed {finished.txid}")

    async def _sign_with_retries(self, session: SigningSession) -> FinishedTransaction:
        prev_txs = self._previous_transactions(session.unsigned)
        while True:
            try:
                return await self._attempt(session, prev_txs)
            except IncorrectPin as e:
                session.pin_attempts += 1
                self._emit(
                    session,
                    SessionEventKind.CHALLENGE_REJECTED,
                    challenge=ChallengeKind.PIN,
                    reason=e.reason,
                    message=str(e),
                )
                if session.pin_attempts >= self.max_pin_attempts:
                    raise IncorrectPin(
                        f"Incorrect PIN entered {session.pin_attempts} times"
                    ) from e
                logger.warning(
                    f"Incorrect PIN ({session.pin_attempts}/{self.max_pin_attempts}), "
                    "restarting signing"
                )
                session.new_attempt()

    async def _attempt(
        self, session: SigningSession, prev_txs: dict[str, ParsedTransaction]
    ) -> FinishedTransaction:
        unsigned = session.unsigned
        serialized_parts: list[str] = []
        signatures: dict[int, str] = {}

        self._set_state(session, SigningState.DISPATCHED)
        message: HostMessage = SignTx(
            outputs_count=len(unsigned.outputs),
            inputs_count=len(unsigned.inputs),
            coin_name=unsigned.coin_name,
            version=unsigned.version,
            lock_time=unsigned.locktime,
        )

        while True:
            reply = await self._exchange(session, message)

            match reply:
                case TxRequest():
                    if reply.serialized is not None:
                        if reply.serialized.serialized_tx:
                            serialized_parts.append(reply.serialized.serialized_tx)
                        if reply.serialized.signature_index is not None:
                            signatures[reply.serialized.signature_index] = (
                                reply.serialized.signature or ""
                            )
                    if reply.request_type is RequestType.TXFINISHED:
                        logger.debug(f"Device returned {len(signatures)} signature(s)")
                        return self._finish(unsigned, "".join(serialized_parts))
                    message = TxAck(tx=self._answer_tx_request(reply, unsigned, prev_txs))
                case ButtonRequest():
                    if session.state is not SigningState.AWAITING_USER_CONFIRMATION:
                        self._set_state(session, SigningState.AWAITING_USER_CONFIRMATION)
                    logger.debug(f"Device asks for confirmation (code {reply.code})")
                    message = ButtonAck()
                case PinMatrixRequest():
                    message = PinMatrixAck(pin=await self._challenge(session, ChallengeKind.PIN))
                case PassphraseRequest():
                    message = PassphraseAck(
                        passphrase=await self._challenge(session, ChallengeKind.PASSPHRASE)
                    )
                case Failure():
                    error = map_failure(reply)
                    logger.warning(f"Device failure: {error}")
                    raise error
                case _:
                    raise UnexpectedAuthorityState(f"Unexpected device message {reply.type}")

    async def _exchange(self, session: SigningSession, message: HostMessage) -> DeviceMessage:
        try:
            return await asyncio.wait_for(
                self.authority.exchange(message, session.request_id), self.session_timeout
            )
        except TimeoutError as e:
            logger.error(f"No reply from device within {self.session_timeout}s")
            raise SigningTimeout(f"No reply from device within {self.session_timeout}s") from e
        except SigningError:
            raise
        except Exception as e:
            logger.error(f"Signing authority transport failed: {e}")
            raise AuthorityUnavailable(f"Signing authority transport failed: {e}") from e

    async def _challenge(self, session: SigningSession, kind: ChallengeKind) -> str:
        challenge = session.open_challenge(kind)
        self._emit(session, SessionEventKind(kind.awaiting_state.value))
        self._emit(session, SessionEventKind.CHALLENGE_REQUESTED, challenge=kind)
        logger.info(f"Device requests {kind} entry")

        try:
            secret = await asyncio.wait_for(challenge.future, self.session_timeout)
        except TimeoutError as e:
            raise SigningTimeout(f"No {kind} entered within {self.session_timeout}s") from e

        if secret is None:
            await self._notify_authority_cancel()
            raise SigningCancelled(f"{kind.capitalize()} entry declined")

        self._set_state(session, SigningState.DISPATCHED)
        return secret

    async def _notify_authority_cancel(self) -> None:
        try:
            await asyncio.wait_for(self.authority.cancel(), self.cancel_timeout)
        except Exception as e:
            logger.warning(f"Could not notify device of cancellation: {e!r}")

    # =========================================================================
    # Protocol answers
    # =========================================================================

    @staticmethod
    def _previous_transactions(unsigned: UnsignedTransaction) -> dict[str, ParsedTransaction]:
        prev_txs = {}
        for tx_input in unsigned.inputs:
            if tx_input.prev_tx_hex is None:
                continue
            try:
                prev_txs[tx_input.prev_txid] = parse_transaction(tx_input.prev_tx_hex)
            except ValueError as e:
                raise UnexpectedAuthorityState(
                    f"Previous transaction {tx_input.prev_txid} is malformed: {e}"
                ) from e
        return prev_txs

    def _answer_tx_request(
        self,
        request: TxRequest,
        unsigned: UnsignedTransaction,
        prev_txs: dict[str, ParsedTransaction],
    ) -> TransactionType:
        details = request.details
        tx_hash = details.tx_hash if details is not None else None

        if tx_hash:
            prev = prev_txs.get(tx_hash)
            if prev is None:
                raise UnexpectedAuthorityState(f"Device asked for unknown transaction {tx_hash}")
            return _answer_previous(request, prev)

        match request.request_type:
            case RequestType.TXMETA:
                return TransactionType(
                    version=unsigned.version,
                    lock_time=unsigned.locktime,
                    inputs_cnt=len(unsigned.inputs),
                    outputs_cnt=len(unsigned.outputs),
                )
            case RequestType.TXINPUT:
                tx_input = unsigned.inputs[_request_index(request, len(unsigned.inputs))]
                return TransactionType(
                    inputs=[
                        TxInputType(
                            address_n=tx_input.address_n,
                            prev_hash=tx_input.prev_txid,
                            prev_index=tx_input.prev_index,
                            sequence=tx_input.sequence,
                            script_type=input_script_type(tx_input.script_type),
                            amount=tx_input.value,
                        )
                    ]
                )
            case RequestType.TXOUTPUT:
                output = unsigned.outputs[_request_index(request, len(unsigned.outputs))]
                if output.is_change and output.script_type is not None:
                    tx_output = TxOutputType(
                        address_n=output.address_n,
                        amount=output.amount,
                        script_type=change_script_type(output.script_type),
                        address_type=OutputAddressType.CHANGE,
                    )
                else:
                    tx_output = TxOutputType(
                        address=output.address,
                        amount=output.amount,
                        script_type=OutputScriptType.PAYTOADDRESS,
                        address_type=OutputAddressType.SPEND,
                    )
                return TransactionType(outputs=[tx_output])
            case _:
                raise UnexpectedAuthorityState(
                    f"Unsupported request type {request.request_type} for the unsigned transaction"
                )

    def _finish(self, unsigned: UnsignedTransaction, raw_hex: str) -> FinishedTransaction:
        if not raw_hex:
            raise UnexpectedAuthorityState("Device finished without a serialized transaction")
        try:
            parsed = parse_transaction(raw_hex)
        except ValueError as e:
            raise UnexpectedAuthorityState(f"Device returned a malformed transaction: {e}") from e

        outpoints = [(i["txid"], i["vout"]) for i in parsed.inputs]
        expected_outpoints = [(i.prev_txid, i.prev_index) for i in unsigned.inputs]
        if outpoints != expected_outpoints:
            raise UnexpectedAuthorityState("Signed transaction spends different inputs")

        amounts = [o["value"] for o in parsed.outputs]
        if amounts != [o.amount for o in unsigned.outputs]:
            raise UnexpectedAuthorityState("Signed transaction pays different output amounts")

        for output, signed in zip(unsigned.outputs, parsed.outputs, strict=True):
            if output.address is not None:
                if address_to_scriptpubkey(output.address).hex() != signed["scriptpubkey"]:
                    raise UnexpectedAuthorityState(f"Signed transaction does not pay {output.address}")

        return FinishedTransaction.from_raw_hex(raw_hex)

    # =========================================================================
    # State and events
    # =========================================================================

    def _find_challenge(self, session_id: str, kind: ChallengeKind) -> Challenge:
        session = self._sessions.get(session_id)
        if session is None or session.is_terminal:
            raise NoPendingChallenge(f"No active signing session {session_id}")
        challenge = session.challenges.get(kind)
        if challenge is None:
            raise NoPendingChallenge(f"Session {session_id[:8]} has no {kind} challenge")
        if challenge.answered:
            raise DuplicateChallengeResponse(
                f"The {kind} challenge of session {session_id[:8]} was already answered"
            )
        if not challenge.is_open:
            raise NoPendingChallenge(f"The {kind} challenge of session {session_id[:8]} expired")
        return challenge

    def _set_state(self, session: SigningSession, state: SigningState) -> None:
        session.state = state
        self._emit(session, SessionEventKind(state.value))

    def _terminate(self, session: SigningSession, error: SigningError) -> None:
        session.fail(error)
        if session.state is SigningState.CANCELLED:
            logger.info(f"Signing session {session.session_id[:8]} cancelled: {error}")
            self._emit(session, SessionEventKind.CANCELLED, reason=error.reason, message=str(error))
        else:
            logger.error(f"Signing session {session.session_id[:8]} failed: {error}")
            self._emit(session, SessionEventKind.FAILED, reason=error.reason, message=str(error))
        self._forget(session)

    def _forget(self, session: SigningSession) -> None:
        self._sessions.pop(session.session_id, None)

    def _emit(self, session: SigningSession, kind: SessionEventKind, **fields: Any) -> None:
        event = SessionEvent(
            kind=kind, session_id=session.session_id, request_id=session.request_id, **fields
        )
        for queue in self._subscribers:
            queue.put_nowait(event)


def _request_index(request: TxRequest, count: int) -> int:
    if request.details is None or request.details.request_index is None:
        raise UnexpectedAuthorityState(f"{request.request_type} request without an index")
    index = request.details.request_index
    if not 0 <= index < count:
        raise UnexpectedAuthorityState(f"{request.request_type} index {index} out of range")
    return index


def _answer_previous(request: TxRequest, prev: ParsedTransaction) -> TransactionType:
    match request.request_type:
        case RequestType.TXMETA:
            return TransactionType(
                version=prev.version,
                lock_time=prev.locktime,
                inputs_cnt=len(prev.inputs),
                outputs_cnt=len(prev.outputs),
                extra_data_len=0,
            )
        case RequestType.TXINPUT:
            prev_input = prev.inputs[_request_index(request, len(prev.inputs))]
            return TransactionType(
                inputs=[
                    TxInputType(
                        prev_hash=prev_input["txid"],
                        prev_index=prev_input["vout"],
                        script_sig=prev_input["scriptsig"],
                        sequence=prev_input["sequence"],
                    )
                ]
            )
        case RequestType.TXOUTPUT:
            prev_output = prev.outputs[_request_index(request, len(prev.outputs))]
            return TransactionType(
                bin_outputs=[
                    TxOutputBinType(
                        amount=prev_output["value"],
                        script_pubkey=prev_output["scriptpubkey"],
                    )
                ]
            )
        case _:
            raise UnexpectedAuthorityState(
                f"Unsupported request type {request.request_type} for a previous transaction"
            )
