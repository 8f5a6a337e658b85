"""
Error taxonomy for the send pipeline.

Every error carries a stable machine-readable ``kind`` and a human-readable
message, so a presentation layer can show a specific, actionable reason.
"""

from __future__ import annotations

from enum import StrEnum


class FailureReason(StrEnum):
    """Why a signing session ended without a finished transaction."""

    AUTHORITY_UNAVAILABLE = "authority_unavailable"
    INCORRECT_PIN = "incorrect_pin"
    USER_REJECTED = "user_rejected"
    UNEXPECTED_AUTHORITY_STATE = "unexpected_authority_state"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class WalletError(Exception):
    """Base class for all send pipeline errors."""

    kind = "wallet_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# =============================================================================
# Selection
# =============================================================================


class SelectionError(WalletError):
    kind = "selection_error"


class InsufficientFunds(SelectionError):
    """Eligible UTXOs cannot cover the amount plus fee, or fees consume everything."""

    kind = "insufficient_funds"

    def __init__(self, needed: int, available: int, message: str | None = None) -> None:
        self.needed = needed
        self.available = available
        super().__init__(
            message or f"Insufficient funds: need {needed:,} sats, have {available:,} sats"
        )


class NoSpendableAssetFound(SelectionError):
    """The wallet holds no eligible UTXOs of the requested asset."""

    kind = "no_spendable_asset_found"

    def __init__(self, asset_id: str, message: str | None = None) -> None:
        self.asset_id = asset_id
        super().__init__(message or f"No spendable UTXOs found for {asset_id}")


class InvalidDestination(WalletError):
    kind = "invalid_destination"

    def __init__(self, address: str, reason: str) -> None:
        self.address = address
        self.reason = reason
        super().__init__(f"Invalid destination address {address!r}: {reason}")


class AssemblyError(WalletError):
    """Key, UTXO or previous transaction metadata is inconsistent."""

    kind = "assembly_error"


# =============================================================================
# Signing
# =============================================================================


class SigningError(WalletError):
    kind = "signing_error"
    reason: FailureReason | None = None

    def __init__(self, message: str, reason: FailureReason | None = None) -> None:
        super().__init__(message)
        if reason is not None:
            self.reason = reason


class SessionAlreadyActive(SigningError):
    kind = "session_already_active"


class DuplicateChallengeResponse(SigningError):
    kind = "duplicate_challenge_response"


class NoPendingChallenge(SigningError):
    kind = "no_pending_challenge"


class AuthorityUnavailable(SigningError):
    kind = "authority_unavailable"
    reason = FailureReason.AUTHORITY_UNAVAILABLE


class IncorrectPin(SigningError):
    kind = "incorrect_pin"
    reason = FailureReason.INCORRECT_PIN


class UserRejected(SigningError):
    kind = "user_rejected"
    reason = FailureReason.USER_REJECTED


class UnexpectedAuthorityState(SigningError):
    kind = "unexpected_authority_state"
    reason = FailureReason.UNEXPECTED_AUTHORITY_STATE


class SigningTimeout(SigningError):
    kind = "timeout"
    reason = FailureReason.TIMEOUT


class SigningCancelled(SigningError):
    kind = "cancelled"
    reason = FailureReason.CANCELLED


FAILURE_ERRORS: dict[FailureReason, type[SigningError]] = {
    FailureReason.AUTHORITY_UNAVAILABLE: AuthorityUnavailable,
    FailureReason.INCORRECT_PIN: IncorrectPin,
    FailureReason.USER_REJECTED: UserRejected,
    FailureReason.UNEXPECTED_AUTHORITY_STATE: UnexpectedAuthorityState,
    FailureReason.TIMEOUT: SigningTimeout,
    FailureReason.CANCELLED: SigningCancelled,
}


def error_for_reason(reason: FailureReason, message: str) -> SigningError:
    return FAILURE_ERRORS[reason](message)


# =============================================================================
# Backends
# =============================================================================


class BackendUnavailable(WalletError):
    """A blockchain data service could not be reached or answered nonsense."""

    kind = "backend_unavailable"


# =============================================================================
# Broadcast
# =============================================================================


class BroadcastRejected(WalletError):
    """The network refused the transaction. ``reason`` is its message verbatim."""

    kind = "broadcast_rejected"

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Broadcast rejected: {reason}")
