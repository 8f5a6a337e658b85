"""
KeepKey signing: protocol messages, authority transports and the session coordinator.
"""

from kkwallet.signing.authority import BridgeAuthority, SigningAuthority
from kkwallet.signing.coordinator import SigningCoordinator
from kkwallet.signing.session import (
    ChallengeDeclined,
    ChallengeKind,
    ChallengeResolved,
    SessionEvent,
    SessionEventKind,
    SigningSession,
    SigningState,
)

__all__ = [
    "BridgeAuthority",
    "ChallengeDeclined",
    "ChallengeKind",
    "ChallengeResolved",
    "SessionEvent",
    "SessionEventKind",
    "SigningAuthority",
    "SigningCoordinator",
    "SigningSession",
    "SigningState",
]
