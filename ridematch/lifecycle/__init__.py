"""Match lifecycle: formation, confirmation, cancellation and ride progress."""

from ridematch.domain.events import LifecycleEvent

from .manager import (
    REASON_CONFIRMATION_TIMEOUT,
    REASON_DEPARTED,
    REASON_PARTICIPANT_LEFT,
    MatchLifecycleManager,
)

__all__ = [
    "MatchLifecycleManager",
    "LifecycleEvent",
    "REASON_CONFIRMATION_TIMEOUT",
    "REASON_DEPARTED",
    "REASON_PARTICIPANT_LEFT",
]
