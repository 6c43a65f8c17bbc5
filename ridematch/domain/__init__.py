"""Domain models and errors for the ride-matching engine."""

from .exceptions import (
    ConflictError,
    IneligibleGroupError,
    InvalidStateError,
    NotFoundError,
    RideMatchError,
    ValidationError,
)
from .events import LifecycleEvent
from .models import (
    TERMINAL_MATCH_STATES,
    ChatMessage,
    Gender,
    GenderPreference,
    GeoLocation,
    MatchParticipant,
    MatchStatus,
    Notification,
    NotificationPriority,
    NotificationType,
    RequestStatus,
    RideMatch,
    RidePreferences,
    RideRequest,
    RiderProfile,
    ScheduledTask,
    TaskKind,
    TaskStatus,
)

__all__ = [
    # Events
    "LifecycleEvent",
    # Models
    "ChatMessage",
    "GeoLocation",
    "MatchParticipant",
    "Notification",
    "RideMatch",
    "RidePreferences",
    "RideRequest",
    "RiderProfile",
    "ScheduledTask",
    # Enums
    "Gender",
    "GenderPreference",
    "MatchStatus",
    "NotificationPriority",
    "NotificationType",
    "RequestStatus",
    "TaskKind",
    "TaskStatus",
    "TERMINAL_MATCH_STATES",
    # Errors
    "RideMatchError",
    "NotFoundError",
    "InvalidStateError",
    "ConflictError",
    "ValidationError",
    "IneligibleGroupError",
]
