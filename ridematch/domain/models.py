"""Core domain models for ride requests, matches, and their side effects.

This module defines the data structures used throughout the application:
- RideRequest: a student's wish to travel between two points at a given time
- RideMatch: a shared ride grouping two or more requests
- Notification: inbox entry produced by a lifecycle transition
- ChatMessage: system message posted to a match's chat room
- ScheduledTask: durable timer (confirmation reminder) checked by the sweeps
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from ..utils.geo import encode_geohash
from ..utils.timestamps import ensure_utc, utc_now


class RequestStatus(str, Enum):
    """Lifecycle states of a ride request."""

    SEARCHING = "searching"
    MATCHED = "matched"
    RIDING = "riding"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MatchStatus(str, Enum):
    """Lifecycle states of a ride match."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    RIDING = "riding"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_MATCH_STATES = frozenset({MatchStatus.COMPLETED, MatchStatus.CANCELLED})


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"


class GenderPreference(str, Enum):
    ANY = "any"
    FEMALE_ONLY = "female_only"
    MALE_ONLY = "male_only"


class NotificationType(str, Enum):
    MATCH_FOUND = "match_found"
    MATCH_CONFIRMED = "match_confirmed"
    MATCH_CANCELLED = "match_cancelled"
    MATCH_CONFIRMATION_REMINDER = "match_confirmation_reminder"
    RIDE_STARTING = "ride_starting"
    RIDE_COMPLETED = "ride_completed"
    MATCH_UPDATED = "match_updated"


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class TaskKind(str, Enum):
    CONFIRMATION_REMINDER = "confirmation_reminder"


class TaskStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"
    SKIPPED = "skipped"


class GeoLocation(BaseModel):
    """A point with an optional human readable address.

    The geohash is derived from the coordinates when not supplied.
    """

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    address: str = Field("", description="Display address (from the geocoder)")
    geohash: Optional[str] = Field(None, description="Geohash of the coordinates")

    @model_validator(mode="after")
    def fill_geohash(self) -> "GeoLocation":
        if not self.geohash:
            self.geohash = encode_geohash(self.latitude, self.longitude)
        return self


class RiderProfile(BaseModel):
    """Snapshot of the requesting user's profile, attached to a request."""

    first_name: str = Field(..., min_length=1)
    last_name: str = Field("", description="Family name")
    phone_number: Optional[str] = None
    department: Optional[str] = None
    gender: Optional[Gender] = None
    is_student_verified: bool = False
    rating: float = Field(0.0, ge=0, le=5)

    @field_validator("first_name", "last_name")
    @classmethod
    def strip_names(cls, v: str) -> str:
        return v.strip()

    @field_validator("department")
    @classmethod
    def normalize_department(cls, v: Optional[str]) -> Optional[str]:
        """Strip whitespace; empty departments become None."""
        if v is None:
            return None
        stripped = v.strip()
        return stripped if stripped else None

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class RidePreferences(BaseModel):
    gender_preference: GenderPreference = GenderPreference.ANY
    student_verified_only: bool = False
    same_department_preferred: bool = False


class RideRequest(BaseModel):
    """A student's request to share a ride.

    expires_at is derived as departure_time + flexibility minutes when not
    given. While status is searching, match_id is unset and matched_with is
    empty; while matched or riding, match_id points at the owning match.
    """

    id: str = Field(..., description="Unique request identifier")
    user_id: str = Field(..., description="Owner of the request")
    rider: RiderProfile
    origin: GeoLocation
    destination: GeoLocation
    departure_time: datetime
    flexibility: int = Field(15, ge=0, le=120, description="Minutes either side of departure")
    expires_at: Optional[datetime] = None
    max_walk_distance: int = Field(500, ge=0, le=2000, description="Metres")
    looking_for_seats: int = Field(1, ge=1, le=3)
    max_price_per_seat: float = Field(0.0, ge=0)
    preferences: RidePreferences = Field(default_factory=RidePreferences)
    status: RequestStatus = RequestStatus.SEARCHING
    matched_with: List[str] = Field(default_factory=list, description="User ids of co-riders")
    match_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("departure_time", "expires_at", "created_at", "updated_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Ensure datetime is timezone-aware and in UTC."""
        return ensure_utc(v)

    @model_validator(mode="after")
    def derive_expiry(self) -> "RideRequest":
        if self.expires_at is None:
            self.expires_at = self.departure_time + timedelta(minutes=self.flexibility)
        return self

    model_config = {"json_schema_extra": {"example": {
        "id": "req-1",
        "user_id": "user-1",
        "rider": {"first_name": "Ayesha", "last_name": "Rahman", "department": "CSE",
                  "gender": "female", "is_student_verified": True, "rating": 4.8},
        "origin": {"latitude": 23.79, "longitude": 90.41, "address": "Campus gate"},
        "destination": {"latitude": 23.81, "longitude": 90.42, "address": "Banani"},
        "departure_time": "2025-11-04T14:00:00Z",
        "flexibility": 15,
        "looking_for_seats": 1,
        "max_price_per_seat": 120,
        "preferences": {"gender_preference": "any", "student_verified_only": False,
                        "same_department_preferred": True},
    }}}


class MatchParticipant(BaseModel):
    """Per-request snapshot frozen into a match when it is formed."""

    user_id: str
    request_id: str
    first_name: str
    last_name: str = ""
    phone_number: Optional[str] = None
    pickup: GeoLocation
    dropoff: GeoLocation
    seats: int = Field(1, ge=1)
    is_student_verified: bool = False
    department: Optional[str] = None

    @classmethod
    def from_request(cls, request: RideRequest) -> "MatchParticipant":
        return cls(
            user_id=request.user_id,
            request_id=request.id,
            first_name=request.rider.first_name,
            last_name=request.rider.last_name,
            phone_number=request.rider.phone_number,
            pickup=request.origin,
            dropoff=request.destination,
            seats=request.looking_for_seats,
            is_student_verified=request.rider.is_student_verified,
            department=request.rider.department,
        )


class RideMatch(BaseModel):
    """A shared ride grouping two or more ride requests."""

    id: str
    request_ids: List[str]
    participants: List[MatchParticipant]
    meeting_point: GeoLocation
    dropoff_point: GeoLocation
    departure_time: datetime
    estimated_total_cost: int = Field(..., ge=0)
    cost_per_person: int = Field(..., ge=0)
    total_seats: int = Field(..., ge=1)
    status: MatchStatus = MatchStatus.PENDING
    confirmations: List[str] = Field(default_factory=list)
    chat_room_id: Optional[str] = None
    cancellation_reason: Optional[str] = None
    version: int = Field(1, ge=1, description="Optimistic concurrency counter")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @field_validator(
        "departure_time", "created_at", "updated_at",
        "confirmed_at", "completed_at", "cancelled_at",
    )
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @model_validator(mode="after")
    def default_chat_room(self) -> "RideMatch":
        if self.chat_room_id is None:
            self.chat_room_id = self.id
        return self

    @property
    def participant_user_ids(self) -> List[str]:
        return [p.user_id for p in self.participants]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_MATCH_STATES

    @property
    def all_confirmed(self) -> bool:
        """True when every participant has confirmed."""
        return set(self.participant_user_ids) <= set(self.confirmations)

    @property
    def unconfirmed_user_ids(self) -> List[str]:
        confirmed = set(self.confirmations)
        return [uid for uid in self.participant_user_ids if uid not in confirmed]


class Notification(BaseModel):
    """Inbox entry for a single user."""

    id: str
    user_id: str
    type: NotificationType
    priority: NotificationPriority = NotificationPriority.NORMAL
    title: str
    body: str
    data: Dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
    is_deleted: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    read_at: Optional[datetime] = None

    @field_validator("created_at", "read_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)


class ChatMessage(BaseModel):
    id: str
    match_id: str
    sender_id: str = "system"
    sender_name: str = "System"
    type: str = "system"
    message: str
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("created_at")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class ScheduledTask(BaseModel):
    """Durable one-shot timer, unique per (match_id, kind)."""

    id: str
    kind: TaskKind
    match_id: str
    fire_at: datetime
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    @field_validator("fire_at", "created_at", "completed_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)
