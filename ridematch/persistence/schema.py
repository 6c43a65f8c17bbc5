"""Database schema definition and ORM models.

ORM models mirror the domain models and convert both ways with ``to_domain`` /
``from_domain``. Timestamps are stored as fixed-width ISO 8601 strings, nested
structures (rider profile, participants, confirmations) as JSON.
"""

import logging

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    inspect,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base

from ridematch.domain.models import (
    ChatMessage,
    GeoLocation,
    MatchParticipant,
    Notification,
    RideMatch,
    RidePreferences,
    RideRequest,
    RiderProfile,
    ScheduledTask,
)
from ridematch.utils.timestamps import from_storage, to_storage

logger = logging.getLogger(__name__)

Base = declarative_base()


class RideRequestModel(Base):
    """ORM model for the ride_requests table.

    Origin and destination coordinates are real columns so that the candidate
    search can filter by bounding box in SQL.
    """

    __tablename__ = "ride_requests"

    id = Column(String(64), primary_key=True, nullable=False)
    user_id = Column(String(64), nullable=False)
    rider = Column(JSON, nullable=False)

    origin_lat = Column(Float, nullable=False)
    origin_lon = Column(Float, nullable=False)
    origin_address = Column(Text, nullable=False, default="")
    origin_geohash = Column(String(12), nullable=True)
    destination_lat = Column(Float, nullable=False)
    destination_lon = Column(Float, nullable=False)
    destination_address = Column(Text, nullable=False, default="")
    destination_geohash = Column(String(12), nullable=True)

    departure_time = Column(String(32), nullable=False)
    flexibility = Column(Integer, nullable=False)
    expires_at = Column(String(32), nullable=False)
    max_walk_distance = Column(Integer, nullable=False)
    looking_for_seats = Column(Integer, nullable=False)
    max_price_per_seat = Column(Float, nullable=False)
    preferences = Column(JSON, nullable=False)

    status = Column(String(16), nullable=False)
    matched_with = Column(JSON, nullable=False)
    match_id = Column(String(64), nullable=True)

    created_at = Column(String(32), nullable=False)
    updated_at = Column(String(32), nullable=False)

    __table_args__ = (
        Index("idx_requests_status_origin", "status", "origin_lat", "origin_lon"),
        Index("idx_requests_status_expires", "status", "expires_at"),
        Index("idx_requests_match", "match_id"),
        Index("idx_requests_user", "user_id"),
    )

    def to_domain(self) -> RideRequest:
        return RideRequest(
            id=self.id,
            user_id=self.user_id,
            rider=RiderProfile.model_validate(self.rider),
            origin=GeoLocation(
                latitude=self.origin_lat,
                longitude=self.origin_lon,
                address=self.origin_address or "",
                geohash=self.origin_geohash,
            ),
            destination=GeoLocation(
                latitude=self.destination_lat,
                longitude=self.destination_lon,
                address=self.destination_address or "",
                geohash=self.destination_geohash,
            ),
            departure_time=from_storage(self.departure_time),
            flexibility=self.flexibility,
            expires_at=from_storage(self.expires_at),
            max_walk_distance=self.max_walk_distance,
            looking_for_seats=self.looking_for_seats,
            max_price_per_seat=self.max_price_per_seat,
            preferences=RidePreferences.model_validate(self.preferences),
            status=self.status,
            matched_with=list(self.matched_with or []),
            match_id=self.match_id,
            created_at=from_storage(self.created_at),
            updated_at=from_storage(self.updated_at),
        )

    @classmethod
    def from_domain(cls, request: RideRequest) -> "RideRequestModel":
        return cls(
            id=request.id,
            user_id=request.user_id,
            rider=request.rider.model_dump(mode="json"),
            origin_lat=request.origin.latitude,
            origin_lon=request.origin.longitude,
            origin_address=request.origin.address,
            origin_geohash=request.origin.geohash,
            destination_lat=request.destination.latitude,
            destination_lon=request.destination.longitude,
            destination_address=request.destination.address,
            destination_geohash=request.destination.geohash,
            departure_time=to_storage(request.departure_time),
            flexibility=request.flexibility,
            expires_at=to_storage(request.expires_at),
            max_walk_distance=request.max_walk_distance,
            looking_for_seats=request.looking_for_seats,
            max_price_per_seat=request.max_price_per_seat,
            preferences=request.preferences.model_dump(mode="json"),
            status=request.status.value,
            matched_with=list(request.matched_with),
            match_id=request.match_id,
            created_at=to_storage(request.created_at),
            updated_at=to_storage(request.updated_at),
        )


class RideMatchModel(Base):
    """ORM model for the ride_matches table.

    ``version`` is bumped by every guarded update; a writer holding a stale
    version matches zero rows and loses.
    """

    __tablename__ = "ride_matches"

    id = Column(String(64), primary_key=True, nullable=False)
    request_ids = Column(JSON, nullable=False)
    participants = Column(JSON, nullable=False)
    meeting_point = Column(JSON, nullable=False)
    dropoff_point = Column(JSON, nullable=False)
    departure_time = Column(String(32), nullable=False)
    estimated_total_cost = Column(Integer, nullable=False)
    cost_per_person = Column(Integer, nullable=False)
    total_seats = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False)
    confirmations = Column(JSON, nullable=False)
    chat_room_id = Column(String(64), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(String(32), nullable=False)
    updated_at = Column(String(32), nullable=False)
    confirmed_at = Column(String(32), nullable=True)
    completed_at = Column(String(32), nullable=True)
    cancelled_at = Column(String(32), nullable=True)

    __table_args__ = (
        Index("idx_matches_status_departure", "status", "departure_time"),
        Index("idx_matches_status_created", "status", "created_at"),
    )

    def to_domain(self) -> RideMatch:
        return RideMatch(
            id=self.id,
            request_ids=list(self.request_ids),
            participants=[MatchParticipant.model_validate(p) for p in self.participants],
            meeting_point=GeoLocation.model_validate(self.meeting_point),
            dropoff_point=GeoLocation.model_validate(self.dropoff_point),
            departure_time=from_storage(self.departure_time),
            estimated_total_cost=self.estimated_total_cost,
            cost_per_person=self.cost_per_person,
            total_seats=self.total_seats,
            status=self.status,
            confirmations=list(self.confirmations or []),
            chat_room_id=self.chat_room_id,
            cancellation_reason=self.cancellation_reason,
            version=self.version,
            created_at=from_storage(self.created_at),
            updated_at=from_storage(self.updated_at),
            confirmed_at=from_storage(self.confirmed_at),
            completed_at=from_storage(self.completed_at),
            cancelled_at=from_storage(self.cancelled_at),
        )

    @classmethod
    def from_domain(cls, match: RideMatch) -> "RideMatchModel":
        return cls(
            id=match.id,
            request_ids=list(match.request_ids),
            participants=[p.model_dump(mode="json") for p in match.participants],
            meeting_point=match.meeting_point.model_dump(mode="json"),
            dropoff_point=match.dropoff_point.model_dump(mode="json"),
            departure_time=to_storage(match.departure_time),
            estimated_total_cost=match.estimated_total_cost,
            cost_per_person=match.cost_per_person,
            total_seats=match.total_seats,
            status=match.status.value,
            confirmations=list(match.confirmations),
            chat_room_id=match.chat_room_id,
            cancellation_reason=match.cancellation_reason,
            version=match.version,
            created_at=to_storage(match.created_at),
            updated_at=to_storage(match.updated_at),
            confirmed_at=to_storage(match.confirmed_at),
            completed_at=to_storage(match.completed_at),
            cancelled_at=to_storage(match.cancelled_at),
        )


class NotificationModel(Base):
    """ORM model for the notifications table (per-user inbox)."""

    __tablename__ = "notifications"

    id = Column(String(64), primary_key=True, nullable=False)
    user_id = Column(String(64), nullable=False)
    type = Column(String(48), nullable=False)
    priority = Column(String(16), nullable=False)
    title = Column(Text, nullable=False)
    body = Column(Text, nullable=False)
    data = Column(JSON, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)
    is_deleted = Column(Boolean, nullable=False, default=False)
    created_at = Column(String(32), nullable=False)
    read_at = Column(String(32), nullable=True)

    __table_args__ = (
        Index("idx_notifications_user_created", "user_id", "created_at"),
    )

    def to_domain(self) -> Notification:
        return Notification(
            id=self.id,
            user_id=self.user_id,
            type=self.type,
            priority=self.priority,
            title=self.title,
            body=self.body,
            data=dict(self.data or {}),
            is_read=bool(self.is_read),
            is_deleted=bool(self.is_deleted),
            created_at=from_storage(self.created_at),
            read_at=from_storage(self.read_at),
        )

    @classmethod
    def from_domain(cls, notification: Notification) -> "NotificationModel":
        return cls(
            id=notification.id,
            user_id=notification.user_id,
            type=notification.type.value,
            priority=notification.priority.value,
            title=notification.title,
            body=notification.body,
            data=dict(notification.data),
            is_read=notification.is_read,
            is_deleted=notification.is_deleted,
            created_at=to_storage(notification.created_at),
            read_at=to_storage(notification.read_at),
        )


class ChatMessageModel(Base):
    __tablename__ = "chat_messages"

    id = Column(String(64), primary_key=True, nullable=False)
    match_id = Column(String(64), nullable=False)
    sender_id = Column(String(64), nullable=False)
    sender_name = Column(String(255), nullable=False)
    type = Column(String(16), nullable=False)
    message = Column(Text, nullable=False)
    created_at = Column(String(32), nullable=False)

    __table_args__ = (Index("idx_chat_match_created", "match_id", "created_at"),)

    def to_domain(self) -> ChatMessage:
        return ChatMessage(
            id=self.id,
            match_id=self.match_id,
            sender_id=self.sender_id,
            sender_name=self.sender_name,
            type=self.type,
            message=self.message,
            created_at=from_storage(self.created_at),
        )

    @classmethod
    def from_domain(cls, message: ChatMessage) -> "ChatMessageModel":
        return cls(
            id=message.id,
            match_id=message.match_id,
            sender_id=message.sender_id,
            sender_name=message.sender_name,
            type=message.type,
            message=message.message,
            created_at=to_storage(message.created_at),
        )


class ScheduledTaskModel(Base):
    """ORM model for durable one-shot timers, at most one per (match, kind)."""

    __tablename__ = "scheduled_tasks"

    id = Column(String(64), primary_key=True, nullable=False)
    kind = Column(String(48), nullable=False)
    match_id = Column(String(64), nullable=False)
    fire_at = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False)
    created_at = Column(String(32), nullable=False)
    completed_at = Column(String(32), nullable=True)

    __table_args__ = (
        UniqueConstraint("match_id", "kind", name="uq_tasks_match_kind"),
        Index("idx_tasks_status_fire", "status", "fire_at"),
    )

    def to_domain(self) -> ScheduledTask:
        return ScheduledTask(
            id=self.id,
            kind=self.kind,
            match_id=self.match_id,
            fire_at=from_storage(self.fire_at),
            status=self.status,
            created_at=from_storage(self.created_at),
            completed_at=from_storage(self.completed_at),
        )

    @classmethod
    def from_domain(cls, task: ScheduledTask) -> "ScheduledTaskModel":
        return cls(
            id=task.id,
            kind=task.kind.value,
            match_id=task.match_id,
            fire_at=to_storage(task.fire_at),
            status=task.status.value,
            created_at=to_storage(task.created_at),
            completed_at=to_storage(task.completed_at),
        )


def create_schema(engine: Engine) -> None:
    """Create all tables and indexes if they don't exist (idempotent).

    Args:
        engine: SQLAlchemy engine instance
    """
    Base.metadata.create_all(engine, checkfirst=True)
    tables = inspect(engine).get_table_names()
    logger.info(
        f"Database schema ready. Tables: {', '.join(sorted(tables))}",
        extra={"event": "database.schema.ready"},
    )
