"""Data access layer (repositories) for persistence operations.

Repositories wrap a session, return domain models rather than ORM models, and
translate SQLAlchemy errors into persistence exceptions.

State changes use guarded UPDATE statements (``... WHERE id = ? AND status = ?``)
and report whether a row was actually changed. A False result means another
writer got there first; deciding what that means is left to the caller.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ridematch.domain.models import (
    ChatMessage,
    MatchStatus,
    Notification,
    RequestStatus,
    RideMatch,
    RideRequest,
    ScheduledTask,
    TaskKind,
    TaskStatus,
)
from ridematch.utils.geo import BoundingBox
from ridematch.utils.timestamps import to_storage

from .exceptions import DataIntegrityError, PersistenceError
from .schema import (
    ChatMessageModel,
    NotificationModel,
    RideMatchModel,
    RideRequestModel,
    ScheduledTaskModel,
)

logger = logging.getLogger(__name__)

# Guarded updates must not try to reconcile the identity map
_NO_SYNC = {"synchronize_session": False}


@contextmanager
def _translate_errors(action: str):
    """Re-raise SQLAlchemy errors as persistence exceptions."""
    try:
        yield
    except IntegrityError as e:
        logger.error(f"Integrity error while trying to {action}: {e}", exc_info=True)
        raise DataIntegrityError(f"Failed to {action} due to constraint violation: {e}") from e
    except SQLAlchemyError as e:
        logger.error(f"Database error while trying to {action}: {e}", exc_info=True)
        raise PersistenceError(f"Failed to {action}: {e}") from e


class RideRequestRepository:
    """Repository for ride request rows."""

    def __init__(self, session: Session):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy session for database operations
        """
        self.session = session

    def add(self, request: RideRequest) -> RideRequest:
        """Insert a new request.

        Raises:
            DataIntegrityError: If the id already exists
            PersistenceError: If database error occurs
        """
        with _translate_errors(f"insert ride request {request.id}"):
            self.session.add(RideRequestModel.from_domain(request))
            self.session.flush()
        return request

    def get(self, request_id: str) -> Optional[RideRequest]:
        """Retrieve a request by id, or None."""
        with _translate_errors(f"retrieve ride request {request_id}"):
            stmt = (
                select(RideRequestModel)
                .where(RideRequestModel.id == request_id)
                .execution_options(populate_existing=True)
            )
            row = self.session.execute(stmt).scalar_one_or_none()
        return row.to_domain() if row else None

    def get_many(self, request_ids: Iterable[str]) -> Dict[str, RideRequest]:
        """Retrieve several requests keyed by id. Unknown ids are absent."""
        ids = list(request_ids)
        if not ids:
            return {}
        with _translate_errors("retrieve ride requests"):
            stmt = (
                select(RideRequestModel)
                .where(RideRequestModel.id.in_(ids))
                .execution_options(populate_existing=True)
            )
            rows = self.session.execute(stmt).scalars().all()
        return {row.id: row.to_domain() for row in rows}

    def find_searching_in_box(
        self,
        box: BoundingBox,
        exclude_user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[RideRequest]:
        """Searching requests whose origin lies inside the bounding box.

        Args:
            box: Origin pre-filter box
            exclude_user_id: Skip requests of this user
            limit: Maximum rows, oldest first

        Returns:
            List of RideRequest domain models
        """
        with _translate_errors("search candidate requests"):
            stmt = (
                select(RideRequestModel)
                .where(
                    RideRequestModel.status == RequestStatus.SEARCHING.value,
                    RideRequestModel.origin_lat.between(box.min_lat, box.max_lat),
                    RideRequestModel.origin_lon.between(box.min_lon, box.max_lon),
                )
                .order_by(RideRequestModel.created_at, RideRequestModel.id)
            )
            if exclude_user_id is not None:
                stmt = stmt.where(RideRequestModel.user_id != exclude_user_id)
            if limit is not None:
                stmt = stmt.limit(limit)
            rows = self.session.execute(stmt).scalars().all()
        return [row.to_domain() for row in rows]

    def list_for_match(self, match_id: str) -> List[RideRequest]:
        with _translate_errors(f"retrieve requests for match {match_id}"):
            stmt = (
                select(RideRequestModel)
                .where(RideRequestModel.match_id == match_id)
                .execution_options(populate_existing=True)
            )
            rows = self.session.execute(stmt).scalars().all()
        return [row.to_domain() for row in rows]

    def expired_searching_ids(self, now: datetime) -> List[str]:
        """Ids of searching requests whose expires_at is before now."""
        with _translate_errors("find expired requests"):
            stmt = (
                select(RideRequestModel.id)
                .where(
                    RideRequestModel.status == RequestStatus.SEARCHING.value,
                    RideRequestModel.expires_at < to_storage(now),
                )
                .order_by(RideRequestModel.expires_at)
            )
            return list(self.session.execute(stmt).scalars().all())

    def claim_for_match(
        self, request_id: str, match_id: str, matched_with: Sequence[str], now: datetime
    ) -> bool:
        """Move a searching request to matched. False if it is no longer searching."""
        with _translate_errors(f"claim ride request {request_id}"):
            stmt = (
                update(RideRequestModel)
                .where(
                    RideRequestModel.id == request_id,
                    RideRequestModel.status == RequestStatus.SEARCHING.value,
                )
                .values(
                    status=RequestStatus.MATCHED.value,
                    match_id=match_id,
                    matched_with=list(matched_with),
                    updated_at=to_storage(now),
                )
                .execution_options(**_NO_SYNC)
            )
            return self.session.execute(stmt).rowcount == 1

    def release_from_match(self, request_id: str, match_id: str, now: datetime) -> bool:
        """Return a matched or riding request of this match to searching."""
        with _translate_errors(f"release ride request {request_id}"):
            stmt = (
                update(RideRequestModel)
                .where(
                    RideRequestModel.id == request_id,
                    RideRequestModel.match_id == match_id,
                    RideRequestModel.status.in_(
                        [RequestStatus.MATCHED.value, RequestStatus.RIDING.value]
                    ),
                )
                .values(
                    status=RequestStatus.SEARCHING.value,
                    match_id=None,
                    matched_with=[],
                    updated_at=to_storage(now),
                )
                .execution_options(**_NO_SYNC)
            )
            return self.session.execute(stmt).rowcount == 1

    def set_matched_with(
        self, request_id: str, match_id: str, matched_with: Sequence[str], now: datetime
    ) -> bool:
        with _translate_errors(f"update co-riders of request {request_id}"):
            stmt = (
                update(RideRequestModel)
                .where(
                    RideRequestModel.id == request_id,
                    RideRequestModel.match_id == match_id,
                )
                .values(matched_with=list(matched_with), updated_at=to_storage(now))
                .execution_options(**_NO_SYNC)
            )
            return self.session.execute(stmt).rowcount == 1

    def advance_for_match(
        self,
        match_id: str,
        from_status: RequestStatus,
        to_status: RequestStatus,
        now: datetime,
    ) -> int:
        """Move every request of a match from one status to another.

        Returns:
            Number of requests changed
        """
        with _translate_errors(f"advance requests of match {match_id}"):
            stmt = (
                update(RideRequestModel)
                .where(
                    RideRequestModel.match_id == match_id,
                    RideRequestModel.status == from_status.value,
                )
                .values(status=to_status.value, updated_at=to_storage(now))
                .execution_options(**_NO_SYNC)
            )
            return self.session.execute(stmt).rowcount

    def transition(
        self,
        request_id: str,
        from_status: RequestStatus,
        to_status: RequestStatus,
        now: datetime,
    ) -> bool:
        """Guarded single-request status change."""
        with _translate_errors(f"update ride request {request_id}"):
            stmt = (
                update(RideRequestModel)
                .where(
                    RideRequestModel.id == request_id,
                    RideRequestModel.status == from_status.value,
                )
                .values(status=to_status.value, updated_at=to_storage(now))
                .execution_options(**_NO_SYNC)
            )
            return self.session.execute(stmt).rowcount == 1


class RideMatchRepository:
    """Repository for ride match rows."""

    def __init__(self, session: Session):
        self.session = session

    def add(self, match: RideMatch) -> RideMatch:
        with _translate_errors(f"insert ride match {match.id}"):
            self.session.add(RideMatchModel.from_domain(match))
            self.session.flush()
        return match

    def get(self, match_id: str) -> Optional[RideMatch]:
        with _translate_errors(f"retrieve ride match {match_id}"):
            stmt = (
                select(RideMatchModel)
                .where(RideMatchModel.id == match_id)
                .execution_options(populate_existing=True)
            )
            row = self.session.execute(stmt).scalar_one_or_none()
        return row.to_domain() if row else None

    def compare_and_set(
        self,
        match_id: str,
        expected_status: MatchStatus,
        expected_version: int,
        now: datetime,
        **values,
    ) -> bool:
        """Apply values only if the match is still at (expected_status, expected_version).

        The version is incremented and updated_at set on success. Enum and
        datetime values are converted to their stored form.

        Returns:
            True if the row was updated, False if another writer got there first
        """
        stored = {}
        for key, value in values.items():
            if isinstance(value, (MatchStatus,)):
                value = value.value
            elif isinstance(value, datetime):
                value = to_storage(value)
            stored[key] = value

        with _translate_errors(f"update ride match {match_id}"):
            stmt = (
                update(RideMatchModel)
                .where(
                    RideMatchModel.id == match_id,
                    RideMatchModel.status == expected_status.value,
                    RideMatchModel.version == expected_version,
                )
                .values(version=expected_version + 1, updated_at=to_storage(now), **stored)
                .execution_options(**_NO_SYNC)
            )
            return self.session.execute(stmt).rowcount == 1

    def pending_departed_ids(self, now: datetime) -> List[str]:
        """Ids of pending matches whose departure time has passed."""
        with _translate_errors("find departed matches"):
            stmt = (
                select(RideMatchModel.id)
                .where(
                    RideMatchModel.status == MatchStatus.PENDING.value,
                    RideMatchModel.departure_time < to_storage(now),
                )
                .order_by(RideMatchModel.departure_time)
            )
            return list(self.session.execute(stmt).scalars().all())

    def pending_created_before(self, cutoff: datetime) -> List[RideMatch]:
        """Pending matches created before the cutoff, oldest first."""
        with _translate_errors("find stale pending matches"):
            stmt = (
                select(RideMatchModel)
                .where(
                    RideMatchModel.status == MatchStatus.PENDING.value,
                    RideMatchModel.created_at < to_storage(cutoff),
                )
                .order_by(RideMatchModel.created_at)
            )
            rows = self.session.execute(stmt).scalars().all()
        return [row.to_domain() for row in rows]

    def count_by_status(self) -> Dict[str, int]:
        with _translate_errors("count matches"):
            stmt = select(RideMatchModel.status, func.count()).group_by(RideMatchModel.status)
            return {status: count for status, count in self.session.execute(stmt).all()}


class NotificationRepository:
    """Repository for inbox notifications."""

    def __init__(self, session: Session):
        self.session = session

    def add_many(self, notifications: Iterable[Notification]) -> List[Notification]:
        notifications = list(notifications)
        with _translate_errors("insert notifications"):
            self.session.add_all(NotificationModel.from_domain(n) for n in notifications)
            self.session.flush()
        return notifications

    def get(self, notification_id: str) -> Optional[Notification]:
        with _translate_errors(f"retrieve notification {notification_id}"):
            row = self.session.get(NotificationModel, notification_id)
        return row.to_domain() if row else None

    def list_for_user(
        self, user_id: str, unread_only: bool = False, limit: int = 50
    ) -> List[Notification]:
        """Visible notifications of a user, newest first."""
        with _translate_errors(f"list notifications for {user_id}"):
            stmt = (
                select(NotificationModel)
                .where(
                    NotificationModel.user_id == user_id,
                    NotificationModel.is_deleted.is_(False),
                )
                .order_by(NotificationModel.created_at.desc(), NotificationModel.id.desc())
                .limit(limit)
            )
            if unread_only:
                stmt = stmt.where(NotificationModel.is_read.is_(False))
            rows = self.session.execute(stmt).scalars().all()
        return [row.to_domain() for row in rows]

    def unread_count(self, user_id: str) -> int:
        with _translate_errors(f"count unread notifications for {user_id}"):
            stmt = select(func.count()).select_from(NotificationModel).where(
                NotificationModel.user_id == user_id,
                NotificationModel.is_read.is_(False),
                NotificationModel.is_deleted.is_(False),
            )
            return int(self.session.execute(stmt).scalar_one())

    def mark_read(self, notification_id: str, user_id: str, now: datetime) -> bool:
        """Mark one of the user's notifications read. False if not found or already read."""
        with _translate_errors(f"mark notification {notification_id} read"):
            stmt = (
                update(NotificationModel)
                .where(
                    NotificationModel.id == notification_id,
                    NotificationModel.user_id == user_id,
                    NotificationModel.is_read.is_(False),
                )
                .values(is_read=True, read_at=to_storage(now))
                .execution_options(**_NO_SYNC)
            )
            return self.session.execute(stmt).rowcount == 1

    def mark_all_read(self, user_id: str, now: datetime) -> int:
        with _translate_errors(f"mark notifications read for {user_id}"):
            stmt = (
                update(NotificationModel)
                .where(
                    NotificationModel.user_id == user_id,
                    NotificationModel.is_read.is_(False),
                    NotificationModel.is_deleted.is_(False),
                )
                .values(is_read=True, read_at=to_storage(now))
                .execution_options(**_NO_SYNC)
            )
            return self.session.execute(stmt).rowcount

    def soft_delete(self, notification_id: str, user_id: str) -> bool:
        with _translate_errors(f"delete notification {notification_id}"):
            stmt = (
                update(NotificationModel)
                .where(
                    NotificationModel.id == notification_id,
                    NotificationModel.user_id == user_id,
                    NotificationModel.is_deleted.is_(False),
                )
                .values(is_deleted=True)
                .execution_options(**_NO_SYNC)
            )
            return self.session.execute(stmt).rowcount == 1


class ChatMessageRepository:
    """Repository for match chat messages."""

    def __init__(self, session: Session):
        self.session = session

    def add(self, message: ChatMessage) -> ChatMessage:
        with _translate_errors(f"insert chat message for match {message.match_id}"):
            self.session.add(ChatMessageModel.from_domain(message))
            self.session.flush()
        return message

    def list_for_match(self, match_id: str) -> List[ChatMessage]:
        with _translate_errors(f"list chat messages for match {match_id}"):
            stmt = (
                select(ChatMessageModel)
                .where(ChatMessageModel.match_id == match_id)
                .order_by(ChatMessageModel.created_at, ChatMessageModel.id)
            )
            rows = self.session.execute(stmt).scalars().all()
        return [row.to_domain() for row in rows]


class ScheduledTaskRepository:
    """Repository for durable scheduled tasks."""

    def __init__(self, session: Session):
        self.session = session

    def add(self, task: ScheduledTask) -> ScheduledTask:
        """Insert a task.

        Raises:
            DataIntegrityError: If a task of the same kind already exists for the match
        """
        with _translate_errors(f"schedule {task.kind.value} for match {task.match_id}"):
            self.session.add(ScheduledTaskModel.from_domain(task))
            self.session.flush()
        return task

    def get(self, task_id: str) -> Optional[ScheduledTask]:
        with _translate_errors(f"retrieve task {task_id}"):
            stmt = (
                select(ScheduledTaskModel)
                .where(ScheduledTaskModel.id == task_id)
                .execution_options(populate_existing=True)
            )
            row = self.session.execute(stmt).scalar_one_or_none()
        return row.to_domain() if row else None

    def get_for_match(self, match_id: str, kind: TaskKind) -> Optional[ScheduledTask]:
        with _translate_errors(f"retrieve {kind.value} task for match {match_id}"):
            stmt = (
                select(ScheduledTaskModel)
                .where(
                    ScheduledTaskModel.match_id == match_id,
                    ScheduledTaskModel.kind == kind.value,
                )
                .execution_options(populate_existing=True)
            )
            row = self.session.execute(stmt).scalar_one_or_none()
        return row.to_domain() if row else None

    def due(self, now: datetime, kind: Optional[TaskKind] = None) -> List[ScheduledTask]:
        """Pending tasks whose fire_at is at or before now, earliest first."""
        with _translate_errors("find due tasks"):
            stmt = (
                select(ScheduledTaskModel)
                .where(
                    ScheduledTaskModel.status == TaskStatus.PENDING.value,
                    ScheduledTaskModel.fire_at <= to_storage(now),
                )
                .order_by(ScheduledTaskModel.fire_at, ScheduledTaskModel.id)
            )
            if kind is not None:
                stmt = stmt.where(ScheduledTaskModel.kind == kind.value)
            rows = self.session.execute(stmt).scalars().all()
        return [row.to_domain() for row in rows]

    def claim(self, task_id: str, now: datetime) -> bool:
        """Mark a pending task done. False if another worker already took it."""
        return self._finish(task_id, TaskStatus.DONE, now)

    def skip(self, task_id: str, now: datetime) -> bool:
        """Mark a pending task skipped."""
        return self._finish(task_id, TaskStatus.SKIPPED, now)

    def skip_pending_for_match(self, match_id: str, now: datetime) -> int:
        with _translate_errors(f"skip tasks for match {match_id}"):
            stmt = (
                update(ScheduledTaskModel)
                .where(
                    ScheduledTaskModel.match_id == match_id,
                    ScheduledTaskModel.status == TaskStatus.PENDING.value,
                )
                .values(status=TaskStatus.SKIPPED.value, completed_at=to_storage(now))
                .execution_options(**_NO_SYNC)
            )
            return self.session.execute(stmt).rowcount

    def _finish(self, task_id: str, status: TaskStatus, now: datetime) -> bool:
        with _translate_errors(f"mark task {task_id} {status.value}"):
            stmt = (
                update(ScheduledTaskModel)
                .where(
                    ScheduledTaskModel.id == task_id,
                    ScheduledTaskModel.status == TaskStatus.PENDING.value,
                )
                .values(status=status.value, completed_at=to_storage(now))
                .execution_options(**_NO_SYNC)
            )
            return self.session.execute(stmt).rowcount == 1
