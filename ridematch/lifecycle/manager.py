"""Match lifecycle manager: the only code path that changes request and match state.

Every operation runs in a single transaction. State changes are guarded
UPDATEs (compare-and-set on status, plus version for matches), so when two
actors race for the same record exactly one wins and the other observes the
post-transition state:

- ``InvalidStateError`` when the record moved to a different state
- ``ConflictError`` when a request was claimed by another match, or a match
  was edited concurrently without changing state

Notification, chat and reminder rows are written in the same transaction.
Push delivery is queued after commit on a worker thread and never raises.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from ridematch.config.models import LifecycleConfig, PricingConfig
from ridematch.domain.events import LifecycleEvent
from ridematch.domain.exceptions import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from ridematch.domain.models import (
    ChatMessage,
    GeoLocation,
    MatchParticipant,
    MatchStatus,
    Notification,
    NotificationType,
    RequestStatus,
    RideMatch,
    RidePreferences,
    RideRequest,
    RiderProfile,
    ScheduledTask,
    TaskKind,
    TaskStatus,
    TERMINAL_MATCH_STATES,
)
from ridematch.logging import get_logger
from ridematch.logging.context import log_context
from ridematch.matching.models import ScoredCandidate
from ridematch.matching.pricing import quote
from ridematch.matching.scorer import MatchScorer
from ridematch.notifications.dispatcher import NotificationDispatcher
from ridematch.persistence.database import Database
from ridematch.persistence.repositories import (
    ChatMessageRepository,
    RideMatchRepository,
    RideRequestRepository,
    ScheduledTaskRepository,
)
from ridematch.utils.geo import bounding_box, within_radius
from ridematch.utils.timestamps import Clock, utc_now

logger = get_logger(__name__, component="lifecycle")

REASON_DEPARTED = "departure time passed"
REASON_CONFIRMATION_TIMEOUT = "confirmation timeout"
REASON_PARTICIPANT_LEFT = "participant left"

# Attempts for operations that commute (confirm) before reporting a conflict
_CAS_ATTEMPTS = 3

_CANCELLABLE = frozenset(MatchStatus) - TERMINAL_MATCH_STATES


class MatchLifecycleManager:
    """Forms matches and drives them through pending -> confirmed -> riding -> completed.

    Any non-terminal match can end in cancelled. Requests follow their match:
    searching -> matched -> riding -> completed, and back to searching when the
    match is cancelled or the rider leaves it.
    """

    def __init__(
        self,
        database: Database,
        dispatcher: Optional[NotificationDispatcher] = None,
        scorer: Optional[MatchScorer] = None,
        lifecycle_config: Optional[LifecycleConfig] = None,
        pricing_config: Optional[PricingConfig] = None,
        clock: Clock = utc_now,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
        logger_instance: Optional[logging.Logger] = None,
    ):
        """Initialize the manager.

        Args:
            database: Datastore
            dispatcher: Notification dispatcher (log-only push when omitted)
            scorer: Pair scorer used for candidates and group checks
            lifecycle_config: Confirmation timeout and reminder delay
            pricing_config: Fare settings for match cost estimation
            clock: Source of "now"
            id_factory: Generates request, match, message and task ids
            logger_instance: Logger instance (uses module logger if None)
        """
        self.database = database
        self.dispatcher = dispatcher or NotificationDispatcher(clock=clock)
        self.scorer = scorer or MatchScorer()
        self.lifecycle = lifecycle_config or LifecycleConfig()
        self.pricing = pricing_config or PricingConfig()
        self.clock = clock
        self.id_factory = id_factory
        self.logger = logger_instance or logger

    # ------------------------------------------------------------------
    # Requests

    def submit_request(
        self,
        user_id: str,
        rider: Union[RiderProfile, Dict[str, Any]],
        origin: Union[GeoLocation, Dict[str, Any]],
        destination: Union[GeoLocation, Dict[str, Any]],
        departure_time: datetime,
        flexibility: int = 15,
        looking_for_seats: int = 1,
        max_price_per_seat: float = 0.0,
        preferences: Union[RidePreferences, Dict[str, Any], None] = None,
        max_walk_distance: int = 500,
    ) -> RideRequest:
        """Post a new searching request.

        Returns:
            The stored request, with expires_at and geohashes filled in

        Raises:
            ValidationError: If any field is out of range, or the request
                would already be expired
        """
        now = self.clock()
        try:
            request = RideRequest(
                id=self.id_factory(),
                user_id=user_id,
                rider=rider,
                origin=origin,
                destination=destination,
                departure_time=departure_time,
                flexibility=flexibility,
                looking_for_seats=looking_for_seats,
                max_price_per_seat=max_price_per_seat,
                preferences=preferences or RidePreferences(),
                max_walk_distance=max_walk_distance,
                created_at=now,
                updated_at=now,
            )
        except PydanticValidationError as e:
            errors = [
                f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in e.errors()
            ]
            raise ValidationError("Invalid ride request", errors=errors) from e

        if request.expires_at <= now:
            raise ValidationError(
                "Departure time has already passed",
                user_message="Please choose a departure time in the future.",
            )

        with self.database.session() as session:
            RideRequestRepository(session).add(request)

        self.logger.info(
            "Ride request submitted",
            extra={"event": "request.submitted", "request_id": request.id, "user_id": user_id},
        )
        return request

    def find_candidates(self, request_id: str, limit: Optional[int] = None) -> List[ScoredCandidate]:
        """Rank searching requests that could share a ride with this one.

        Raises:
            NotFoundError: If the request does not exist
            InvalidStateError: If the request is no longer searching
        """
        config = self.scorer.config
        with self.database.session() as session:
            repo = RideRequestRepository(session)
            request = self._require_request(repo, request_id)
            if request.status != RequestStatus.SEARCHING:
                raise InvalidStateError(
                    f"Request {request_id} is {request.status.value}, not searching",
                    current_state=request.status.value,
                    user_message="This request is no longer looking for matches.",
                )

            radius_km = config.max_origin_distance_m / 1000.0
            box = bounding_box(request.origin, radius_km)
            pool = [
                r for r in repo.find_searching_in_box(box, exclude_user_id=request.user_id)
                if within_radius(request.origin, r.origin, radius_km)
            ]

        return self.scorer.score_candidates(request, pool, limit or config.candidate_limit)

    def cancel_request(self, request_id: str, user_id: str) -> RideRequest:
        """Owner withdraws a request.

        A searching request is cancelled directly. A request in a pending
        match first leaves the match, then is cancelled.

        Raises:
            NotFoundError: If the request does not exist or belongs to someone else
            InvalidStateError: If the request is riding, completed or already cancelled
        """
        now = self.clock()
        outbox: List[Notification] = []

        with log_context(request_id=request_id), self.database.session() as session:
            repo = RideRequestRepository(session)
            request = self._require_request(repo, request_id)
            if request.user_id != user_id:
                raise NotFoundError(f"Request {request_id} does not belong to {user_id}")

            if request.status == RequestStatus.MATCHED:
                match = self._require_match(RideMatchRepository(session), request.match_id)
                if match.status != MatchStatus.PENDING:
                    raise InvalidStateError(
                        f"Request {request_id} is part of a {match.status.value} match",
                        current_state=match.status.value,
                        user_message="You can no longer cancel this ride.",
                    )
                _, notes = self._leave(session, match, user_id, now)
                outbox.extend(notes)
            elif request.status != RequestStatus.SEARCHING:
                raise InvalidStateError(
                    f"Request {request_id} is {request.status.value}",
                    current_state=request.status.value,
                    user_message="This request can no longer be cancelled.",
                )

            if not repo.transition(request_id, RequestStatus.SEARCHING, RequestStatus.CANCELLED, now):
                self._request_lost_race(repo, request_id)
            request = repo.get(request_id)

        self.logger.info(
            "Ride request cancelled",
            extra={"event": "request.cancelled", "request_id": request_id, "user_id": user_id},
        )
        self.dispatcher.dispatch(outbox)
        return request

    def expire_request(self, request_id: str) -> bool:
        """Cancel a searching request whose window has passed.

        Returns:
            False if the request is no longer searching or not yet expired
        """
        now = self.clock()
        with self.database.session() as session:
            repo = RideRequestRepository(session)
            request = repo.get(request_id)
            if request is None or request.status != RequestStatus.SEARCHING:
                return False
            if request.expires_at >= now:
                return False
            changed = repo.transition(request_id, RequestStatus.SEARCHING, RequestStatus.CANCELLED, now)

        if changed:
            self.logger.info(
                "Expired ride request cancelled",
                extra={"event": "request.expired", "request_id": request_id},
            )
        return changed

    # ------------------------------------------------------------------
    # Match formation and confirmation

    def create_match(self, request_ids: Sequence[str]) -> RideMatch:
        """Form a pending match from two or more searching requests.

        Atomically moves every request to matched, inserts the match with no
        confirmations, records match_found notifications and schedules the
        confirmation reminder.

        Raises:
            ValidationError: Fewer than two ids, or duplicate ids
            NotFoundError: An id does not exist
            ConflictError: A request is not searching, or was claimed concurrently
            IneligibleGroupError: Some pair in the group is incompatible
        """
        ids = list(request_ids)
        if len(ids) < 2:
            raise ValidationError(
                "A match needs at least two requests",
                user_message="Select at least one other rider to match with.",
            )
        if len(set(ids)) != len(ids):
            raise ValidationError("Duplicate request ids in match", errors=ids)

        now = self.clock()
        match_id = self.id_factory()

        with log_context(match_id=match_id):
            with self.database.session() as session:
                requests_repo = RideRequestRepository(session)

                found = requests_repo.get_many(ids)
                missing = [rid for rid in ids if rid not in found]
                if missing:
                    raise NotFoundError(f"Unknown ride requests: {', '.join(missing)}")
                requests = [found[rid] for rid in ids]

                taken = [r.id for r in requests if r.status != RequestStatus.SEARCHING]
                if taken:
                    raise ConflictError(f"Requests no longer searching: {', '.join(taken)}")

                self.scorer.check_group(requests)

                for request in requests:
                    co_riders = [r.user_id for r in requests if r.id != request.id]
                    if not requests_repo.claim_for_match(request.id, match_id, co_riders, now):
                        raise ConflictError(
                            f"Request {request.id} was claimed by another match"
                        )

                match = RideMatch(
                    id=match_id,
                    request_ids=ids,
                    participants=[MatchParticipant.from_request(r) for r in requests],
                    status=MatchStatus.PENDING,
                    confirmations=[],
                    created_at=now,
                    updated_at=now,
                    **quote(requests, self.pricing),
                )
                RideMatchRepository(session).add(match)

                outbox = self.dispatcher.record(session, LifecycleEvent(
                    type=NotificationType.MATCH_FOUND,
                    recipients=match.participant_user_ids,
                    match_id=match.id,
                    context=self._match_context(match),
                ), now)

                ScheduledTaskRepository(session).add(ScheduledTask(
                    id=self.id_factory(),
                    kind=TaskKind.CONFIRMATION_REMINDER,
                    match_id=match.id,
                    fire_at=now + timedelta(seconds=self.lifecycle.reminder_delay_seconds),
                    created_at=now,
                ))

            self.logger.info(
                f"Match created with {len(ids)} participants",
                extra={
                    "event": "match.created",
                    "request_ids": ids,
                    "cost_per_person": match.cost_per_person,
                },
            )

        self.dispatcher.dispatch(outbox)
        return match

    def confirm(self, match_id: str, user_id: str) -> RideMatch:
        """Record a participant's confirmation.

        Repeated confirmation by the same user is a no-op. The confirmation
        that completes the set moves the match to confirmed, posts a system
        chat message and notifies everyone.

        Raises:
            NotFoundError: Unknown match, or user is not a participant
            InvalidStateError: Match is not pending
            ConflictError: Concurrent edits kept winning
        """
        now = self.clock()
        outbox: List[Notification] = []

        with log_context(match_id=match_id), self.database.session() as session:
            repo = RideMatchRepository(session)
            for _ in range(_CAS_ATTEMPTS):
                match = self._require_match(repo, match_id)
                self._require_participant(match, user_id)
                self._require_status(match, MatchStatus.PENDING)

                if user_id in match.confirmations:
                    return match

                confirmations = match.confirmations + [user_id]
                complete = set(match.participant_user_ids) <= set(confirmations)
                values: Dict[str, Any] = {"confirmations": confirmations}
                if complete:
                    values.update(status=MatchStatus.CONFIRMED, confirmed_at=now)

                if repo.compare_and_set(match.id, MatchStatus.PENDING, match.version, now, **values):
                    break
            else:
                raise ConflictError(f"Match {match_id} kept changing while confirming")

            match = self._require_match(repo, match_id)
            if complete:
                outbox.extend(self._on_confirmed(session, match, now))

        self.logger.info(
            "Match confirmed by all participants" if complete else "Participant confirmed",
            extra={
                "event": "match.confirmed" if complete else "match.confirmation.recorded",
                "user_id": user_id,
                "confirmed": len(match.confirmations),
                "total": len(match.participants),
            },
        )
        self.dispatcher.dispatch(outbox)
        return match

    def send_confirmation_reminder(self, task_id: str) -> bool:
        """Fire a due reminder task.

        The match is re-read at fire time: only participants of a still
        pending match who have not confirmed get the reminder. Otherwise the
        task is marked skipped.

        Returns:
            True if reminders were recorded

        Raises:
            NotFoundError: Unknown task
            InvalidStateError: Task already done or skipped, or not yet due
            ConflictError: If another worker handled the task concurrently
        """
        now = self.clock()
        outbox: List[Notification] = []

        with self.database.session() as session:
            tasks = ScheduledTaskRepository(session)
            task = tasks.get(task_id)
            if task is None:
                raise NotFoundError(f"Scheduled task {task_id} not found")
            if task.status != TaskStatus.PENDING:
                raise InvalidStateError(
                    f"Task {task_id} is already {task.status.value}",
                    current_state=task.status.value,
                )
            if task.fire_at > now:
                raise InvalidStateError(f"Task {task_id} is not due until {task.fire_at}")

            with log_context(match_id=task.match_id):
                match = RideMatchRepository(session).get(task.match_id)
                pending = match is not None and match.status == MatchStatus.PENDING
                recipients = match.unconfirmed_user_ids if pending else []

                if not recipients:
                    if not tasks.skip(task.id, now):
                        raise ConflictError(f"Task {task_id} was handled concurrently")
                    self.logger.info(
                        "Confirmation reminder skipped",
                        extra={
                            "event": "reminder.skipped",
                            "match_status": match.status.value if match else None,
                        },
                    )
                    return False

                if not tasks.claim(task.id, now):
                    raise ConflictError(f"Task {task_id} was handled concurrently")

                outbox = self.dispatcher.record(session, LifecycleEvent(
                    type=NotificationType.MATCH_CONFIRMATION_REMINDER,
                    recipients=recipients,
                    match_id=match.id,
                    context=self._match_context(match),
                ), now)

                self.logger.info(
                    f"Confirmation reminder sent to {len(recipients)} participants",
                    extra={"event": "reminder.sent", "recipients": recipients},
                )

        self.dispatcher.dispatch(outbox)
        return True

    # ------------------------------------------------------------------
    # Cancellation and leaving

    def cancel_match(
        self,
        match_id: str,
        reason: str,
        force: bool = False,
        cancelled_by: Optional[str] = None,
    ) -> RideMatch:
        """Cancel a match and return its requests to searching.

        Args:
            match_id: Match to cancel
            reason: Stored on the match and sent to participants
            force: Allow cancelling confirmed or riding matches, not just pending
            cancelled_by: Participant who cancelled, if a rider did

        Raises:
            NotFoundError: Unknown match, or cancelled_by is not a participant
            InvalidStateError: Match is terminal, or not pending without force
        """
        now = self.clock()
        with log_context(match_id=match_id), self.database.session() as session:
            match = self._require_match(RideMatchRepository(session), match_id)
            if cancelled_by is not None:
                self._require_participant(match, cancelled_by)

            match, outbox = self._cancel(
                session, match, reason, now, force=force, cancelled_by=cancelled_by
            )

        self.dispatcher.dispatch(outbox)
        return match

    def expire_match(self, match_id: str) -> Optional[RideMatch]:
        """Cancel a pending match whose departure time has passed.

        Returns:
            The cancelled match, or None if it no longer qualifies

        Raises:
            InvalidStateError: If the match left pending before this call
        """
        now = self.clock()
        with log_context(match_id=match_id), self.database.session() as session:
            match = self._require_match(RideMatchRepository(session), match_id)
            self._require_status(match, MatchStatus.PENDING)
            if match.departure_time >= now:
                return None

            match, outbox = self._cancel(
                session, match, REASON_DEPARTED, now, force=True, template="match_expired"
            )

        self.dispatcher.dispatch(outbox)
        return match

    def time_out_match(self, match_id: str, cutoff: Optional[datetime] = None) -> Optional[RideMatch]:
        """Cancel a pending match created before the cutoff that is not fully confirmed.

        Args:
            match_id: Match to check
            cutoff: Creation time limit (now - confirmation_timeout by default)

        Returns:
            The cancelled match, or None if it no longer qualifies

        Raises:
            InvalidStateError: If the match left pending before this call
        """
        now = self.clock()
        if cutoff is None:
            cutoff = now - timedelta(seconds=self.lifecycle.confirmation_timeout_seconds)

        with log_context(match_id=match_id), self.database.session() as session:
            match = self._require_match(RideMatchRepository(session), match_id)
            self._require_status(match, MatchStatus.PENDING)
            if match.created_at >= cutoff or match.all_confirmed:
                return None

            confirmed = len(set(match.confirmations) & set(match.participant_user_ids))
            match, outbox = self._cancel(
                session,
                match,
                REASON_CONFIRMATION_TIMEOUT,
                now,
                template="confirmation_timeout",
                context={"confirmed": confirmed, "total": len(match.participants)},
            )

        self.dispatcher.dispatch(outbox)
        return match

    def leave_match(self, match_id: str, user_id: str) -> RideMatch:
        """Remove a participant from a pending match.

        The leaver's request goes back to searching. With fewer than two
        riders left the match is cancelled; otherwise it is reshaped around
        the remaining riders (costs, meeting points, departure) and becomes
        confirmed if everyone left has already confirmed.

        Raises:
            NotFoundError: Unknown match, or user is not a participant
            InvalidStateError: Match is not pending
        """
        now = self.clock()
        with log_context(match_id=match_id), self.database.session() as session:
            match = self._require_match(RideMatchRepository(session), match_id)
            match, outbox = self._leave(session, match, user_id, now)

        self.dispatcher.dispatch(outbox)
        return match

    # ------------------------------------------------------------------
    # Ride progress

    def start_ride(self, match_id: str) -> RideMatch:
        """Confirmed -> riding, with every linked request.

        Raises:
            NotFoundError: Unknown match
            InvalidStateError: Match is not confirmed
        """
        now = self.clock()
        with log_context(match_id=match_id), self.database.session() as session:
            repo = RideMatchRepository(session)
            match = self._require_match(repo, match_id)
            self._require_status(match, MatchStatus.CONFIRMED)

            if not repo.compare_and_set(
                match.id, MatchStatus.CONFIRMED, match.version, now, status=MatchStatus.RIDING
            ):
                self._match_lost_race(repo, match_id, MatchStatus.CONFIRMED)
            RideRequestRepository(session).advance_for_match(
                match.id, RequestStatus.MATCHED, RequestStatus.RIDING, now
            )
            match = self._require_match(repo, match_id)

            minutes = max(0, int((match.departure_time - now).total_seconds() // 60))
            outbox = self.dispatcher.record(session, LifecycleEvent(
                type=NotificationType.RIDE_STARTING,
                recipients=match.participant_user_ids,
                match_id=match.id,
                context={**self._match_context(match), "minutes": minutes},
            ), now)

        self.logger.info("Ride started", extra={"event": "match.riding"})
        self.dispatcher.dispatch(outbox)
        return match

    def complete_ride(self, match_id: str) -> RideMatch:
        """Riding -> completed, with every linked request.

        Raises:
            NotFoundError: Unknown match
            InvalidStateError: Match is not riding
        """
        now = self.clock()
        with log_context(match_id=match_id), self.database.session() as session:
            repo = RideMatchRepository(session)
            match = self._require_match(repo, match_id)
            self._require_status(match, MatchStatus.RIDING)

            if not repo.compare_and_set(
                match.id, MatchStatus.RIDING, match.version, now,
                status=MatchStatus.COMPLETED, completed_at=now,
            ):
                self._match_lost_race(repo, match_id, MatchStatus.RIDING)
            RideRequestRepository(session).advance_for_match(
                match.id, RequestStatus.RIDING, RequestStatus.COMPLETED, now
            )
            match = self._require_match(repo, match_id)

            outbox = self.dispatcher.record(session, LifecycleEvent(
                type=NotificationType.RIDE_COMPLETED,
                recipients=match.participant_user_ids,
                match_id=match.id,
                context=self._match_context(match),
            ), now)

        self.logger.info("Ride completed", extra={"event": "match.completed"})
        self.dispatcher.dispatch(outbox)
        return match

    # ------------------------------------------------------------------
    # Reads

    def get_match(self, match_id: str) -> RideMatch:
        """Raises NotFoundError for unknown ids."""
        with self.database.session() as session:
            return self._require_match(RideMatchRepository(session), match_id)

    def get_request(self, request_id: str) -> RideRequest:
        """Raises NotFoundError for unknown ids."""
        with self.database.session() as session:
            return self._require_request(RideRequestRepository(session), request_id)

    def chat_messages(self, match_id: str) -> List[ChatMessage]:
        with self.database.session() as session:
            return ChatMessageRepository(session).list_for_match(match_id)

    # ------------------------------------------------------------------
    # Internals (all run inside the caller's session)

    def _cancel(
        self,
        session: Session,
        match: RideMatch,
        reason: str,
        now: datetime,
        force: bool = False,
        cancelled_by: Optional[str] = None,
        template: str = "match_cancelled",
        context: Optional[Dict[str, Any]] = None,
    ) -> Tuple[RideMatch, List[Notification]]:
        allowed = _CANCELLABLE if force else frozenset({MatchStatus.PENDING})
        if match.status not in allowed:
            raise InvalidStateError(
                f"Match {match.id} is {match.status.value} and cannot be cancelled",
                current_state=match.status.value,
            )

        repo = RideMatchRepository(session)
        if not repo.compare_and_set(
            match.id, match.status, match.version, now,
            status=MatchStatus.CANCELLED, cancellation_reason=reason, cancelled_at=now,
        ):
            self._match_lost_race(repo, match.id, match.status)

        requests = RideRequestRepository(session)
        released = [rid for rid in match.request_ids if requests.release_from_match(rid, match.id, now)]
        ScheduledTaskRepository(session).skip_pending_for_match(match.id, now)

        cancelled = self._require_match(repo, match.id)
        names = {p.user_id: p.first_name for p in match.participants}
        event_context = {
            **self._match_context(cancelled),
            "reason": reason,
            "cancelled_by_name": names.get(cancelled_by) if cancelled_by else None,
            **(context or {}),
        }
        outbox = self.dispatcher.record(session, LifecycleEvent(
            type=NotificationType.MATCH_CANCELLED,
            recipients=match.participant_user_ids,
            match_id=match.id,
            reason=reason,
            template=template,
            context=event_context,
        ), now)

        self.logger.info(
            f"Match cancelled: {reason}",
            extra={
                "event": "match.cancelled",
                "match_id": match.id,
                "previous_status": match.status.value,
                "reason": reason,
                "released_requests": len(released),
            },
        )
        return cancelled, outbox

    def _leave(
        self, session: Session, match: RideMatch, user_id: str, now: datetime
    ) -> Tuple[RideMatch, List[Notification]]:
        self._require_participant(match, user_id)
        self._require_status(match, MatchStatus.PENDING)

        leaver = next(p for p in match.participants if p.user_id == user_id)
        remaining = [p for p in match.participants if p.user_id != user_id]

        if len(remaining) < 2:
            return self._cancel(session, match, REASON_PARTICIPANT_LEFT, now, cancelled_by=user_id)

        requests_repo = RideRequestRepository(session)
        remaining_ids = [p.request_id for p in remaining]
        found = requests_repo.get_many(remaining_ids)
        remaining_requests = [found[rid] for rid in remaining_ids if rid in found]

        confirmations = [uid for uid in match.confirmations if uid != user_id]
        complete = {p.user_id for p in remaining} <= set(confirmations)
        reshaped = quote(remaining_requests, self.pricing)

        values: Dict[str, Any] = {
            "request_ids": remaining_ids,
            "participants": [p.model_dump(mode="json") for p in remaining],
            "confirmations": confirmations,
            "meeting_point": reshaped["meeting_point"].model_dump(mode="json"),
            "dropoff_point": reshaped["dropoff_point"].model_dump(mode="json"),
            "departure_time": reshaped["departure_time"],
            "total_seats": reshaped["total_seats"],
            "estimated_total_cost": reshaped["estimated_total_cost"],
            "cost_per_person": reshaped["cost_per_person"],
        }
        if complete:
            values.update(status=MatchStatus.CONFIRMED, confirmed_at=now)

        match_repo = RideMatchRepository(session)
        if not match_repo.compare_and_set(match.id, MatchStatus.PENDING, match.version, now, **values):
            self._match_lost_race(match_repo, match.id, MatchStatus.PENDING)

        requests_repo.release_from_match(leaver.request_id, match.id, now)
        for p in remaining:
            co_riders = [o.user_id for o in remaining if o.user_id != p.user_id]
            requests_repo.set_matched_with(p.request_id, match.id, co_riders, now)

        updated = self._require_match(match_repo, match.id)
        outbox = self.dispatcher.record(session, LifecycleEvent(
            type=NotificationType.MATCH_UPDATED,
            recipients=updated.participant_user_ids,
            match_id=match.id,
            template="participant_left",
            context={**self._match_context(updated), "leaver_name": leaver.first_name},
        ), now)
        if complete:
            outbox.extend(self._on_confirmed(session, updated, now))

        self.logger.info(
            "Participant left match",
            extra={
                "event": "match.participant_left",
                "match_id": match.id,
                "user_id": user_id,
                "remaining": len(remaining),
            },
        )
        return updated, outbox

    def _on_confirmed(self, session: Session, match: RideMatch, now: datetime) -> List[Notification]:
        """Side effects of the pending -> confirmed transition."""
        context = self._match_context(match)
        _, text = self.dispatcher.renderer.render("chat_confirmed", context)
        ChatMessageRepository(session).add(ChatMessage(
            id=self.id_factory(),
            match_id=match.id,
            sender_id="system",
            sender_name="System",
            type="system",
            message=text,
            created_at=now,
        ))
        ScheduledTaskRepository(session).skip_pending_for_match(match.id, now)

        return self.dispatcher.record(session, LifecycleEvent(
            type=NotificationType.MATCH_CONFIRMED,
            recipients=match.participant_user_ids,
            match_id=match.id,
            context=context,
        ), now)

    def _match_context(self, match: RideMatch) -> Dict[str, Any]:
        return {
            "match_id": match.id,
            "participant_names": {p.user_id: p.first_name for p in match.participants},
            "cost_per_person": match.cost_per_person,
            "estimated_total_cost": match.estimated_total_cost,
            "currency": self.pricing.currency_symbol,
            "departure_time": match.departure_time.strftime("%H:%M"),
            "timeout_minutes": self.lifecycle.confirmation_timeout_seconds // 60,
        }

    @staticmethod
    def _require_request(repo: RideRequestRepository, request_id: str) -> RideRequest:
        request = repo.get(request_id)
        if request is None:
            raise NotFoundError(f"Ride request {request_id} not found")
        return request

    @staticmethod
    def _require_match(repo: RideMatchRepository, match_id: Optional[str]) -> RideMatch:
        match = repo.get(match_id) if match_id else None
        if match is None:
            raise NotFoundError(f"Ride match {match_id} not found")
        return match

    @staticmethod
    def _require_participant(match: RideMatch, user_id: str) -> None:
        if user_id not in match.participant_user_ids:
            raise NotFoundError(
                f"User {user_id} is not a participant of match {match.id}",
                user_message="You are not part of this match.",
            )

    @staticmethod
    def _require_status(match: RideMatch, expected: MatchStatus) -> None:
        if match.status != expected:
            raise InvalidStateError(
                f"Match {match.id} is {match.status.value}, expected {expected.value}",
                current_state=match.status.value,
                user_message=(
                    "This match is no longer pending."
                    if expected == MatchStatus.PENDING
                    else f"This ride is {match.status.value}."
                ),
            )

    def _match_lost_race(
        self, repo: RideMatchRepository, match_id: str, expected: MatchStatus
    ) -> None:
        """Explain a failed compare-and-set on a match. Always raises."""
        current = self._require_match(repo, match_id)
        if current.status != expected:
            raise InvalidStateError(
                f"Match {match_id} moved to {current.status.value} concurrently",
                current_state=current.status.value,
            )
        raise ConflictError(
            f"Match {match_id} was modified concurrently",
            user_message="This match was just updated. Please refresh and try again.",
        )

    def _request_lost_race(self, repo: RideRequestRepository, request_id: str) -> None:
        current = self._require_request(repo, request_id)
        raise InvalidStateError(
            f"Request {request_id} moved to {current.status.value} concurrently",
            current_state=current.status.value,
        )
