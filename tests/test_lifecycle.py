"""Unit tests for the match lifecycle manager."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from ridematch.config.models import LifecycleConfig, PricingConfig, PushConfig

from ridematch.domain.exceptions import (
    ConflictError,
    IneligibleGroupError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from ridematch.domain.models import (
    MatchStatus,
    NotificationPriority,
    NotificationType,
    RequestStatus,
    TaskKind,
    TaskStatus,
)
from ridematch.lifecycle import REASON_PARTICIPANT_LEFT, MatchLifecycleManager
from ridematch.matching import MatchScorer
from ridematch.notifications import NotificationDispatcher, NotificationInbox
from ridematch.persistence.repositories import ScheduledTaskRepository

from conftest import DEPARTURE, DEST_A, DEST_B, NOW, ORIGIN_A, ORIGIN_B, RecordingGateway

ORIGIN_C = (23.7905, 90.4105)
DEST_C = (23.8105, 90.4205)


@pytest.fixture
def inbox(database, clock):
    return NotificationInbox(database, clock)


@pytest.fixture
def trio(submit, manager):
    """A pending three-way match between Ayesha, Bilal and Chitra."""
    a = submit("ayesha", origin=ORIGIN_A, destination=DEST_A)
    b = submit("bilal", origin=ORIGIN_B, destination=DEST_B)
    c = submit("chitra", origin=ORIGIN_C, destination=DEST_C)
    match = manager.create_match([a.id, b.id, c.id])
    return a, b, c, match


def reminder_task(database, match_id):
    with database.session() as session:
        return ScheduledTaskRepository(session).get_for_match(match_id, TaskKind.CONFIRMATION_REMINDER)


def types_for(inbox, user_id):
    return [n.type for n in inbox.list(user_id)]


class TestSubmitRequest:
    def test_submit_creates_searching_request(self, submit, manager):
        request = submit("ayesha")

        stored = manager.get_request(request.id)
        assert stored.status == RequestStatus.SEARCHING
        assert stored.expires_at == DEPARTURE + timedelta(minutes=15)
        assert stored.origin.geohash
        assert stored.match_id is None
        assert stored.matched_with == []

    def test_submit_rejects_out_of_range_fields(self, submit):
        with pytest.raises(ValidationError) as exc_info:
            submit("ayesha", flexibility=500)

        assert any("flexibility" in err for err in exc_info.value.errors)

    def test_submit_rejects_already_expired_request(self, submit):
        with pytest.raises(ValidationError):
            submit("ayesha", departure=NOW - timedelta(minutes=30), flexibility=15)

    def test_get_unknown_request(self, manager):
        with pytest.raises(NotFoundError):
            manager.get_request("missing")


class TestFindCandidates:
    def test_ranks_nearby_request_and_skips_far_one(self, submit, manager):
        a = submit("ayesha", origin=(23.79, 90.41))
        b = submit("bilal", origin=(23.791, 90.411), departure=DEPARTURE + timedelta(minutes=10))
        c = submit("chitra", origin=(23.90, 90.50))

        candidates = manager.find_candidates(a.id)

        assert [cand.request_id for cand in candidates] == [b.id]
        assert candidates[0].score > 60
        assert manager.find_candidates(c.id) == []

    def test_excludes_own_requests(self, submit, manager):
        a = submit("ayesha")
        submit("ayesha", origin=ORIGIN_B)

        assert manager.find_candidates(a.id) == []

    def test_request_must_be_searching(self, pair, manager):
        a, _, _ = pair

        with pytest.raises(InvalidStateError):
            manager.find_candidates(a.id)

    def test_unknown_request(self, manager):
        with pytest.raises(NotFoundError):
            manager.find_candidates("missing")


class TestCreateMatch:
    def test_creates_pending_match_and_links_requests(self, pair, manager):
        a, b, match = pair

        assert match.status == MatchStatus.PENDING
        assert match.confirmations == []
        assert match.version == 1
        assert match.request_ids == [a.id, b.id]
        assert match.participant_user_ids == ["ayesha", "bilal"]
        assert match.departure_time == DEPARTURE
        assert match.total_seats == 2
        assert match.chat_room_id == match.id

        stored_a = manager.get_request(a.id)
        stored_b = manager.get_request(b.id)
        assert stored_a.status == RequestStatus.MATCHED
        assert stored_a.match_id == match.id
        assert stored_a.matched_with == ["bilal"]
        assert stored_b.matched_with == ["ayesha"]

    def test_match_found_notifications(self, pair, inbox, gateway):
        _, _, match = pair

        for user_id, other in (("ayesha", "Bilal"), ("bilal", "Ayesha")):
            notifications = inbox.list(user_id)
            assert len(notifications) == 1
            assert notifications[0].type == NotificationType.MATCH_FOUND
            assert notifications[0].priority == NotificationPriority.HIGH
            assert other in notifications[0].body
            assert notifications[0].data == {"match_id": match.id}

        assert len(gateway.sent) == 2

    def test_schedules_confirmation_reminder(self, pair, database):
        _, _, match = pair

        task = reminder_task(database, match.id)

        assert task.status == TaskStatus.PENDING
        assert task.fire_at == NOW + timedelta(minutes=5)

    def test_requires_two_requests(self, submit, manager):
        a = submit("ayesha")

        with pytest.raises(ValidationError):
            manager.create_match([])
        with pytest.raises(ValidationError):
            manager.create_match([a.id])

    def test_rejects_duplicate_ids(self, submit, manager):
        a = submit("ayesha")

        with pytest.raises(ValidationError):
            manager.create_match([a.id, a.id])

    def test_unknown_request(self, submit, manager):
        a = submit("ayesha")

        with pytest.raises(NotFoundError):
            manager.create_match([a.id, "missing"])

    def test_request_already_matched(self, pair, submit, manager):
        a, _, _ = pair
        c = submit("chitra", origin=ORIGIN_C, destination=DEST_C)

        with pytest.raises(ConflictError) as exc_info:
            manager.create_match([a.id, c.id])

        assert "rescan" in exc_info.value.user_message
        assert manager.get_request(c.id).status == RequestStatus.SEARCHING

    def test_ineligible_group_leaves_requests_searching(self, submit, manager, inbox):
        a = submit("ayesha", origin=(23.79, 90.41))
        c = submit("chitra", origin=(23.90, 90.50))

        with pytest.raises(IneligibleGroupError):
            manager.create_match([a.id, c.id])

        assert manager.get_request(a.id).status == RequestStatus.SEARCHING
        assert manager.get_request(c.id).status == RequestStatus.SEARCHING
        assert inbox.list("ayesha") == []

    def test_push_failure_does_not_undo_match(self, submit, manager, gateway, inbox):
        gateway.failures = 100
        a = submit("ayesha", origin=ORIGIN_A, destination=DEST_A)
        b = submit("bilal", origin=ORIGIN_B, destination=DEST_B)

        match = manager.create_match([a.id, b.id])

        assert manager.get_match(match.id).status == MatchStatus.PENDING
        assert len(inbox.list("ayesha")) == 1
        assert gateway.sent == []


class TestConfirm:
    def test_first_confirmation_keeps_match_pending(self, pair, manager):
        _, _, match = pair

        updated = manager.confirm(match.id, "ayesha")

        assert updated.status == MatchStatus.PENDING
        assert updated.confirmations == ["ayesha"]
        assert updated.version == 2
        assert manager.chat_messages(match.id) == []

    def test_repeated_confirmation_is_noop(self, pair, manager):
        _, _, match = pair
        manager.confirm(match.id, "ayesha")

        again = manager.confirm(match.id, "ayesha")

        assert again.confirmations == ["ayesha"]
        assert again.version == 2

    def test_last_confirmation_confirms_match(self, pair, manager, inbox, database, clock):
        _, _, match = pair
        manager.confirm(match.id, "ayesha")

        confirmed = manager.confirm(match.id, "bilal")

        assert confirmed.status == MatchStatus.CONFIRMED
        assert confirmed.confirmed_at == clock()
        assert set(confirmed.confirmations) == {"ayesha", "bilal"}

        messages = manager.chat_messages(match.id)
        assert len(messages) == 1
        assert messages[0].sender_id == "system"
        assert messages[0].message == (
            f"🎉 All participants confirmed! Final cost: ৳{match.cost_per_person} "
            "per person. Ready to ride!"
        )

        for user_id in ("ayesha", "bilal"):
            assert NotificationType.MATCH_CONFIRMED in types_for(inbox, user_id)

        assert reminder_task(database, match.id).status == TaskStatus.SKIPPED

    def test_non_participant(self, pair, manager):
        _, _, match = pair

        with pytest.raises(NotFoundError):
            manager.confirm(match.id, "mallory")

    def test_unknown_match(self, manager):
        with pytest.raises(NotFoundError):
            manager.confirm("missing", "ayesha")

    def test_confirm_cancelled_match(self, pair, manager):
        _, _, match = pair
        manager.cancel_match(match.id, "changed plans")

        with pytest.raises(InvalidStateError) as exc_info:
            manager.confirm(match.id, "ayesha")

        assert exc_info.value.current_state == "cancelled"
        assert exc_info.value.user_message == "This match is no longer pending."


class TestCancelMatch:
    def test_cancel_pending_releases_requests(self, pair, manager, inbox, database, gateway):
        a, b, match = pair

        cancelled = manager.cancel_match(match.id, "changed plans")

        assert cancelled.status == MatchStatus.CANCELLED
        assert cancelled.cancellation_reason == "changed plans"
        assert cancelled.cancelled_at is not None
        for request_id in (a.id, b.id):
            request = manager.get_request(request_id)
            assert request.status == RequestStatus.SEARCHING
            assert request.match_id is None
            assert request.matched_with == []

        for user_id in ("ayesha", "bilal"):
            latest = inbox.list(user_id)[0]
            assert latest.type == NotificationType.MATCH_CANCELLED
            assert "changed plans" in latest.body

        assert reminder_task(database, match.id).status == TaskStatus.SKIPPED
        # Identical message for both riders goes out as one push
        assert gateway.sent[-1][0] == ["ayesha", "bilal"]

    def test_cancel_by_participant_names_them(self, pair, manager, inbox):
        _, _, match = pair

        manager.cancel_match(match.id, "changed plans", cancelled_by="ayesha")

        assert inbox.list("bilal")[0].body == "Ayesha cancelled the ride match."

    def test_cancel_by_outsider(self, pair, manager):
        _, _, match = pair

        with pytest.raises(NotFoundError):
            manager.cancel_match(match.id, "spite", cancelled_by="mallory")

    def test_confirmed_match_requires_force(self, pair, manager):
        a, b, match = pair
        manager.confirm(match.id, "ayesha")
        manager.confirm(match.id, "bilal")

        with pytest.raises(InvalidStateError):
            manager.cancel_match(match.id, "driver unavailable")

        cancelled = manager.cancel_match(match.id, "driver unavailable", force=True)

        assert cancelled.status == MatchStatus.CANCELLED
        assert manager.get_request(a.id).status == RequestStatus.SEARCHING

    def test_riding_match_can_be_force_cancelled(self, pair, manager):
        a, _, match = pair
        manager.confirm(match.id, "ayesha")
        manager.confirm(match.id, "bilal")
        manager.start_ride(match.id)

        manager.cancel_match(match.id, "vehicle broke down", force=True)

        assert manager.get_request(a.id).status == RequestStatus.SEARCHING

    def test_cancelled_match_is_terminal(self, pair, manager):
        _, _, match = pair
        manager.cancel_match(match.id, "changed plans")

        with pytest.raises(InvalidStateError):
            manager.cancel_match(match.id, "again", force=True)


class TestExpireAndTimeOut:
    def test_expire_match_after_departure(self, pair, manager, inbox, clock):
        _, _, match = pair
        clock.advance(hours=2)

        expired = manager.expire_match(match.id)

        assert expired.status == MatchStatus.CANCELLED
        assert expired.cancellation_reason == "departure time passed"
        assert inbox.list("ayesha")[0].title == "⏰ Match Expired"

    def test_expire_match_before_departure_is_skipped(self, pair, manager):
        _, _, match = pair

        assert manager.expire_match(match.id) is None
        assert manager.get_match(match.id).status == MatchStatus.PENDING

    def test_time_out_reports_confirmed_count(self, pair, manager, inbox, clock):
        _, _, match = pair
        manager.confirm(match.id, "ayesha")
        clock.advance(minutes=31)

        timed_out = manager.time_out_match(match.id)

        assert timed_out.status == MatchStatus.CANCELLED
        assert timed_out.cancellation_reason == "confirmation timeout"
        latest = inbox.list("bilal")[0]
        assert latest.title == "⏰ Confirmation Timeout"
        assert "(1/2 confirmed)" in latest.body

    def test_time_out_before_deadline_is_skipped(self, pair, manager, clock):
        _, _, match = pair
        clock.advance(minutes=29)

        assert manager.time_out_match(match.id) is None

    def test_time_out_of_confirmed_match(self, pair, manager, clock):
        _, _, match = pair
        manager.confirm(match.id, "ayesha")
        manager.confirm(match.id, "bilal")
        clock.advance(minutes=31)

        with pytest.raises(InvalidStateError):
            manager.time_out_match(match.id)


class TestLeaveMatch:
    def test_leaving_pair_cancels_match(self, pair, manager):
        a, b, match = pair

        result = manager.leave_match(match.id, "bilal")

        assert result.status == MatchStatus.CANCELLED
        assert result.cancellation_reason == REASON_PARTICIPANT_LEFT
        assert manager.get_request(a.id).status == RequestStatus.SEARCHING
        assert manager.get_request(b.id).status == RequestStatus.SEARCHING

    def test_leaving_trio_reshapes_match(self, trio, manager, inbox):
        a, b, c, match = trio

        result = manager.leave_match(match.id, "chitra")

        assert result.status == MatchStatus.PENDING
        assert result.request_ids == [a.id, b.id]
        assert result.participant_user_ids == ["ayesha", "bilal"]
        assert result.total_seats == 2
        assert result.version == match.version + 1

        left = manager.get_request(c.id)
        assert left.status == RequestStatus.SEARCHING
        assert left.match_id is None
        assert manager.get_request(a.id).matched_with == ["bilal"]

        latest = inbox.list("ayesha")[0]
        assert latest.type == NotificationType.MATCH_UPDATED
        assert latest.body.startswith("Chitra left your ride match.")
        assert inbox.list("chitra")[0].type == NotificationType.MATCH_FOUND

    def test_leaving_makes_remaining_confirmed(self, trio, manager):
        _, _, _, match = trio
        manager.confirm(match.id, "ayesha")
        manager.confirm(match.id, "bilal")

        result = manager.leave_match(match.id, "chitra")

        assert result.status == MatchStatus.CONFIRMED
        assert len(manager.chat_messages(match.id)) == 1

    def test_leaver_confirmation_is_dropped(self, trio, manager):
        _, _, _, match = trio
        manager.confirm(match.id, "chitra")

        result = manager.leave_match(match.id, "chitra")

        assert result.confirmations == []

    def test_leave_requires_pending(self, pair, manager):
        _, _, match = pair
        manager.confirm(match.id, "ayesha")
        manager.confirm(match.id, "bilal")

        with pytest.raises(InvalidStateError):
            manager.leave_match(match.id, "bilal")

    def test_leave_by_outsider(self, pair, manager):
        _, _, match = pair

        with pytest.raises(NotFoundError):
            manager.leave_match(match.id, "mallory")


class TestCancelRequest:
    def test_cancel_searching_request(self, submit, manager):
        a = submit("ayesha")

        cancelled = manager.cancel_request(a.id, "ayesha")

        assert cancelled.status == RequestStatus.CANCELLED

    def test_only_owner_can_cancel(self, submit, manager):
        a = submit("ayesha")

        with pytest.raises(NotFoundError):
            manager.cancel_request(a.id, "bilal")

    def test_cancel_matched_request_unwinds_match(self, pair, manager):
        a, b, match = pair

        cancelled = manager.cancel_request(a.id, "ayesha")

        assert cancelled.status == RequestStatus.CANCELLED
        assert manager.get_match(match.id).status == MatchStatus.CANCELLED
        assert manager.get_request(b.id).status == RequestStatus.SEARCHING

    def test_cancel_request_in_trio_keeps_match(self, trio, manager):
        a, b, c, match = trio

        manager.cancel_request(c.id, "chitra")

        assert manager.get_request(c.id).status == RequestStatus.CANCELLED
        assert manager.get_match(match.id).participant_user_ids == ["ayesha", "bilal"]

    def test_cannot_cancel_riding_request(self, pair, manager):
        a, _, match = pair
        manager.confirm(match.id, "ayesha")
        manager.confirm(match.id, "bilal")
        manager.start_ride(match.id)

        with pytest.raises(InvalidStateError):
            manager.cancel_request(a.id, "ayesha")

    def test_cannot_cancel_twice(self, submit, manager):
        a = submit("ayesha")
        manager.cancel_request(a.id, "ayesha")

        with pytest.raises(InvalidStateError):
            manager.cancel_request(a.id, "ayesha")


class TestExpireRequest:
    def test_expired_request_is_cancelled(self, submit, manager, clock):
        a = submit("ayesha")
        clock.advance(hours=2)

        assert manager.expire_request(a.id) is True
        assert manager.get_request(a.id).status == RequestStatus.CANCELLED

    def test_future_request_untouched(self, submit, manager):
        a = submit("ayesha")

        assert manager.expire_request(a.id) is False
        assert manager.get_request(a.id).status == RequestStatus.SEARCHING


class TestRideProgress:
    def test_full_ride(self, pair, manager, inbox):
        a, b, match = pair
        manager.confirm(match.id, "ayesha")
        manager.confirm(match.id, "bilal")

        riding = manager.start_ride(match.id)

        assert riding.status == MatchStatus.RIDING
        assert manager.get_request(a.id).status == RequestStatus.RIDING
        starting = inbox.list("ayesha")[0]
        assert starting.type == NotificationType.RIDE_STARTING
        assert "departs in 60 minutes" in starting.body

        completed = manager.complete_ride(match.id)

        assert completed.status == MatchStatus.COMPLETED
        assert completed.completed_at is not None
        assert manager.get_request(b.id).status == RequestStatus.COMPLETED
        assert inbox.list("bilal")[0].type == NotificationType.RIDE_COMPLETED

    def test_start_requires_confirmed(self, pair, manager):
        _, _, match = pair

        with pytest.raises(InvalidStateError):
            manager.start_ride(match.id)

    def test_complete_requires_riding(self, pair, manager):
        _, _, match = pair
        manager.confirm(match.id, "ayesha")
        manager.confirm(match.id, "bilal")

        with pytest.raises(InvalidStateError):
            manager.complete_ride(match.id)

    def test_completed_match_is_immutable(self, pair, manager):
        _, _, match = pair
        manager.confirm(match.id, "ayesha")
        manager.confirm(match.id, "bilal")
        manager.start_ride(match.id)
        manager.complete_ride(match.id)

        with pytest.raises(InvalidStateError):
            manager.cancel_match(match.id, "too late", force=True)
        with pytest.raises(InvalidStateError):
            manager.confirm(match.id, "ayesha")


class TestConfirmationReminder:
    def test_reminder_goes_to_unconfirmed_only(self, pair, manager, inbox, database, clock):
        _, _, match = pair
        manager.confirm(match.id, "ayesha")
        task = reminder_task(database, match.id)
        clock.advance(minutes=5)

        assert manager.send_confirmation_reminder(task.id) is True

        assert types_for(inbox, "bilal")[0] == NotificationType.MATCH_CONFIRMATION_REMINDER
        assert inbox.list("bilal")[0].priority == NotificationPriority.HIGH
        assert NotificationType.MATCH_CONFIRMATION_REMINDER not in types_for(inbox, "ayesha")
        assert reminder_task(database, match.id).status == TaskStatus.DONE

    def test_reminder_fires_once(self, pair, manager, database, clock):
        _, _, match = pair
        task = reminder_task(database, match.id)
        clock.advance(minutes=5)
        manager.send_confirmation_reminder(task.id)

        with pytest.raises(InvalidStateError):
            manager.send_confirmation_reminder(task.id)

    def test_reminder_not_yet_due(self, pair, manager, database):
        _, _, match = pair
        task = reminder_task(database, match.id)

        with pytest.raises(InvalidStateError):
            manager.send_confirmation_reminder(task.id)

    def test_unknown_task(self, manager):
        with pytest.raises(NotFoundError):
            manager.send_confirmation_reminder("missing")


class TestPushOffTheCallPath:
    """A push service that keeps failing must not hold up lifecycle calls."""

    @pytest.fixture
    def release(self):
        event = threading.Event()
        yield event
        event.set()

    @pytest.fixture
    def failing_gateway(self):
        return RecordingGateway(failures=100)

    @pytest.fixture
    def background_manager(self, database, clock, id_factory, failing_gateway, release):
        dispatcher = NotificationDispatcher(
            gateway=failing_gateway,
            push_config=PushConfig(),
            clock=clock,
            id_factory=id_factory,
            executor=ThreadPoolExecutor(max_workers=2),
            sleep=lambda seconds: release.wait(timeout=seconds),
        )
        yield MatchLifecycleManager(
            database=database,
            dispatcher=dispatcher,
            scorer=MatchScorer(),
            lifecycle_config=LifecycleConfig(),
            pricing_config=PricingConfig(),
            clock=clock,
            id_factory=id_factory,
        )
        release.set()
        dispatcher.shutdown(wait=True)

    def test_confirm_returns_while_push_keeps_failing(
        self, pair, background_manager, failing_gateway, release, inbox
    ):
        _, _, match = pair

        started = time.monotonic()
        background_manager.confirm(match.id, "ayesha")
        confirmed = background_manager.confirm(match.id, "bilal")
        elapsed = time.monotonic() - started

        assert elapsed < 1.0
        assert confirmed.status == MatchStatus.CONFIRMED
        assert types_for(inbox, "ayesha")[0] == NotificationType.MATCH_CONFIRMED

        release.set()
        background_manager.dispatcher.shutdown(wait=True)
        # Default push settings allow two retries per message
        assert failing_gateway.attempts % 3 == 0
        assert failing_gateway.attempts >= 3
        assert failing_gateway.sent == []

    def test_create_and_cancel_return_while_push_keeps_failing(
        self, submit, background_manager, release
    ):
        a = submit("ayesha", origin=ORIGIN_A, destination=DEST_A)
        b = submit("bilal", origin=ORIGIN_B, destination=DEST_B)

        started = time.monotonic()
        match = background_manager.create_match([a.id, b.id])
        cancelled = background_manager.cancel_match(match.id, "changed plans", cancelled_by="ayesha")
        elapsed = time.monotonic() - started

        assert elapsed < 1.0
        assert cancelled.status == MatchStatus.CANCELLED
