"""Shared fixtures: a file-backed database per test, a controllable clock,
a recording push gateway and ride request factories."""

from concurrent.futures import Executor, Future
from datetime import datetime, timedelta, timezone
from itertools import count
from typing import List, Sequence, Tuple

import pytest

from ridematch.config.models import LifecycleConfig, PricingConfig, PushConfig
from ridematch.lifecycle import MatchLifecycleManager
from ridematch.maintenance import ScheduledMaintenanceJobs
from ridematch.matching import MatchScorer
from ridematch.notifications import NotificationDispatcher, PushDeliveryError, PushGateway, PushMessage
from ridematch.persistence.database import Database

NOW = datetime(2025, 11, 4, 13, 0, 0, tzinfo=timezone.utc)
DEPARTURE = datetime(2025, 11, 4, 14, 0, 0, tzinfo=timezone.utc)

# Campus gate and a point ~150 m away, with destinations ~150 m apart
ORIGIN_A = (23.790, 90.410)
ORIGIN_B = (23.791, 90.411)
DEST_A = (23.810, 90.420)
DEST_B = (23.811, 90.421)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingGateway(PushGateway):
    """Push gateway that keeps every send and can be told to fail."""

    def __init__(self, failures: int = 0, retryable: bool = True):
        self.sent: List[Tuple[List[str], PushMessage]] = []
        self.attempts = 0
        self.failures = failures
        self.retryable = retryable

    def send(self, recipient_user_ids: Sequence[str], message: PushMessage) -> None:
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise PushDeliveryError("push service unavailable", status_code=503, retryable=self.retryable)
        self.sent.append((list(recipient_user_ids), message))

    def titles(self) -> List[str]:
        return [message.title for _, message in self.sent]


class InlineExecutor(Executor):
    """Executor that runs each job on the submitting thread before returning."""

    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database(tmp_path):
    db = Database(f"sqlite:///{tmp_path / 'ridematch.db'}")
    db.create_schema()
    yield db
    db.close()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def id_factory():
    counter = count(1)
    return lambda: f"id-{next(counter):04d}"


@pytest.fixture
def dispatcher(gateway, clock, id_factory):
    return NotificationDispatcher(
        gateway=gateway,
        push_config=PushConfig(max_retries=1, retry_initial_delay=0),
        clock=clock,
        id_factory=id_factory,
        executor=InlineExecutor(),
        sleep=lambda seconds: None,
    )


@pytest.fixture
def manager(database, dispatcher, clock, id_factory):
    return MatchLifecycleManager(
        database=database,
        dispatcher=dispatcher,
        scorer=MatchScorer(),
        lifecycle_config=LifecycleConfig(),
        pricing_config=PricingConfig(),
        clock=clock,
        id_factory=id_factory,
    )


@pytest.fixture
def jobs(database, manager, clock):
    return ScheduledMaintenanceJobs(database, manager, manager.lifecycle, clock=clock)


@pytest.fixture
def submit(manager):
    """Submit a searching request with sensible defaults.

    Usage: submit("user-1", origin=(23.79, 90.41), departure=DEPARTURE, first_name="Ayesha")
    """

    def _submit(
        user_id: str,
        origin=ORIGIN_A,
        destination=DEST_A,
        departure: datetime = DEPARTURE,
        first_name: str = None,
        flexibility: int = 15,
        seats: int = 1,
        department: str = None,
        gender: str = None,
        verified: bool = False,
        preferences: dict = None,
    ):
        rider = {
            "first_name": first_name or user_id.title(),
            "department": department,
            "gender": gender,
            "is_student_verified": verified,
        }
        return manager.submit_request(
            user_id=user_id,
            rider=rider,
            origin={"latitude": origin[0], "longitude": origin[1], "address": f"{user_id} pickup"},
            destination={
                "latitude": destination[0],
                "longitude": destination[1],
                "address": f"{user_id} dropoff",
            },
            departure_time=departure,
            flexibility=flexibility,
            looking_for_seats=seats,
            preferences=preferences,
        )

    return _submit


@pytest.fixture
def pair(submit, manager):
    """A pending match between Ayesha and Bilal."""
    a = submit("ayesha", origin=ORIGIN_A, destination=DEST_A)
    b = submit("bilal", origin=ORIGIN_B, destination=DEST_B, departure=DEPARTURE + timedelta(minutes=10))
    match = manager.create_match([a.id, b.id])
    return a, b, match
