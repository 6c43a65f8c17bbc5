"""Periodic maintenance sweeps that enforce match and request time limits.

Each sweep queries candidate ids in a short read transaction, then hands every
record to the lifecycle manager, which re-checks the condition inside its own
transaction. A record that another actor already moved on is counted as
skipped; any other error is logged and counted as failed, and the sweep keeps
going.
"""

import threading
import time
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from ridematch.config.models import LifecycleConfig
from ridematch.domain.exceptions import ConflictError, InvalidStateError
from ridematch.domain.models import TaskKind
from ridematch.lifecycle.manager import MatchLifecycleManager
from ridematch.logging import get_logger
from ridematch.logging.context import log_context
from ridematch.persistence.database import Database
from ridematch.persistence.repositories import (
    RideMatchRepository,
    RideRequestRepository,
    ScheduledTaskRepository,
)
from ridematch.utils.timestamps import Clock, utc_now

from .models import MaintenanceRunResult, SweepResult

logger = get_logger(__name__, component="maintenance")

# Handler returns True when the record was changed, False when it no longer qualified
RecordHandler = Callable[[str], bool]


class ScheduledMaintenanceJobs:
    """
    Sweeps run by the scheduler (or once from the CLI).

    Each sweep holds its own non-blocking lock, so an overlapping run of the
    same sweep is skipped rather than queued.
    """

    def __init__(
        self,
        database: Database,
        manager: MatchLifecycleManager,
        lifecycle_config: Optional[LifecycleConfig] = None,
        clock: Clock = utc_now,
    ):
        """
        Initialize the sweeps.

        Args:
            database: Datastore used for the candidate queries
            manager: Lifecycle manager that performs every state change
            lifecycle_config: Confirmation timeout used by the timeout sweep
            clock: Source of "now"
        """
        self.database = database
        self.manager = manager
        self.lifecycle = lifecycle_config or manager.lifecycle
        self.clock = clock
        self._locks: Dict[str, threading.Lock] = {
            name: threading.Lock() for name in ("expiry", "timeout", "cleanup", "reminders")
        }

    def run_expiry_sweep(self) -> SweepResult:
        """Cancel pending matches whose departure time has passed."""

        def candidates() -> List[str]:
            with self.database.session() as session:
                return RideMatchRepository(session).pending_departed_ids(self.clock())

        return self._sweep(
            "expiry", candidates, lambda match_id: self.manager.expire_match(match_id) is not None
        )

    def run_timeout_sweep(self) -> SweepResult:
        """Cancel pending matches not fully confirmed within the confirmation timeout."""
        cutoff = self.clock() - timedelta(seconds=self.lifecycle.confirmation_timeout_seconds)

        def candidates() -> List[str]:
            with self.database.session() as session:
                stale = RideMatchRepository(session).pending_created_before(cutoff)
            return [m.id for m in stale if not m.all_confirmed]

        return self._sweep(
            "timeout",
            candidates,
            lambda match_id: self.manager.time_out_match(match_id, cutoff) is not None,
        )

    def run_request_cleanup(self) -> SweepResult:
        """Cancel searching requests whose flexibility window has passed."""

        def candidates() -> List[str]:
            with self.database.session() as session:
                return RideRequestRepository(session).expired_searching_ids(self.clock())

        return self._sweep("cleanup", candidates, self.manager.expire_request)

    def run_due_reminders(self) -> SweepResult:
        """Fire confirmation reminder tasks whose time has come."""

        def candidates() -> List[str]:
            with self.database.session() as session:
                due = ScheduledTaskRepository(session).due(
                    self.clock(), kind=TaskKind.CONFIRMATION_REMINDER
                )
            return [task.id for task in due]

        return self._sweep("reminders", candidates, self.manager.send_confirmation_reminder)

    def run_all(self) -> MaintenanceRunResult:
        """Run every sweep once, in a fixed order."""
        return MaintenanceRunResult(results=[
            self.run_expiry_sweep(),
            self.run_timeout_sweep(),
            self.run_due_reminders(),
            self.run_request_cleanup(),
        ])

    def jobs(self, intervals: Dict[str, int]) -> Dict[str, Tuple[Callable[[], SweepResult], int]]:
        """Pair each sweep with its interval, in the shape the scheduler expects.

        Args:
            intervals: Seconds per sweep name, e.g. ``MaintenanceConfig.job_intervals()``
        """
        sweeps = {
            "expiry": self.run_expiry_sweep,
            "timeout": self.run_timeout_sweep,
            "cleanup": self.run_request_cleanup,
            "reminders": self.run_due_reminders,
        }
        return {name: (sweeps[name], seconds) for name, seconds in intervals.items()}

    def _sweep(
        self, name: str, candidates: Callable[[], List[str]], handle: RecordHandler
    ) -> SweepResult:
        result = SweepResult(name=name, run_started_at=self.clock())
        run_id = uuid4().hex
        lock = self._locks[name]

        with log_context(sweep=name, run_id=run_id):
            if not lock.acquire(blocking=False):
                logger.warning(
                    f"Sweep '{name}' skipped: previous run still in progress",
                    extra={"event": "sweep.skipped", "reason": "lock_held"},
                )
                result.skipped_run = True
                return result.finish(self.clock(), 0.0)

            started = time.monotonic()
            try:
                try:
                    ids = candidates()
                except Exception as e:
                    logger.error(
                        f"Sweep '{name}' could not query candidates: {e}",
                        exc_info=True,
                        extra={"event": "sweep.query.failed", "error_type": type(e).__name__},
                    )
                    result.failed += 1
                    return result.finish(self.clock(), time.monotonic() - started)

                result.examined = len(ids)
                for record_id in ids:
                    self._handle_one(name, record_id, handle, result)

                result.finish(self.clock(), time.monotonic() - started)
                logger.info(
                    f"Sweep '{name}' completed: {result.affected} affected, "
                    f"{result.skipped} skipped, {result.failed} failed",
                    extra={"event": "sweep.completed", **result.to_dict()},
                )
                return result
            finally:
                lock.release()

    @staticmethod
    def _handle_one(name: str, record_id: str, handle: RecordHandler, result: SweepResult) -> None:
        try:
            changed = handle(record_id)
        except (InvalidStateError, ConflictError) as e:
            # Another actor moved the record first
            result.skipped += 1
            logger.info(
                f"Sweep '{name}' lost race on {record_id}: {e}",
                extra={
                    "event": "sweep.record.skipped",
                    "record_id": record_id,
                    "error_type": type(e).__name__,
                },
            )
            return
        except Exception as e:
            result.failed += 1
            logger.error(
                f"Sweep '{name}' failed on {record_id}: {e}",
                exc_info=True,
                extra={
                    "event": "sweep.record.failed",
                    "record_id": record_id,
                    "error_type": type(e).__name__,
                },
            )
            return

        if changed:
            result.affected += 1
        else:
            result.skipped += 1
