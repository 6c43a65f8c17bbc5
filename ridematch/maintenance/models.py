"""Result models for maintenance sweeps."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional


@dataclass
class SweepResult:
    """
    Outcome of one maintenance sweep.

    Attributes:
        name: Sweep name ("expiry", "timeout", "cleanup", "reminders")
        run_started_at: UTC timestamp when the sweep began
        run_finished_at: UTC timestamp when the sweep completed
        examined: Candidate records found by the sweep query
        affected: Records the sweep actually changed
        skipped: Records that no longer qualified or were won by another actor
        failed: Records whose handling raised an unexpected error
        duration_seconds: Wall time of the sweep
        skipped_run: Whether the sweep was skipped because a previous run was active
    """

    name: str
    run_started_at: datetime
    run_finished_at: Optional[datetime] = None
    examined: int = 0
    affected: int = 0
    skipped: int = 0
    failed: int = 0
    duration_seconds: float = 0.0
    skipped_run: bool = False

    @property
    def had_errors(self) -> bool:
        return self.failed > 0

    def finish(self, finished_at: datetime, duration_seconds: float) -> "SweepResult":
        self.run_finished_at = finished_at
        self.duration_seconds = duration_seconds
        return self

    def to_dict(self) -> Dict[str, object]:
        return {
            "sweep": self.name,
            "examined": self.examined,
            "affected": self.affected,
            "skipped": self.skipped,
            "failed": self.failed,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class MaintenanceRunResult:
    """Aggregate of one ``run_all`` call."""

    results: List[SweepResult] = field(default_factory=list)

    @property
    def had_errors(self) -> bool:
        return any(r.had_errors for r in self.results)

    @property
    def total_affected(self) -> int:
        return sum(r.affected for r in self.results)

    def by_name(self) -> Dict[str, SweepResult]:
        return {r.name: r for r in self.results}
