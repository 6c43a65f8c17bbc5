"""Configuration schema models using Pydantic."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .duration import DurationParseError, parse_duration, validate_duration_range


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    """Log output formats."""

    JSON = "json"
    KEY_VALUE = "key-value"


def _duration_validator(value: str, label: str, min_seconds: int, max_seconds: int) -> int:
    """Parse a duration field and check its range, raising ValueError for pydantic."""
    try:
        seconds = parse_duration(value)
        validate_duration_range(seconds, min_seconds, max_seconds, label=label)
    except DurationParseError as e:
        raise ValueError(str(e)) from e
    return seconds


class ScoringWeights(BaseModel):
    """Relative weight of each score component. Must sum to 1.0."""

    origin: float = Field(0.40, ge=0, le=1)
    destination: float = Field(0.40, ge=0, le=1)
    time: float = Field(0.10, ge=0, le=1)
    preferences: float = Field(0.05, ge=0, le=1)
    department: float = Field(0.05, ge=0, le=1)

    @model_validator(mode="after")
    def validate_total(self):
        total = self.origin + self.destination + self.time + self.preferences + self.department
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Scoring weights must sum to 1.0 (got {total:.3f})")
        return self


class MatchingConfig(BaseModel):
    """Compatibility cutoffs and ranking thresholds."""

    max_origin_distance_m: float = Field(
        500, gt=0, le=10000, description="Pickup points further apart are ineligible"
    )
    max_destination_distance_m: float = Field(
        1000, gt=0, le=20000, description="Dropoff points further apart are ineligible"
    )
    max_time_difference_min: int = Field(
        30, ge=0, le=240, description="Upper bound on the departure time window"
    )
    min_match_score: int = Field(
        60, ge=0, le=100, description="Candidates scoring below this are not offered"
    )
    candidate_limit: int = Field(
        20, ge=1, le=500, description="Maximum ranked candidates returned per request"
    )
    weights: ScoringWeights = Field(default_factory=ScoringWeights)


class LifecycleConfig(BaseModel):
    """Match lifecycle deadlines."""

    confirmation_timeout: str = Field(
        "30m", description="Pending matches not fully confirmed after this are cancelled"
    )
    reminder_delay: str = Field(
        "5m", description="Delay after match creation before unconfirmed riders are reminded"
    )

    # Computed fields
    confirmation_timeout_seconds: Optional[int] = None
    reminder_delay_seconds: Optional[int] = None

    @model_validator(mode="after")
    def compute_seconds(self):
        self.confirmation_timeout_seconds = _duration_validator(
            self.confirmation_timeout, "confirmation_timeout", 60, 86400
        )
        self.reminder_delay_seconds = _duration_validator(
            self.reminder_delay, "reminder_delay", 30, 86400
        )
        if self.reminder_delay_seconds >= self.confirmation_timeout_seconds:
            raise ValueError(
                "reminder_delay must be shorter than confirmation_timeout, "
                "otherwise reminders fire after the match is already cancelled"
            )
        return self


class PricingConfig(BaseModel):
    """Fare estimate used for match cost splitting."""

    base_fare: float = Field(50, ge=0)
    per_km_rate: float = Field(30, ge=0)
    large_vehicle_seat_threshold: int = Field(
        3, ge=1, description="Total seats above this need a larger vehicle"
    )
    large_vehicle_multiplier: float = Field(1.5, ge=1.0, le=5.0)
    currency_symbol: str = Field("৳", min_length=1)


class MaintenanceConfig(BaseModel):
    """How often each maintenance sweep runs."""

    expiry_interval: str = Field("30m", description="Cancel pending matches past departure")
    timeout_interval: str = Field("15m", description="Cancel unconfirmed pending matches")
    cleanup_interval: str = Field("1h", description="Cancel expired searching requests")
    reminder_interval: str = Field("1m", description="Fire due confirmation reminders")
    enabled: bool = Field(True, description="Start sweeps in daemon mode")

    # Computed fields
    expiry_interval_seconds: Optional[int] = None
    timeout_interval_seconds: Optional[int] = None
    cleanup_interval_seconds: Optional[int] = None
    reminder_interval_seconds: Optional[int] = None

    @model_validator(mode="after")
    def compute_seconds(self):
        for name in ("expiry_interval", "timeout_interval", "cleanup_interval", "reminder_interval"):
            seconds = _duration_validator(getattr(self, name), name, 10, 86400)
            setattr(self, f"{name}_seconds", seconds)
        return self

    def job_intervals(self) -> dict:
        """Map sweep name to interval in seconds."""
        return {
            "expiry": self.expiry_interval_seconds,
            "timeout": self.timeout_interval_seconds,
            "cleanup": self.cleanup_interval_seconds,
            "reminders": self.reminder_interval_seconds,
        }


class PushConfig(BaseModel):
    """Push delivery settings."""

    timeout_seconds: float = Field(10, gt=0, le=120, description="HTTP timeout per push call")
    max_retries: int = Field(2, ge=0, le=10, description="Retries after the first attempt")
    retry_initial_delay: float = Field(1.0, ge=0, le=60, description="Seconds before first retry")
    retry_backoff_multiplier: float = Field(2.0, ge=1.0, le=5.0)
    user_agent: str = Field("RideMatch/1.0", min_length=1)
    delivery_workers: int = Field(4, ge=1, le=32, description="Threads pushing notifications after commit")

    @field_validator("user_agent")
    @classmethod
    def strip_user_agent(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("user_agent cannot be empty")
        return stripped


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: LogLevel = Field(LogLevel.INFO, description="Log level")
    format: LogFormat = Field(
        LogFormat.KEY_VALUE, description="Log output format (json or key-value)"
    )

    model_config = {"use_enum_values": True}


class AppConfig(BaseModel):
    """Root configuration object for the ride-matching engine.

    Every section has defaults, so an empty mapping is a valid configuration.
    """

    matching: MatchingConfig = Field(default_factory=MatchingConfig)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
    pricing: PricingConfig = Field(default_factory=PricingConfig)
    maintenance: MaintenanceConfig = Field(default_factory=MaintenanceConfig)
    push: PushConfig = Field(default_factory=PushConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"extra": "forbid"}
