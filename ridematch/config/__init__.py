"""Configuration management module for the ride-matching engine."""

from .duration import DurationParseError, parse_duration
from .environment import EnvironmentConfig, load_environment_config
from .exceptions import ConfigurationError
from .loader import load_config, parse_config, validate_config_file
from .models import (
    AppConfig,
    LifecycleConfig,
    LogFormat,
    LogLevel,
    LoggingConfig,
    MaintenanceConfig,
    MatchingConfig,
    PricingConfig,
    PushConfig,
    ScoringWeights,
)

__all__ = [
    # Main loader functions
    "load_config",
    "parse_config",
    "validate_config_file",
    "load_environment_config",
    # Configuration models
    "AppConfig",
    "MatchingConfig",
    "ScoringWeights",
    "LifecycleConfig",
    "PricingConfig",
    "MaintenanceConfig",
    "PushConfig",
    "LoggingConfig",
    "EnvironmentConfig",
    # Enums
    "LogLevel",
    "LogFormat",
    # Durations
    "parse_duration",
    "DurationParseError",
    # Exceptions
    "ConfigurationError",
]
