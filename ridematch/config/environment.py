"""Environment variable loading and validation."""

import os
from typing import Optional
from urllib.parse import urlparse

from .exceptions import ConfigurationError

DEFAULT_DATABASE_URL = "sqlite:///./data/ridematch.db"

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class EnvironmentConfig:
    """Environment variable configuration holder."""

    def __init__(
        self,
        database_url: Optional[str] = None,
        log_level: Optional[str] = None,
        push_endpoint_url: Optional[str] = None,
        push_api_key: Optional[str] = None,
        environment: Optional[str] = None,
    ):
        """Initialize environment configuration."""
        self.database_url = database_url or DEFAULT_DATABASE_URL
        self.log_level = log_level.upper() if log_level else None
        self.push_endpoint_url = push_endpoint_url
        self.push_api_key = push_api_key
        self.environment = environment or "production"

    @property
    def push_enabled(self) -> bool:
        return bool(self.push_endpoint_url)


def load_environment_config() -> EnvironmentConfig:
    """
    Load and validate environment variables.

    All variables are optional:
    - DATABASE_URL: SQLAlchemy database URL (default: sqlite:///./data/ridematch.db)
    - LOG_LEVEL: Override log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    - PUSH_ENDPOINT_URL: HTTP endpoint of the push delivery service; when unset,
      notifications are recorded and logged but not pushed
    - PUSH_API_KEY: Bearer token sent to the push endpoint
    - ENVIRONMENT: Deployment environment name added to every log line

    Returns:
        EnvironmentConfig object with validated values

    Raises:
        ConfigurationError: If any variable is set to an invalid value
    """
    errors = []

    database_url = os.getenv("DATABASE_URL")
    log_level = os.getenv("LOG_LEVEL")
    push_endpoint_url = os.getenv("PUSH_ENDPOINT_URL")
    push_api_key = os.getenv("PUSH_API_KEY")
    environment = os.getenv("ENVIRONMENT")

    if database_url is not None and "://" not in database_url:
        errors.append(
            f"Invalid DATABASE_URL: '{database_url}'. Expected a URL such as {DEFAULT_DATABASE_URL}"
        )

    if log_level and log_level.upper() not in VALID_LOG_LEVELS:
        errors.append(
            f"Invalid LOG_LEVEL: '{log_level}'. Must be one of: {', '.join(VALID_LOG_LEVELS)}"
        )

    if push_endpoint_url:
        parsed = urlparse(push_endpoint_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            errors.append(
                f"Invalid PUSH_ENDPOINT_URL: '{push_endpoint_url}'. Must be an http(s) URL."
            )

    if push_api_key and not push_endpoint_url:
        errors.append("PUSH_API_KEY is set but PUSH_ENDPOINT_URL is not.")

    if errors:
        raise ConfigurationError(
            "Environment variable validation failed",
            errors=errors,
            suggestions=[
                "Copy .env.example to .env and adjust the values",
                "Unset optional variables you do not need",
            ],
        )

    return EnvironmentConfig(
        database_url=database_url,
        log_level=log_level,
        push_endpoint_url=push_endpoint_url,
        push_api_key=push_api_key,
        environment=environment,
    )
