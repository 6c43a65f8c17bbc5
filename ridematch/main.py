"""Main entry point for the ride-matching maintenance service."""

import argparse
import signal
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from dotenv import load_dotenv

from ridematch.config.environment import EnvironmentConfig
from ridematch.config.exceptions import ConfigurationError
from ridematch.config.loader import load_config
from ridematch.config.models import AppConfig
from ridematch.lifecycle import MatchLifecycleManager
from ridematch.logging import get_logger
from ridematch.logging.config import configure_logging
from ridematch.maintenance import ScheduledMaintenanceJobs
from ridematch.matching import MatchScorer
from ridematch.notifications import NotificationDispatcher, build_push_gateway
from ridematch.persistence.database import Database, init_database
from ridematch.persistence.exceptions import PersistenceError
from ridematch.scheduler import SchedulerService

logger = get_logger(__name__, component="cli")


@dataclass
class Services:
    """Object graph shared by the CLI modes."""

    database: Database
    dispatcher: NotificationDispatcher
    manager: MatchLifecycleManager
    jobs: ScheduledMaintenanceJobs


def load_runtime_config(
    config_path: Optional[Path], log_level_override: Optional[str]
) -> Tuple[AppConfig, EnvironmentConfig]:
    """
    Load and prepare runtime configuration.

    Args:
        config_path: Path to configuration file (None searches the default locations)
        log_level_override: Log level from CLI (takes precedence)

    Returns:
        Tuple of (AppConfig, EnvironmentConfig)

    Raises:
        ConfigurationError: If configuration is invalid
    """
    app_config, env_config = load_config(config_path)

    # Log level priority: CLI > environment > config file
    if log_level_override:
        env_config.log_level = log_level_override
    elif not env_config.log_level:
        env_config.log_level = app_config.logging.level

    return app_config, env_config


def build_services(app_config: AppConfig, env_config: EnvironmentConfig) -> Services:
    """Wire database, notifications, lifecycle manager and sweeps together."""
    database = init_database(env_config.database_url)

    dispatcher = NotificationDispatcher(
        gateway=build_push_gateway(env_config, app_config.push),
        push_config=app_config.push,
    )
    manager = MatchLifecycleManager(
        database=database,
        dispatcher=dispatcher,
        scorer=MatchScorer(app_config.matching),
        lifecycle_config=app_config.lifecycle,
        pricing_config=app_config.pricing,
    )
    jobs = ScheduledMaintenanceJobs(database, manager, app_config.lifecycle)

    logger.info(
        "Services initialized",
        extra={
            "event": "services.initialized",
            "push_enabled": env_config.push_enabled,
            "maintenance_enabled": app_config.maintenance.enabled,
        },
    )
    return Services(database=database, dispatcher=dispatcher, manager=manager, jobs=jobs)


def run_once(services: Services) -> int:
    """Run every sweep once. Exit code 1 if any record failed."""
    logger.info("Executing one-shot maintenance run", extra={"event": "service.run_once.starting"})
    result = services.jobs.run_all()

    logger.info(
        f"Maintenance run completed: {result.total_affected} records changed",
        extra={
            "event": "service.run_once.completed",
            "had_errors": result.had_errors,
            "sweeps": [r.to_dict() for r in result.results],
        },
    )
    return 1 if result.had_errors else 0


def run_daemon(services: Services, app_config: AppConfig) -> int:
    """Start the scheduler and block until SIGINT/SIGTERM."""
    if not app_config.maintenance.enabled:
        logger.warning(
            "Maintenance is disabled in configuration; nothing to schedule",
            extra={"event": "service.daemon_mode.disabled"},
        )
        return 0

    shutdown_event = threading.Event()
    scheduler_service = SchedulerService(
        jobs=services.jobs.jobs(app_config.maintenance.job_intervals()),
        shutdown_event=shutdown_event,
    )

    def signal_handler(signum, frame):
        logger.info(
            f"Received signal {signum}, shutting down",
            extra={"event": "service.signal_received", "signal": signum},
        )
        scheduler_service.shutdown(wait=False)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    scheduler_service.start()
    logger.info(
        "Scheduler started. Press Ctrl+C to stop",
        extra={"event": "service.daemon_mode.started"},
    )

    try:
        shutdown_event.wait()
    except KeyboardInterrupt:
        logger.info(
            "Keyboard interrupt received, shutting down",
            extra={"event": "service.keyboard_interrupt"},
        )
        scheduler_service.shutdown(wait=False)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    start_time = time.time()
    parser = argparse.ArgumentParser(
        description="RideMatch - shared ride matching engine maintenance service"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (default: config.yaml or config/config.yaml)",
    )
    parser.add_argument(
        "--run-once",
        action="store_true",
        help="Run every maintenance sweep once and exit",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (overrides config and environment)",
    )
    args = parser.parse_args(argv)

    load_dotenv()

    try:
        app_config, env_config = load_runtime_config(args.config, args.log_level)
    except ConfigurationError as e:
        print(f"Configuration Error: {e}", file=sys.stderr)
        return 1

    configure_logging(
        level=env_config.log_level,
        format_type=app_config.logging.format,
        environment=env_config.environment,
    )
    logger.info(
        "RideMatch starting",
        extra={
            "event": "service.starting",
            "config_path": str(args.config) if args.config else None,
            "log_level": env_config.log_level,
            "run_once": args.run_once,
        },
    )

    try:
        services = build_services(app_config, env_config)
    except PersistenceError as e:
        print(f"Database Error: {e}", file=sys.stderr)
        logger.critical(
            "Fatal error during startup",
            exc_info=True,
            extra={"event": "service.startup.failed", "error_type": type(e).__name__},
        )
        return 1

    try:
        if args.run_once:
            exit_code = run_once(services)
        else:
            exit_code = run_daemon(services, app_config)
    finally:
        services.dispatcher.shutdown()
        services.database.close()

    logger.info(
        "RideMatch stopped",
        extra={"event": "service.stopping", "uptime_seconds": round(time.time() - start_time, 2)},
    )
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
