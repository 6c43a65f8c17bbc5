"""Unit tests for the main entry point.

Tests the main() function including:
- CLI argument parsing
- Configuration loading with priority (CLI > env > config)
- Service wiring
- One-shot run mode vs daemon mode
- Exit code handling
- Error handling
"""

from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest

from ridematch.config.environment import EnvironmentConfig
from ridematch.config.exceptions import ConfigurationError
from ridematch.config.models import AppConfig, LoggingConfig, MaintenanceConfig
from ridematch.lifecycle import MatchLifecycleManager
from ridematch.main import build_services, load_runtime_config, main, run_daemon, run_once
from ridematch.maintenance import MaintenanceRunResult, ScheduledMaintenanceJobs, SweepResult
from ridematch.notifications import HTTPPushGateway, LogOnlyPushGateway
from ridematch.persistence.exceptions import DatabaseConnectionError

STARTED = datetime(2025, 11, 4, 13, 0, tzinfo=timezone.utc)


def run_result(failed=0):
    return MaintenanceRunResult(results=[
        SweepResult(name="expiry", run_started_at=STARTED, affected=2),
        SweepResult(name="cleanup", run_started_at=STARTED, failed=failed),
    ])


def mock_services(result=None):
    services = Mock()
    services.database = Mock()
    services.jobs = Mock()
    services.jobs.run_all.return_value = result or run_result()
    services.jobs.jobs.return_value = {"expiry": (Mock(), 1800)}
    return services


class TestLoadRuntimeConfig:
    """Test suite for load_runtime_config helper."""

    @patch("ridematch.main.load_config")
    def test_config_file_level_used_by_default(self, mock_load):
        mock_load.return_value = (AppConfig(logging=LoggingConfig(level="WARNING")), EnvironmentConfig())

        _, env_config = load_runtime_config(None, None)

        assert env_config.log_level == "WARNING"

    @patch("ridematch.main.load_config")
    def test_environment_beats_config_file(self, mock_load):
        mock_load.return_value = (
            AppConfig(logging=LoggingConfig(level="WARNING")),
            EnvironmentConfig(log_level="error"),
        )

        _, env_config = load_runtime_config(None, None)

        assert env_config.log_level == "ERROR"

    @patch("ridematch.main.load_config")
    def test_cli_beats_everything(self, mock_load):
        mock_load.return_value = (
            AppConfig(logging=LoggingConfig(level="WARNING")),
            EnvironmentConfig(log_level="ERROR"),
        )

        _, env_config = load_runtime_config(None, "DEBUG")

        assert env_config.log_level == "DEBUG"

    @patch("ridematch.main.load_config")
    def test_configuration_error_propagates(self, mock_load):
        mock_load.side_effect = ConfigurationError("bad config")

        with pytest.raises(ConfigurationError):
            load_runtime_config(None, None)


class TestBuildServices:
    def test_wires_real_objects(self, tmp_path):
        env_config = EnvironmentConfig(database_url=f"sqlite:///{tmp_path / 'rides.db'}")

        services = build_services(AppConfig(), env_config)
        try:
            assert isinstance(services.manager, MatchLifecycleManager)
            assert isinstance(services.jobs, ScheduledMaintenanceJobs)
            assert isinstance(services.dispatcher.gateway, LogOnlyPushGateway)
            assert services.manager.dispatcher is services.dispatcher
        finally:
            services.database.close()

    def test_http_gateway_when_endpoint_set(self, tmp_path):
        env_config = EnvironmentConfig(
            database_url=f"sqlite:///{tmp_path / 'rides.db'}",
            push_endpoint_url="https://push.example.com/send",
        )

        services = build_services(AppConfig(), env_config)
        try:
            assert isinstance(services.dispatcher.gateway, HTTPPushGateway)
        finally:
            services.database.close()


class TestRunModes:
    def test_run_once_success(self):
        assert run_once(mock_services()) == 0

    def test_run_once_with_failures(self):
        assert run_once(mock_services(run_result(failed=1))) == 1

    @patch("ridematch.main.SchedulerService")
    def test_daemon_disabled_by_config(self, mock_scheduler_class):
        app_config = AppConfig(maintenance=MaintenanceConfig(enabled=False))

        assert run_daemon(mock_services(), app_config) == 0
        mock_scheduler_class.assert_not_called()

    @patch("ridematch.main.threading")
    @patch("ridematch.main.signal.signal")
    @patch("ridematch.main.SchedulerService")
    def test_daemon_starts_scheduler_with_sweep_intervals(
        self, mock_scheduler_class, mock_signal, mock_threading
    ):
        services = mock_services()
        app_config = AppConfig()

        exit_code = run_daemon(services, app_config)

        assert exit_code == 0
        services.jobs.jobs.assert_called_once_with(app_config.maintenance.job_intervals())
        mock_scheduler_class.assert_called_once_with(
            jobs=services.jobs.jobs.return_value,
            shutdown_event=mock_threading.Event.return_value,
        )
        mock_scheduler_class.return_value.start.assert_called_once()
        mock_threading.Event.return_value.wait.assert_called_once()
        assert mock_signal.call_count == 2

    @patch("ridematch.main.threading")
    @patch("ridematch.main.signal.signal")
    @patch("ridematch.main.SchedulerService")
    def test_signal_handler_stops_scheduler(self, mock_scheduler_class, mock_signal, mock_threading):
        run_daemon(mock_services(), AppConfig())

        handler = mock_signal.call_args_list[0][0][1]
        handler(2, None)

        mock_scheduler_class.return_value.shutdown.assert_called_once_with(wait=False)


class TestMain:
    """Test suite for main() entry point."""

    @pytest.fixture(autouse=True)
    def no_dotenv(self):
        with patch("ridematch.main.load_dotenv"):
            yield

    @patch("ridematch.main.configure_logging")
    @patch("ridematch.main.build_services")
    @patch("ridematch.main.load_runtime_config")
    def test_run_once_success(self, mock_load_config, mock_build, mock_configure_logging):
        mock_load_config.return_value = (AppConfig(), EnvironmentConfig(log_level="INFO"))
        services = mock_services()
        mock_build.return_value = services

        exit_code = main(["--run-once", "--config", "config.yaml"])

        assert exit_code == 0
        assert str(mock_load_config.call_args[0][0]) == "config.yaml"
        mock_configure_logging.assert_called_once_with(
            level="INFO", format_type="key-value", environment="production"
        )
        services.jobs.run_all.assert_called_once()
        services.dispatcher.shutdown.assert_called_once_with()
        services.database.close.assert_called_once()

    @patch("ridematch.main.configure_logging")
    @patch("ridematch.main.build_services")
    @patch("ridematch.main.load_runtime_config")
    def test_run_once_with_errors(self, mock_load_config, mock_build, mock_configure_logging):
        mock_load_config.return_value = (AppConfig(), EnvironmentConfig(log_level="INFO"))
        mock_build.return_value = mock_services(run_result(failed=2))

        assert main(["--run-once"]) == 1

    @patch("ridematch.main.run_daemon")
    @patch("ridematch.main.configure_logging")
    @patch("ridematch.main.build_services")
    @patch("ridematch.main.load_runtime_config")
    def test_daemon_is_default(self, mock_load_config, mock_build, mock_configure_logging, mock_daemon):
        app_config = AppConfig()
        mock_load_config.return_value = (app_config, EnvironmentConfig(log_level="INFO"))
        services = mock_services()
        mock_build.return_value = services
        mock_daemon.return_value = 0

        assert main([]) == 0
        mock_daemon.assert_called_once_with(services, app_config)
        services.database.close.assert_called_once()

    @patch("ridematch.main.run_daemon")
    @patch("ridematch.main.configure_logging")
    @patch("ridematch.main.build_services")
    @patch("ridematch.main.load_runtime_config")
    def test_resources_released_when_run_fails(
        self, mock_load_config, mock_build, mock_configure_logging, mock_daemon
    ):
        mock_load_config.return_value = (AppConfig(), EnvironmentConfig(log_level="INFO"))
        services = mock_services()
        mock_build.return_value = services
        mock_daemon.side_effect = RuntimeError("scheduler crashed")

        with pytest.raises(RuntimeError):
            main([])

        services.dispatcher.shutdown.assert_called_once_with()
        services.database.close.assert_called_once()

    @patch("ridematch.main.load_runtime_config")
    def test_configuration_error(self, mock_load_config, capsys):
        mock_load_config.side_effect = ConfigurationError(
            "Configuration validation failed", errors=["matching -> min_match_score: bad"]
        )

        assert main(["--config", "nonexistent.yaml"]) == 1

        err = capsys.readouterr().err
        assert "Configuration Error" in err
        assert "min_match_score" in err

    @patch("ridematch.main.configure_logging")
    @patch("ridematch.main.build_services")
    @patch("ridematch.main.load_runtime_config")
    def test_database_error(self, mock_load_config, mock_build, mock_configure_logging, capsys):
        mock_load_config.return_value = (AppConfig(), EnvironmentConfig(log_level="INFO"))
        mock_build.side_effect = DatabaseConnectionError("disk full")

        assert main(["--run-once"]) == 1
        assert "Database Error: disk full" in capsys.readouterr().err

    @patch("ridematch.main.configure_logging")
    @patch("ridematch.main.build_services")
    @patch("ridematch.main.load_runtime_config")
    def test_log_level_override(self, mock_load_config, mock_build, mock_configure_logging):
        mock_load_config.return_value = (AppConfig(), EnvironmentConfig(log_level="DEBUG"))
        mock_build.return_value = mock_services()

        main(["--run-once", "--log-level", "DEBUG"])

        assert mock_load_config.call_args[0][1] == "DEBUG"

    def test_invalid_log_level_rejected_by_parser(self):
        with pytest.raises(SystemExit):
            main(["--log-level", "LOUD"])

    @patch("ridematch.main.configure_logging")
    def test_end_to_end_run_once(self, mock_configure_logging, tmp_path, monkeypatch):
        """A real one-shot run against an empty database succeeds."""
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'data' / 'rides.db'}")
        for name in ("LOG_LEVEL", "PUSH_ENDPOINT_URL", "PUSH_API_KEY", "ENVIRONMENT"):
            monkeypatch.delenv(name, raising=False)

        assert main(["--run-once"]) == 0
        assert (tmp_path / "data" / "rides.db").exists()
