"""Soft checks on raw configuration that warn instead of failing."""

import warnings
from typing import Any, Dict, List

from .duration import DurationParseError, parse_duration


def _seconds_or_none(value: Any):
    if not isinstance(value, str):
        return None
    try:
        return parse_duration(value)
    except DurationParseError:
        return None


def check_for_warnings(config_dict: Dict[str, Any]) -> List[str]:
    """
    Check configuration for potential issues and return warnings.

    Args:
        config_dict: Raw configuration dictionary

    Returns:
        List of warning messages
    """
    warning_messages = []

    matching = config_dict.get("matching", {})
    if isinstance(matching, dict):
        min_score = matching.get("min_match_score")
        if isinstance(min_score, int) and min_score < 40:
            warning_messages.append(
                f"Low min_match_score ({min_score}) will offer riders poor matches"
            )
        max_origin = matching.get("max_origin_distance_m")
        if isinstance(max_origin, (int, float)) and max_origin > 2000:
            warning_messages.append(
                f"max_origin_distance_m ({max_origin}) exceeds the maximum walking distance riders can set"
            )

    maintenance = config_dict.get("maintenance", {})
    lifecycle = config_dict.get("lifecycle", {})
    if isinstance(maintenance, dict) and isinstance(lifecycle, dict):
        if maintenance.get("enabled") is False:
            warning_messages.append(
                "Maintenance sweeps are disabled; stale matches will never be cancelled"
            )

        # A timeout sweep slower than the timeout itself lets matches overstay
        timeout_interval = _seconds_or_none(maintenance.get("timeout_interval", "15m"))
        timeout = _seconds_or_none(lifecycle.get("confirmation_timeout", "30m"))
        if timeout_interval and timeout and timeout_interval > timeout:
            warning_messages.append(
                "timeout_interval is longer than confirmation_timeout; "
                "unconfirmed matches may stay pending well past the deadline"
            )

        reminder_interval = _seconds_or_none(maintenance.get("reminder_interval", "1m"))
        reminder_delay = _seconds_or_none(lifecycle.get("reminder_delay", "5m"))
        if reminder_interval and reminder_delay and reminder_interval > reminder_delay:
            warning_messages.append(
                "reminder_interval is longer than reminder_delay; reminders will arrive late"
            )

    return warning_messages


def emit_warnings(warning_messages: List[str]) -> None:
    """
    Emit warning messages using Python's warnings module.

    Args:
        warning_messages: List of warning messages to emit
    """
    for message in warning_messages:
        warnings.warn(message, UserWarning, stacklevel=2)
