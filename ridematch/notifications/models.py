"""Data models and exceptions for the notification dispatcher.

This module defines the push message sent to the gateway, the per-group
delivery result, and the exceptions raised inside the notification pipeline.
None of these exceptions ever leave ``NotificationDispatcher.deliver``.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class NotificationError(Exception):
    """Base exception for notification-related errors."""

    pass


class NotificationTemplateError(NotificationError):
    """Raised when a message template is missing or references an unknown variable."""

    pass


class PushDeliveryError(NotificationError):
    """Raised by a push gateway when the transport rejects or fails a send."""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = True):
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message)


@dataclass(frozen=True)
class PushMessage:
    """Content handed to the push transport."""

    title: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)
    priority: str = "normal"


@dataclass
class DeliveryResult:
    """Outcome of pushing one message to a group of recipients.

    Attributes:
        recipients: User ids the message was addressed to
        title: Message title (for logs and tests)
        attempts: Number of send attempts made
        status: "sent", "failed" or "skipped"
        error: Last error message when delivery failed
    """

    recipients: List[str]
    title: str
    attempts: int
    status: str
    error: Optional[str] = None

    def is_success(self) -> bool:
        return self.status == "sent"
