"""Rider notifications for match lifecycle events.

This module provides the complete notification pipeline:
- NotificationDispatcher: records inbox rows in the lifecycle transaction and
  pushes them after commit
- TemplateRenderer: Jinja2 titles and bodies per event type
- Push gateways: HTTP push service client and a log-only fallback
- NotificationInbox: read-side helpers (list, unread count, mark read, delete)
"""

from .dispatcher import DEFAULT_PRIORITIES, NotificationDispatcher
from .inbox import NotificationInbox
from .models import (
    DeliveryResult,
    NotificationError,
    NotificationTemplateError,
    PushDeliveryError,
    PushMessage,
)
from .push import HTTPPushGateway, LogOnlyPushGateway, PushGateway, build_push_gateway
from .templates import DEFAULT_TEMPLATES, TemplateRenderer

__all__ = [
    # Main service
    "NotificationDispatcher",
    "NotificationInbox",
    "DEFAULT_PRIORITIES",
    # Models and results
    "DeliveryResult",
    "PushMessage",
    # Exceptions
    "NotificationError",
    "NotificationTemplateError",
    "PushDeliveryError",
    # Components
    "TemplateRenderer",
    "DEFAULT_TEMPLATES",
    "PushGateway",
    "HTTPPushGateway",
    "LogOnlyPushGateway",
    "build_push_gateway",
]
