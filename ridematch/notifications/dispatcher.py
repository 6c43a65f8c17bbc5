"""Notification dispatcher for lifecycle events.

Notifications are produced in two phases:

1. ``record`` runs inside the lifecycle transaction and writes one inbox row
   per recipient, so the rows exist if and only if the transition committed.
2. ``dispatch`` runs after commit and hands the recorded rows to a delivery
   worker, which pushes them through the gateway with retry and backoff
   (``deliver``). The caller returns as soon as the work is queued. Delivery is
   best effort: every failure is logged and swallowed, and the transition stays
   committed.
"""

import contextvars
import json
import logging
import time
import uuid
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from ridematch.config.models import PushConfig
from ridematch.domain.events import LifecycleEvent
from ridematch.domain.models import Notification, NotificationPriority, NotificationType
from ridematch.logging import get_logger
from ridematch.logging.context import log_context
from ridematch.persistence.repositories import NotificationRepository
from ridematch.utils.timestamps import Clock, utc_now

from .models import DeliveryResult, PushDeliveryError, PushMessage
from .push import LogOnlyPushGateway, PushGateway
from .templates import TemplateRenderer

logger = get_logger(__name__, component="notification")

DEFAULT_PRIORITIES = {
    NotificationType.MATCH_FOUND: NotificationPriority.HIGH,
    NotificationType.MATCH_CONFIRMED: NotificationPriority.HIGH,
    NotificationType.MATCH_CANCELLED: NotificationPriority.NORMAL,
    NotificationType.MATCH_CONFIRMATION_REMINDER: NotificationPriority.HIGH,
    NotificationType.RIDE_STARTING: NotificationPriority.HIGH,
    NotificationType.RIDE_COMPLETED: NotificationPriority.NORMAL,
    NotificationType.MATCH_UPDATED: NotificationPriority.NORMAL,
}

# Upper bound on a single backoff sleep
MAX_RETRY_DELAY = 60.0


class NotificationDispatcher:
    """Maps lifecycle events to inbox rows and pushes them.

    Responsibilities:
    - Render title and body per recipient from Jinja2 templates
    - Write notification rows in the caller's transaction
    - Group identical messages and push them with retry/backoff on a worker
      thread
    - Never let a delivery failure, or its retry delays, reach the caller
    """

    def __init__(
        self,
        gateway: Optional[PushGateway] = None,
        push_config: Optional[PushConfig] = None,
        renderer: Optional[TemplateRenderer] = None,
        clock: Clock = utc_now,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
        logger_instance: Optional[logging.Logger] = None,
        executor: Optional[Executor] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the dispatcher.

        Args:
            gateway: Push transport (log-only when omitted)
            push_config: Retry settings
            renderer: Template renderer (built-in templates when omitted)
            clock: Source of "now" for created_at
            id_factory: Generates notification ids
            logger_instance: Logger instance (uses module logger if None)
            executor: Runs background deliveries (a thread pool sized by
                ``push_config.delivery_workers`` when omitted)
            sleep: Waits between retries
        """
        self.gateway = gateway or LogOnlyPushGateway()
        self.push_config = push_config or PushConfig()
        self.renderer = renderer or TemplateRenderer()
        self.clock = clock
        self.id_factory = id_factory
        self.logger = logger_instance or logger
        self.sleep = sleep
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self.push_config.delivery_workers,
            thread_name_prefix="push-delivery",
        )

    def build(self, event: LifecycleEvent, now: Optional[datetime] = None) -> List[Notification]:
        """Render one Notification per recipient without persisting anything.

        Raises:
            NotificationTemplateError: If the event's template cannot be rendered
        """
        now = now or self.clock()
        priority = event.priority or DEFAULT_PRIORITIES.get(event.type, NotificationPriority.NORMAL)
        names: Dict[str, str] = event.context.get("participant_names", {})

        notifications = []
        for user_id in dict.fromkeys(event.recipients):
            context = dict(event.context)
            context.setdefault("reason", event.reason)
            context["recipient_id"] = user_id
            context["co_riders"] = [name for uid, name in names.items() if uid != user_id]

            title, body = self.renderer.render(event.template_name, context)
            notifications.append(
                Notification(
                    id=self.id_factory(),
                    user_id=user_id,
                    type=event.type,
                    priority=priority,
                    title=title,
                    body=body,
                    data=event.data(),
                    created_at=now,
                )
            )
        return notifications

    def record(
        self, session: Session, event: LifecycleEvent, now: Optional[datetime] = None
    ) -> List[Notification]:
        """Write the event's notifications in the caller's transaction.

        Args:
            session: Session of the lifecycle transaction
            event: What happened
            now: Transition time

        Returns:
            The recorded notifications, to be passed to ``deliver`` after commit
        """
        notifications = self.build(event, now)
        if notifications:
            NotificationRepository(session).add_many(notifications)
            self.logger.debug(
                f"Recorded {len(notifications)} {event.type.value} notifications",
                extra={
                    "event": "notification.recorded",
                    "notification_type": event.type.value,
                    "match_id": event.match_id,
                    "count": len(notifications),
                },
            )
        return notifications

    def dispatch(self, notifications: Iterable[Notification]) -> Optional[Future]:
        """Queue recorded notifications for delivery and return at once.

        Called after the lifecycle transaction commits. The worker runs
        ``deliver`` with the caller's log context. Never raises.

        Returns:
            Future resolving to the delivery results, or None if nothing was queued
        """
        notifications = list(notifications)
        if not notifications:
            return None

        context = contextvars.copy_context()
        try:
            return self._executor.submit(context.run, self.deliver, notifications)
        except RuntimeError as e:
            # Executor already shut down; the inbox rows are committed regardless
            self.logger.warning(
                f"Push delivery not queued: {e}",
                extra={"event": "notification.dispatch.rejected", "count": len(notifications)},
            )
            return None

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting deliveries, optionally waiting for queued ones."""
        self._executor.shutdown(wait=wait)

    def deliver(self, notifications: Iterable[Notification]) -> List[DeliveryResult]:
        """Push recorded notifications. Never raises.

        Notifications with identical content are sent in one gateway call.

        Returns:
            One DeliveryResult per gateway message
        """
        results: List[DeliveryResult] = []
        try:
            groups = self._group(notifications)
        except Exception as e:
            self.logger.error(
                f"Failed to prepare notifications for delivery: {e}",
                exc_info=True,
                extra={"event": "notification.delivery.failed", "error_type": type(e).__name__},
            )
            return results

        for message, recipients in groups:
            try:
                results.append(self._send_with_retry(message, recipients))
            except Exception as e:
                self.logger.error(
                    f"Unexpected error delivering '{message.title}': {e}",
                    exc_info=True,
                    extra={
                        "event": "notification.delivery.failed",
                        "error_type": type(e).__name__,
                    },
                )
                results.append(
                    DeliveryResult(
                        recipients=recipients,
                        title=message.title,
                        attempts=0,
                        status="failed",
                        error=str(e),
                    )
                )
        return results

    @staticmethod
    def _group(notifications: Iterable[Notification]) -> List[Tuple[PushMessage, List[str]]]:
        grouped: Dict[Tuple, Tuple[PushMessage, List[str]]] = {}
        for n in notifications:
            data_key = json.dumps(n.data, sort_keys=True, default=str)
            key = (n.type.value, n.priority.value, n.title, n.body, data_key)
            if key not in grouped:
                message = PushMessage(
                    title=n.title,
                    body=n.body,
                    data={**n.data, "type": n.type.value},
                    priority=n.priority.value,
                )
                grouped[key] = (message, [])
            grouped[key][1].append(n.user_id)
        return list(grouped.values())

    def _send_with_retry(self, message: PushMessage, recipients: List[str]) -> DeliveryResult:
        cfg = self.push_config
        max_attempts = cfg.max_retries + 1
        last_error: Optional[str] = None

        with log_context(match_id=message.data.get("match_id")):
            for attempt in range(1, max_attempts + 1):
                if attempt > 1:
                    delay = min(
                        cfg.retry_initial_delay * (cfg.retry_backoff_multiplier ** (attempt - 2)),
                        MAX_RETRY_DELAY,
                    )
                    self.logger.warning(
                        f"Retrying push '{message.title}' (attempt {attempt}/{max_attempts}) "
                        f"after {delay:.1f}s delay",
                        extra={"event": "notification.send.attempt", "attempt": attempt},
                    )
                    self.sleep(delay)

                try:
                    self.gateway.send(recipients, message)
                except PushDeliveryError as e:
                    last_error = str(e)
                    retry_remaining = attempt < max_attempts and e.retryable
                    self.logger.warning(
                        f"Push delivery failed (attempt {attempt}/{max_attempts}): {e}",
                        extra={
                            "event": "notification.send.failure",
                            "attempt": attempt,
                            "retry_remaining": retry_remaining,
                        },
                    )
                    if not retry_remaining:
                        break
                    continue

                self.logger.info(
                    f"Push delivered to {len(recipients)} recipients (attempts: {attempt})",
                    extra={
                        "event": "notification.send.success",
                        "attempt": attempt,
                        "recipients": recipients,
                    },
                )
                return DeliveryResult(
                    recipients=recipients, title=message.title, attempts=attempt, status="sent"
                )

            self.logger.error(
                f"Push delivery gave up after {attempt} attempts: {last_error}",
                extra={
                    "event": "notification.delivery.failed",
                    "attempts": attempt,
                    "recipients": recipients,
                },
            )
            return DeliveryResult(
                recipients=recipients,
                title=message.title,
                attempts=attempt,
                status="failed",
                error=last_error,
            )
