"""Domain events emitted by lifecycle transitions.

The lifecycle manager describes what happened as a ``LifecycleEvent``; the
notification dispatcher turns each event into one inbox row per recipient.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .models import NotificationPriority, NotificationType


@dataclass
class LifecycleEvent:
    """Something riders need to hear about.

    Attributes:
        type: Notification type recorded for every recipient
        recipients: User ids to notify
        match_id: Match the event concerns, if any
        request_id: Request the event concerns, if any
        reason: Free-text reason (cancellations)
        template: Message template name; defaults to the type's value
        priority: Overrides the type's default priority
        context: Extra template variables
    """

    type: NotificationType
    recipients: List[str]
    match_id: Optional[str] = None
    request_id: Optional[str] = None
    reason: Optional[str] = None
    template: Optional[str] = None
    priority: Optional[NotificationPriority] = None
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def template_name(self) -> str:
        return self.template or self.type.value

    def data(self) -> Dict[str, Any]:
        """Payload stored with the notification and sent with the push."""
        payload = {"match_id": self.match_id, "request_id": self.request_id, "reason": self.reason}
        return {key: value for key, value in payload.items() if value is not None}
