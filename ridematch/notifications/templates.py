"""Message templates for rider notifications, rendered with Jinja2.

Each template name maps to a title and a body template. Rendering uses
StrictUndefined, so a missing variable is reported as an error instead of
silently producing an empty string.
"""

import logging
from typing import Any, Dict, Mapping, Optional, Tuple

from jinja2 import DictLoader, Environment, StrictUndefined, TemplateError

from .models import NotificationTemplateError

logger = logging.getLogger(__name__)

_CO_RIDERS = (
    "{{ co_riders[:3] | join(', ') }}"
    "{% if co_riders | length > 3 %} +{{ co_riders | length - 3 }} others{% endif %}"
)

DEFAULT_TEMPLATES: Dict[str, Tuple[str, str]] = {
    "match_found": (
        "🎉 Ride Match Found!",
        "You've been matched with " + _CO_RIDERS + " for your ride.",
    ),
    "match_confirmed": (
        "✅ Match Confirmed!",
        "All participants confirmed! Cost: {{ currency }}{{ cost_per_person }} per person.",
    ),
    "match_cancelled": (
        "❌ Match Cancelled",
        "{% if cancelled_by_name is defined and cancelled_by_name %}"
        "{{ cancelled_by_name }} cancelled the ride match."
        "{% else %}Your ride match was cancelled: {{ reason }}.{% endif %}",
    ),
    "match_expired": (
        "⏰ Match Expired",
        "Your match was cancelled because the departure time has passed.",
    ),
    "confirmation_timeout": (
        "⏰ Confirmation Timeout",
        "Match cancelled: Not all participants confirmed in time "
        "({{ confirmed }}/{{ total }} confirmed)",
    ),
    "participant_left": (
        "👋 Ride Match Updated",
        "{{ leaver_name }} left your ride match. "
        "New cost: {{ currency }}{{ cost_per_person }} per person.",
    ),
    "match_confirmation_reminder": (
        "⏰ Confirm Your Match",
        "Please confirm your match within {{ timeout_minutes }} minutes to secure your ride.",
    ),
    "ride_starting": (
        "🚗 Ride Starting Soon",
        "{% if minutes > 0 %}Your ride departs in {{ minutes }} minutes. Get ready!"
        "{% else %}Your ride is departing now. Get ready!{% endif %}",
    ),
    "ride_completed": (
        "🏁 Ride Completed",
        "Thanks for sharing your ride! Your share was {{ currency }}{{ cost_per_person }}.",
    ),
    "chat_confirmed": (
        "System",
        "🎉 All participants confirmed! Final cost: {{ currency }}{{ cost_per_person }} "
        "per person. Ready to ride!",
    ),
}


class TemplateRenderer:
    """Renders notification titles and bodies.

    Templates are compiled once by Jinja2 and cached for reuse.
    """

    def __init__(self, templates: Optional[Mapping[str, Tuple[str, str]]] = None):
        """Initialize the Jinja2 environment.

        Args:
            templates: Mapping of template name to (title, body) sources;
                the built-in set when omitted
        """
        self.templates = dict(templates or DEFAULT_TEMPLATES)

        sources = {}
        for name, (title, body) in self.templates.items():
            sources[f"{name}.title"] = title
            sources[f"{name}.body"] = body

        self.env = Environment(
            loader=DictLoader(sources),
            # Plain text for push and inbox
            autoescape=False,
            undefined=StrictUndefined,
            keep_trailing_newline=False,
        )

    def render(self, name: str, context: Dict[str, Any]) -> Tuple[str, str]:
        """Render the title and body of a template.

        Args:
            name: Template name, e.g. "match_found"
            context: Template variables

        Returns:
            (title, body) with the title collapsed to a single line

        Raises:
            NotificationTemplateError: If the template is unknown or rendering fails
        """
        if name not in self.templates:
            raise NotificationTemplateError(f"Unknown notification template: {name}")

        try:
            title = self.env.get_template(f"{name}.title").render(context)
            body = self.env.get_template(f"{name}.body").render(context)
        except TemplateError as e:
            error_msg = f"Template rendering failed for {name}: {e}"
            logger.error(error_msg, exc_info=True)
            raise NotificationTemplateError(error_msg) from e

        return title.strip().replace("\n", " "), body.strip()
