"""Structured logging for the ride-matching engine.

Modules log through ``get_logger(__name__, component=...)`` and pass an
``event`` key in ``extra`` for every state transition, e.g.::

    logger.info("Match confirmed", extra={"event": "match.confirmed", "match_id": m.id})
"""

import logging
from typing import Optional, Union

from .config import ContextualFilter, JSONFormatter, KeyValueFormatter, configure_logging
from .context import clear_log_context, get_log_context, log_context


class ComponentLoggerAdapter(logging.LoggerAdapter):
    """Adapter that adds a ``component`` field without clobbering call-site extras."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger(
    name: str, component: Optional[str] = None
) -> Union[logging.Logger, ComponentLoggerAdapter]:
    """Return a logger, wrapped to tag records with ``component`` when given.

    Args:
        name: Logger name (typically __name__)
        component: Component identifier, e.g. "lifecycle" or "maintenance"
    """
    logger = logging.getLogger(name)
    if component:
        return ComponentLoggerAdapter(logger, {"component": component})
    return logger


__all__ = [
    "ComponentLoggerAdapter",
    "ContextualFilter",
    "JSONFormatter",
    "KeyValueFormatter",
    "clear_log_context",
    "configure_logging",
    "get_log_context",
    "get_logger",
    "log_context",
]
