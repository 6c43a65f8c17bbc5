"""Scoped logging context.

Fields pushed here (run_id, sweep, match_id, request_id, ...) are attached to
every log record emitted inside the scope by ``ContextualFilter``. Backed by a
ContextVar, so each scheduler worker thread sees only its own context.
"""

from contextvars import ContextVar, Token
from typing import Any, Dict, Optional

_context: ContextVar[Dict[str, Any]] = ContextVar("ridematch_log_context", default={})


def get_log_context() -> Dict[str, Any]:
    """Return a copy of the active context fields."""
    return dict(_context.get())


def push_log_context(**fields: Any) -> Token:
    """Merge fields into the active context.

    Fields set to None are dropped so optional identifiers do not show up
    as ``key=null`` in every line.

    Returns:
        Token for ``pop_log_context``
    """
    merged = dict(_context.get())
    merged.update({k: v for k, v in fields.items() if v is not None})
    return _context.set(merged)


def pop_log_context(token: Token) -> None:
    """Restore the context that was active before ``push_log_context``."""
    _context.reset(token)


def clear_log_context() -> None:
    """Drop every context field. Used by tests."""
    _context.set({})


class log_context:
    """Context manager pushing fields for the duration of a block.

    Example:
        >>> with log_context(sweep="expiry", run_id="3f2a"):
        ...     logger.info("Sweep started", extra={"event": "sweep.started"})
    """

    def __init__(self, **fields: Any):
        self.fields = fields
        self._token: Optional[Token] = None

    def __enter__(self) -> "log_context":
        self._token = push_log_context(**self.fields)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if self._token is not None:
            pop_log_context(self._token)
            self._token = None
        return False
