"""
Request context management using ContextVars.

Provides request ID tracking across async boundaries for log correlation.
"""

from __future__ import annotations

import contextvars
import uuid

request_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "request_id",
    default=None,
)


def get_request_id() -> str | None:
    """Get current request ID from context."""
    return request_id_var.get()


def set_request_id(request_id: str) -> contextvars.Token[str | None]:
    """Set request ID in context."""
    return request_id_var.set(request_id)


def generate_request_id() -> str:
    """Generate a new unique request ID."""
    return str(uuid.uuid4())


def reset_request_id(token: contextvars.Token[str | None]) -> None:
    """Restore the request ID that was current before ``set_request_id``."""
    request_id_var.reset(token)
