"""Per-request context utilities."""
from __future__ import annotations

from contextvars import ContextVar

request_id_ctx_var: ContextVar[str | None] = ContextVar("request_id", default=None)
session_attempt_ctx_var: ContextVar[int | None] = ContextVar("session_attempt", default=None)


def get_request_id() -> str | None:
    """Return the current request id if available."""
    return request_id_ctx_var.get()


def get_session_attempt() -> int | None:
    """Return the session generation attempt currently running, if any."""
    return session_attempt_ctx_var.get()
