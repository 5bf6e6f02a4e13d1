from __future__ import annotations

import uuid
from contextvars import ContextVar

# HTTP requests carry the X-Request-ID value, promotion jobs "promotion-job-<id>".
_current: ContextVar[str | None] = ContextVar("request_id", default=None)


def generate_request_id() -> str:
    return uuid.uuid4().hex


def set_request_id(request_id: str | None) -> None:
    """Bind an id to the running request or job; None unbinds it."""
    _current.set(request_id)


def get_request_id() -> str | None:
    return _current.get()
