from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from .request_id import get_request_id

AuditAction = Literal[
    "sign_up.confirmed",
    "sign_up.waitlisted",
    "sign_up.retracted",
    "sign_up.removed",
    "sign_up.promoted",
]
# "organizer" for removals by organization members, "system" for the promotion worker.
AuditInitiator = Literal["user", "organizer", "system"]


def _audit_handler_logger() -> logging.Logger:
    audit = logging.getLogger("audit")
    audit.setLevel(logging.INFO)
    if not audit.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        audit.addHandler(handler)
    # One JSON line per entry, never mixed into the application log format.
    audit.propagate = False
    return audit


_audit_logger = _audit_handler_logger()


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def emit_audit_log(
    *,
    action: AuditAction,
    initiator: AuditInitiator,
    sign_up_id: int,
    event_id: int,
    slot_id: Optional[int],
    user_id: int,
    actor_id: Optional[int],
    status_from: Optional[str],
    status_to: Optional[str],
    version: Optional[int],
    message: Optional[str] = None,
    extra: Optional[dict[str, Any]] = None,
) -> None:
    """
    Write one JSON audit entry for a sign-up state change. None fields are
    omitted. Raises RuntimeError if the entry cannot be written.
    """
    fields: dict[str, Any] = dict(
        timestamp=datetime.now(timezone.utc).isoformat(),
        action=action,
        initiator=initiator,
        request_id=get_request_id(),
        sign_up_id=sign_up_id,
        event_id=event_id,
        slot_id=slot_id,
        user_id=user_id,
        actor_id=actor_id,
        status_from=_plain(status_from),
        status_to=_plain(status_to),
        version=version,
        message=message,
    )
    fields.update(extra or {})

    entry = {key: value for key, value in fields.items() if value is not None}
    try:
        _audit_logger.info(json.dumps(entry, ensure_ascii=True))
    except Exception as exc:
        raise RuntimeError("failed to emit audit log") from exc
