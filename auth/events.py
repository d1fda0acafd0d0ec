"""
auth/events.py -- Flow notifications.

Event kinds emitted by the login flow:
  user_authed        -- identity verified for a verification-only request
  user_connected     -- an identity was linked to an existing account
  user_login_failed  -- a resolved identity could not log in

Emission is fire-and-forget: emit_event() never lets a sink failure abort a
login. The default sink writes one structured log line per event; token values
in payloads are masked before logging.

Layer rule: no imports from api/, web/, core/, or loginflow/.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

logger = logging.getLogger("oidclogin.auth.events")

USER_AUTHED = "user_authed"
USER_CONNECTED = "user_connected"
USER_LOGIN_FAILED = "user_login_failed"

_SECRET_KEYS = {"code", "access_token", "refresh_token", "id_token"}


class EventSink(Protocol):
    def emit(self, kind: str, payload: dict[str, Any]) -> None: ...


def _mask(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: ("***" if k in _SECRET_KEYS and v else _mask(v)) for k, v in value.items()}
    return value


class LoggingEventSink:
    """Write each event to the oidclogin.events logger."""

    def __init__(self, name: str = "oidclogin.events") -> None:
        self._logger = logging.getLogger(name)

    def emit(self, kind: str, payload: dict[str, Any]) -> None:
        self._logger.info("event=%s payload=%s", kind, _mask(payload))


def emit_event(sink: EventSink, kind: str, payload: dict[str, Any]) -> None:
    """Deliver an event without ever blocking the flow on a sink failure."""
    try:
        sink.emit(kind, payload)
    except Exception:
        logger.exception("Event sink failed for %s", kind)
