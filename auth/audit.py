"""
auth/audit.py -- Security event trail.

Every security-relevant decision made by the orchestrator is recorded as one
SecurityEvent. The sink is fire-and-forget: record() never raises, because
telemetry failing must not turn a correct authentication answer into a 500.

Each event is emitted as a single JSON line on the "authgate.audit" logger
(route it to its own handler/file in production) and, when an EventStore is
supplied, appended to the security_events table.

Detail keys that name secrets are redacted before anything is written.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional, Protocol

from auth.models import RequestContext, SecurityEvent

if TYPE_CHECKING:
    from auth.store import EventStore

logger = logging.getLogger("authgate.audit")

_REDACTED = "[redacted]"
_SECRET_KEYS = frozenset({"password", "password_confirmation", "token", "access_token", "secret", "hashed_password"})


class AuditSink(Protocol):
    def record(self, event: str, context: RequestContext, **detail: Any) -> None: ...


def _scrub(detail: dict[str, Any]) -> dict[str, Any]:
    return {k: (_REDACTED if k.lower() in _SECRET_KEYS else v) for k, v in detail.items()}


class SecurityAuditLog:
    """Default AuditSink: JSON log line, optionally persisted."""

    def __init__(self, events: Optional[EventStore] = None) -> None:
        self._events = events

    def record(self, event: str, context: RequestContext, **detail: Any) -> None:
        try:
            entry = SecurityEvent(
                event=str(getattr(event, "value", event)),
                timestamp=datetime.now(timezone.utc).isoformat(),
                ip=context.ip,
                user_agent=context.user_agent,
                detail=_scrub(detail),
            )
            logger.info(
                json.dumps(
                    {
                        "event": entry.event,
                        "timestamp": entry.timestamp,
                        "ip": entry.ip,
                        "user_agent": entry.user_agent,
                        "detail": entry.detail,
                    },
                    default=str,
                )
            )
            if self._events is not None:
                self._events.append(entry)
        except Exception:
            # Log-and-continue: the audit trail is a side channel.
            logger.exception("Failed to record security event %r", event)
