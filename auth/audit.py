"""
auth/audit.py -- Fire-and-forget audit event dispatch.

Audit persistence and reporting live outside Warden. The core only needs
somewhere to hand events: an AuditSink. AuditDispatcher submits each event to
a small thread pool so a slow or failing sink can never block a login or turn
an authorization decision into an error. Sink failures are logged and dropped.

The default LoggingAuditSink writes one JSON object per event to the
"warden.audit" logger, which deployments can route to a file or collector
with ordinary logging configuration.

Never put secrets in metadata: no passwords, refresh secrets, or tokens.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Protocol

from auth.tokens import utcnow

logger = logging.getLogger("warden.audit")

# Action names emitted by the core.
LOGIN = "login"
FAILED_LOGIN = "failed_login"
LOGOUT = "logout"
REFRESH = "token_refresh"
REFRESH_REUSE = "refresh_reuse_detected"
AUTHORIZATION_DENIED = "authorization_denied"
SUSPICIOUS_LOGIN = "suspicious_login"
PASSWORD_CHANGED = "password_changed"
USER_DEACTIVATED = "user_deactivated"
ROLE_ASSIGNED = "role_assigned"
ROLE_REMOVED = "role_removed"
OVERRIDE_SET = "permission_override_set"
OVERRIDE_CLEARED = "permission_override_cleared"
HIERARCHY_CHANGED = "role_hierarchy_changed"
ROLE_PERMISSIONS_CHANGED = "role_permissions_changed"


@dataclass(frozen=True)
class AuditEvent:
    action: str
    principal_id: int | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    success: bool = True
    error_message: str | None = None
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["occurred_at"] = self.occurred_at.isoformat()
        return data


class AuditSink(Protocol):
    def log_event(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    """Writes each event as a single JSON line on the warden.audit logger."""

    def log_event(self, event: AuditEvent) -> None:
        logger.info(json.dumps(event.to_dict(), default=str, sort_keys=True))


class AuditDispatcher:
    """Non-blocking, never-raising front for an AuditSink.

    Usage:
        audit = AuditDispatcher(LoggingAuditSink())
        audit.emit(AuditEvent(action="login", principal_id=42))
        audit.shutdown()   # on application shutdown; waits for queued events
    """

    def __init__(self, sink: AuditSink | None = None, max_workers: int = 2) -> None:
        self.sink = sink or LoggingAuditSink()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="warden-audit")

    def emit(self, event: AuditEvent) -> None:
        try:
            self._executor.submit(self._deliver, event)
        except RuntimeError:
            # Executor already shut down (application stopping).
            logger.warning("Audit event %s dropped: dispatcher is shut down", event.action)

    def record(self, action: str, principal_id: int | None = None, **fields: Any) -> None:
        """Shorthand for emit(AuditEvent(action, principal_id, ...))."""
        self.emit(AuditEvent(action=action, principal_id=principal_id, **fields))

    def _deliver(self, event: AuditEvent) -> None:
        try:
            self.sink.log_event(event)
        except Exception:
            logger.exception("Audit sink failed for event %s", event.action)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
