"""Unit tests for auth/audit.py -- AuditDispatcher and LoggingAuditSink."""

import json
import logging

from auth.audit import AuditDispatcher, AuditEvent, LoggingAuditSink
from conftest import T0, RecordingSink


class ExplodingSink:
    def log_event(self, event):
        raise RuntimeError("collector down")


def test_events_reach_sink():
    sink = RecordingSink()
    dispatcher = AuditDispatcher(sink)
    dispatcher.record("login", 42, resource_type="session", resource_id="s-1")
    dispatcher.shutdown(wait=True)
    assert sink.actions() == ["login"]
    assert sink.events[0].principal_id == 42


def test_failing_sink_is_logged_not_raised(caplog):
    dispatcher = AuditDispatcher(ExplodingSink())
    with caplog.at_level(logging.ERROR, logger="warden.audit"):
        dispatcher.record("login", 1)
        dispatcher.shutdown(wait=True)
    assert any("Audit sink failed" in r.getMessage() for r in caplog.records)


def test_emit_after_shutdown_is_dropped(caplog):
    sink = RecordingSink()
    dispatcher = AuditDispatcher(sink)
    dispatcher.shutdown(wait=True)
    with caplog.at_level(logging.WARNING, logger="warden.audit"):
        dispatcher.record("logout", 1)
    assert sink.events == []
    assert any("dropped" in r.getMessage() for r in caplog.records)


def test_logging_sink_writes_json(caplog):
    event = AuditEvent(action="role_assigned", principal_id=1, metadata={"role_id": 3}, occurred_at=T0)
    with caplog.at_level(logging.INFO, logger="warden.audit"):
        LoggingAuditSink().log_event(event)
    payload = json.loads(caplog.records[-1].getMessage())
    assert payload["action"] == "role_assigned"
    assert payload["metadata"] == {"role_id": 3}
    assert payload["occurred_at"] == T0.isoformat()
    assert payload["success"] is True
