"""Unit tests for auth/audit.py.

Covers:
- One JSON line per event on the authgate.audit logger
- Secret-bearing detail keys are redacted
- Optional persistence through EventStore
- record() never raises, even when persistence fails
"""

import json
import logging

from auth.audit import SecurityAuditLog
from auth.models import RequestContext
from auth.models import SecurityEventName as Ev
from auth.store import EventStore

CTX = RequestContext(ip="10.0.0.1", user_agent="pytest")


def _audit_lines(caplog) -> list[dict]:
    return [json.loads(r.getMessage()) for r in caplog.records if r.name == "authgate.audit" and r.levelno == logging.INFO]


def test_event_logged_as_json(caplog):
    caplog.set_level(logging.INFO, logger="authgate.audit")
    SecurityAuditLog().record(Ev.LOGIN_SUCCESS, CTX, user_id=7)
    [line] = _audit_lines(caplog)
    assert line["event"] == "login.success"
    assert line["ip"] == "10.0.0.1"
    assert line["user_agent"] == "pytest"
    assert line["detail"] == {"user_id": 7}
    assert line["timestamp"]


def test_secrets_redacted(caplog):
    caplog.set_level(logging.INFO, logger="authgate.audit")
    SecurityAuditLog().record(Ev.LOGIN_FAILED, CTX, email="ana@example.com", password="Secret#123", Token="abc.def.ghi")
    assert "Secret#123" not in caplog.text
    assert "abc.def.ghi" not in caplog.text
    [line] = _audit_lines(caplog)
    assert line["detail"] == {"email": "ana@example.com", "password": "[redacted]", "Token": "[redacted]"}


def test_plain_string_event_name(caplog):
    caplog.set_level(logging.INFO, logger="authgate.audit")
    SecurityAuditLog().record("custom.event", CTX)
    assert _audit_lines(caplog)[0]["event"] == "custom.event"


def test_persisted_when_event_store_given(user_store):
    events = EventStore(user_store.engine)
    audit = SecurityAuditLog(events)
    audit.record(Ev.REGISTER_SUCCESS, CTX, user_id=1)
    audit.record(Ev.LOGIN_SUCCESS, CTX, user_id=1)
    assert events.count() == 2


class _BrokenEventStore:
    def append(self, entry):
        raise RuntimeError("disk full")


def test_record_never_raises(caplog):
    caplog.set_level(logging.INFO, logger="authgate.audit")
    SecurityAuditLog(_BrokenEventStore()).record(Ev.LOGIN_SUCCESS, CTX)
    assert "Failed to record security event" in caplog.text


def test_unserializable_detail_does_not_raise(caplog):
    caplog.set_level(logging.INFO, logger="authgate.audit")
    SecurityAuditLog().record(Ev.LOGIN_SUCCESS, CTX, when=object())
    assert _audit_lines(caplog)[0]["event"] == "login.success"
