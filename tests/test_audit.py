import json
from datetime import datetime, timedelta, timezone

import pytest

from portshare.audit import AuditLog, Event


def test_append_and_cleanup(tmp_path):
    log = AuditLog(tmp_path / "audit.jsonl")
    now = datetime.now(timezone.utc)
    old = Event(at=now - timedelta(days=400), action="public.start", service="127.0.0.1:3000")
    recent = Event(at=now, action="public.stop", service="127.0.0.1:3000")
    log.append(old)
    log.append(recent)
    log.cleanup(timedelta(days=365))
    events = log.read_all()
    assert len(events) == 1
    assert events[0].action == "public.stop"


def test_read_all_of_missing_log_is_empty(tmp_path):
    assert AuditLog(tmp_path / "missing.jsonl").read_all() == []


def test_append_creates_directory_and_stamps_time(tmp_path):
    log = AuditLog(tmp_path / "nested" / "audit.jsonl")
    before = datetime.now(timezone.utc)
    event = Event(action="tailnet.start", service="127.0.0.1:5173")
    log.append(event)
    (stored,) = log.read_all()
    assert event.at is None
    assert stored.at is not None
    assert stored.at >= before - timedelta(seconds=1)
    assert stored.service == "127.0.0.1:5173"


def test_round_trip_preserves_fields(tmp_path):
    log = AuditLog(tmp_path / "audit.jsonl")
    at = datetime(2024, 1, 2, 3, 4, 5, 678901, tzinfo=timezone.utc)
    event = Event(
        at=at,
        action="public.start",
        service="127.0.0.1:3000",
        mode="public",
        url="https://share.example.com",
        provider="tunnel",
        reason="demo",
        error="boom",
    )
    log.append(event)
    assert log.read_all() == [event]


def test_empty_optional_fields_are_omitted(tmp_path):
    path = tmp_path / "audit.jsonl"
    AuditLog(path).append(
        Event(at=datetime(2024, 1, 2, tzinfo=timezone.utc), action="public.stop", service="svc")
    )
    line = json.loads(path.read_text(encoding="utf-8").splitlines()[0])
    assert line == {"at": "2024-01-02T00:00:00Z", "action": "public.stop", "service": "svc"}


def test_cleanup_of_missing_log_leaves_empty_file(tmp_path):
    path = tmp_path / "audit.jsonl"
    AuditLog(path).cleanup(timedelta(days=1))
    assert path.read_text(encoding="utf-8") == ""


def test_corrupt_line_raises(tmp_path):
    path = tmp_path / "audit.jsonl"
    path.write_text('{"action": "ok"}\nnot json\n', encoding="utf-8")
    with pytest.raises(ValueError):
        AuditLog(path).read_all()