"""Append-only JSON-lines audit log with time-based cleanup."""

from __future__ import annotations

import dataclasses
import json
import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

_TIMESTAMP = re.compile(
    r"(\d{4}-\d{2}-\d{2})[Tt](\d{2}:\d{2}:\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})"
)
_OPTIONAL_FIELDS = ("mode", "url", "provider", "reason", "error")


@dataclass
class Event:
    """One audited action."""

    at: datetime | None = None
    action: str = ""
    service: str = ""
    mode: str = ""
    url: str = ""
    provider: str = ""
    reason: str = ""
    error: str = ""


def _format_time(value: datetime | None) -> str:
    if value is None:
        return "0001-01-01T00:00:00Z"
    text = value.isoformat()
    if value.utcoffset() == timedelta(0):
        text = text[: -len("+00:00")] + "Z"
    return text


def _parse_time(value: str) -> datetime:
    match = _TIMESTAMP.fullmatch(value)
    if match is None:
        raise ValueError(f"invalid timestamp: {value!r}")
    date, clock, fraction, zone = match.groups()
    micros = ((fraction or "") + "000000")[:6]
    if zone in ("Z", "z"):
        zone = "+00:00"
    return datetime.fromisoformat(f"{date}T{clock}.{micros}{zone}")


def _event_to_json(event: Event) -> str:
    payload: dict[str, Any] = {
        "at": _format_time(event.at),
        "action": event.action,
        "service": event.service,
    }
    for name in _OPTIONAL_FIELDS:
        value = getattr(event, name)
        if value:
            payload[name] = value
    return json.dumps(payload, ensure_ascii=False)


def _event_from_json(line: str) -> Event:
    payload = json.loads(line)
    if not isinstance(payload, dict):
        raise ValueError("audit entry must be a JSON object")
    values: dict[str, Any] = {}
    for field in dataclasses.fields(Event):
        value = payload.get(field.name)
        if value is None:
            continue
        if not isinstance(value, str):
            raise ValueError(f"invalid {field.name}: {value!r}")
        values[field.name] = _parse_time(value) if field.name == "at" else value
    return Event(**values)


def _open_for_writing(path: Path, extra_flags: int) -> Any:
    fd = os.open(path, os.O_CREAT | os.O_WRONLY | extra_flags, 0o600)
    return os.fdopen(fd, "w", encoding="utf-8", newline="\n")


class AuditLog:
    """Audit events stored one JSON object per line."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)

    def append(self, event: Event) -> None:
        """Add an event, stamping it with the current time if it has none."""
        at = event.at if event.at is not None else datetime.now()
        if at.tzinfo is None:
            at = at.astimezone()
        event = dataclasses.replace(event, at=at)
        self.path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
        with _open_for_writing(self.path, os.O_APPEND) as handle:
            handle.write(_event_to_json(event) + "\n")

    def read_all(self) -> list[Event]:
        """All events in file order; an absent log is empty."""
        try:
            handle = self.path.open(encoding="utf-8")
        except FileNotFoundError:
            return []
        with handle:
            return [_event_from_json(line.rstrip("\r\n")) for line in handle]

    def cleanup(self, retention: timedelta) -> None:
        """Drop events older than the retention period."""
        events = self.read_all()
        cutoff = datetime.now(timezone.utc) - retention
        kept = [event for event in events if event.at is not None and event.at >= cutoff]
        self.path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
        with _open_for_writing(self.path, os.O_TRUNC) as handle:
            for event in kept:
                handle.write(_event_to_json(event) + "\n")