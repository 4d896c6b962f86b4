"""On-disk list of trusted direct-mode peers."""

from __future__ import annotations

import contextlib
import hashlib
import json
import os
import re
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

_ZERO_TIME = "0001-01-01T00:00:00Z"
_TIMESTAMP = re.compile(
    r"(\d{4}-\d{2}-\d{2})[Tt](\d{2}:\d{2}:\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})"
)


def _format_time(value: datetime | None) -> str:
    if value is None:
        return _ZERO_TIME
    if value.tzinfo is None:
        value = value.astimezone()
    text = value.isoformat()
    if value.utcoffset() == timezone.utc.utcoffset(None):
        text = text[: -len("+00:00")] + "Z"
    return text


def _parse_time(value: Any) -> datetime | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"invalid timestamp: {value!r}")
    match = _TIMESTAMP.fullmatch(value)
    if match is None:
        raise ValueError(f"invalid timestamp: {value!r}")
    date, clock, fraction, zone = match.groups()
    micros = ((fraction or "") + "000000")[:6]
    if zone in ("Z", "z"):
        zone = "+00:00"
    parsed = datetime.fromisoformat(f"{date}T{clock}.{micros}{zone}")
    if parsed == datetime(1, 1, 1, tzinfo=timezone.utc):
        return None
    return parsed


def _text(data: dict, key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"invalid {key}: {value!r}")
    return value


@dataclass
class TrustedPeer:
    """A device that completed pairing with the shared secret."""

    id: str
    display_name: str = ""
    tailscale_ip: str = ""
    first_paired_at: datetime | None = None
    last_seen_at: datetime | None = None
    access_authorized_at: datetime | None = None
    last_route: str = ""
    # Display and matching only; it cannot authenticate a peer.
    secret_label: str = ""

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready mapping; unset times are written as the zero time."""
        return {
            "id": self.id,
            "display_name": self.display_name,
            "tailscale_ip": self.tailscale_ip,
            "first_paired_at": _format_time(self.first_paired_at),
            "last_seen_at": _format_time(self.last_seen_at),
            "access_authorized_at": _format_time(self.access_authorized_at),
            "last_route": self.last_route,
            "secret_label": self.secret_label,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrustedPeer:
        """Build a peer from its JSON mapping."""
        if not isinstance(data, dict):
            raise ValueError(f"trusted peer must be an object, got {data!r}")
        return cls(
            id=_text(data, "id"),
            display_name=_text(data, "display_name"),
            tailscale_ip=_text(data, "tailscale_ip"),
            first_paired_at=_parse_time(data.get("first_paired_at")),
            last_seen_at=_parse_time(data.get("last_seen_at")),
            access_authorized_at=_parse_time(data.get("access_authorized_at")),
            last_route=_text(data, "last_route"),
            secret_label=_text(data, "secret_label"),
        )


def derive_secret_label(secret: str) -> str:
    """Short, non-reversible label identifying which shared secret was used."""
    digest = hashlib.sha256(("portshare-secret-label:" + secret).encode("utf-8")).digest()
    return "sha256:" + digest[:8].hex()


class PeerStore:
    """JSON file holding trusted peers, replaced atomically on save."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)

    def load_peers(self) -> list[TrustedPeer]:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return []
        data = json.loads(raw)
        if data is None:
            return []
        if not isinstance(data, list):
            raise ValueError("peer file must hold a JSON array")
        return [TrustedPeer.from_dict(item) for item in data]

    def save_peers(self, peers: list[TrustedPeer]) -> None:
        directory = self.path.parent
        directory.mkdir(mode=0o700, parents=True, exist_ok=True)
        os.chmod(directory, 0o700)
        data = json.dumps([peer.to_dict() for peer in peers], indent=2, ensure_ascii=False)
        fd, tmp_path = tempfile.mkstemp(prefix=".peers-", suffix=".tmp", dir=directory)
        try:
            with os.fdopen(fd, "wb") as tmp:
                tmp.write(data.encode("utf-8"))
                tmp.flush()
                os.fsync(tmp.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.remove(tmp_path)
            raise