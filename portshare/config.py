"""Application settings stored as JSON in the user's configuration directory."""

from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass, fields, replace
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable

from portshare.domain import Language


@dataclass
class Config:
    """User settings."""

    language: Language | str = Language.CHINESE
    audit_retention: timedelta = timedelta(days=365)
    minimize_to_tray: bool = True
    confirm_on_exit: bool = True
    default_public_ttl: timedelta = timedelta(minutes=30)
    direct_control_port: int = 17890
    direct_peers_path: str = ""


def default_config() -> Config:
    """Settings used when no configuration file exists."""
    return Config()


def _user_config_dir() -> Path:
    if sys.platform == "win32":
        base = os.environ.get("APPDATA", "")
        if not base:
            raise OSError("%AppData% is not defined")
        return Path(base)
    if sys.platform == "darwin":
        home = os.environ.get("HOME", "")
        if not home:
            raise OSError("$HOME is not defined")
        return Path(home, "Library", "Application Support")
    xdg = os.environ.get("XDG_CONFIG_HOME", "")
    if xdg:
        if not os.path.isabs(xdg):
            raise OSError("path in $XDG_CONFIG_HOME is relative")
        return Path(xdg)
    home = os.environ.get("HOME", "")
    if not home:
        raise OSError("neither $XDG_CONFIG_HOME nor $HOME are defined")
    return Path(home, ".config")


def default_path() -> Path:
    """Location of the configuration file for the current user."""
    return _user_config_dir() / "PortShare" / "config.json"


def _encode_duration(value: timedelta) -> int:
    return value // timedelta(microseconds=1) * 1000


def _decode_duration(value: Any) -> timedelta:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"duration must be an integer of nanoseconds, got {value!r}")
    return timedelta(microseconds=value // 1000)


def _decode_language(value: Any) -> Language | str:
    if not isinstance(value, str):
        raise ValueError(f"language must be a string, got {value!r}")
    try:
        return Language(value)
    except ValueError:
        return value


def _decode_bool(value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"expected a boolean, got {value!r}")
    return value


def _decode_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"expected an integer, got {value!r}")
    return value


def _decode_str(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError(f"expected a string, got {value!r}")
    return value


_DECODERS: dict[str, Callable[[Any], Any]] = {
    "language": _decode_language,
    "audit_retention": _decode_duration,
    "minimize_to_tray": _decode_bool,
    "confirm_on_exit": _decode_bool,
    "default_public_ttl": _decode_duration,
    "direct_control_port": _decode_int,
    "direct_peers_path": _decode_str,
}


def _to_json(config: Config) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for field in fields(Config):
        value = getattr(config, field.name)
        if isinstance(value, timedelta):
            value = _encode_duration(value)
        elif field.name == "language":
            value = str(value)
        payload[field.name] = value
    return payload


class ConfigStore:
    """Reads and writes the configuration file."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)

    def load(self) -> Config:
        """Stored settings laid over the defaults; defaults if the file is absent."""
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return default_config()
        data = json.loads(raw)
        config = default_config()
        if data is None:
            return config
        if not isinstance(data, dict):
            raise ValueError("configuration must be a JSON object")
        updates = {
            key: decode(data[key])
            for key, decode in _DECODERS.items()
            if data.get(key) is not None
        }
        return replace(config, **updates)

    def save(self, config: Config) -> None:
        self.path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
        text = json.dumps(_to_json(config), indent=2, ensure_ascii=False)
        fd = os.open(self.path, os.O_CREAT | os.O_TRUNC | os.O_WRONLY, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)