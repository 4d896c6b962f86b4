"""Reading of Clash/Mihomo YAML configuration files."""

from __future__ import annotations

from typing import Any

import yaml

from portshare.clash.types import ClashConfig


def _int(data: dict, key: str) -> int:
    value = data.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"invalid {key}: {value!r}")
    return value


def _bool(data: dict, key: str) -> bool:
    value = data.get(key)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ValueError(f"invalid {key}: {value!r}")
    return value


def _str(data: dict, key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        raise ValueError(f"invalid {key}: {value!r}")
    return str(value)


def _mapping(value: Any, what: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{what} must be a mapping")
    return value


def parse_config_yaml(raw: bytes | str) -> ClashConfig:
    """Extract ports, controller settings and TUN state from a config file."""
    try:
        loaded = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ValueError(f"invalid Clash config: {exc}") from exc
    data = _mapping(loaded, "Clash config")
    tun = _mapping(data.get("tun"), "tun section")
    return ClashConfig(
        mixed_port=_int(data, "mixed-port"),
        socks_port=_int(data, "socks-port"),
        http_port=_int(data, "port"),
        external_controller=_str(data, "external-controller"),
        external_controller_pipe=_str(data, "external-controller-pipe"),
        secret=_str(data, "secret"),
        allow_lan=_bool(data, "allow-lan"),
        tun_enabled=_bool(tun, "enable"),
    )


def mask_secret(secret: str) -> str:
    """Hide a controller secret for display; an empty secret stays empty."""
    if not secret:
        return ""
    masked = "*" * 3
    return masked