"""Core data types shared across the application."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class _StrEnum(str, Enum):
    def __str__(self) -> str:
        return self.value


class ShareMode(_StrEnum):
    """How a local service is exposed."""

    TAILNET = "tailnet"
    PUBLIC = "public"


class Language(_StrEnum):
    """User interface language."""

    CHINESE = "zh-CN"
    ENGLISH = "en-US"


class ShareStatus(_StrEnum):
    """Lifecycle state of a share."""

    STOPPED = "stopped"
    STARTING = "starting"
    ACTIVE = "active"
    ERROR = "error"


@dataclass
class LocalService:
    """A service found listening on the local machine."""

    id: str = ""
    name: str = ""
    scheme: str = ""
    host: str = ""
    port: int = 0
    title: str = ""
    discovered: bool = False
    last_checked: datetime | None = None


@dataclass
class Share:
    """A local service exposed to other devices."""

    id: str
    service_id: str
    provider: str
    mode: ShareMode
    local_url: str
    public_url: str = ""
    status: ShareStatus = ShareStatus.STOPPED
    started_at: datetime | None = None
    expires_at: datetime | None = None
    last_error: str = ""
    long_running: bool = False