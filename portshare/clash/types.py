"""Data types describing a Clash/Mihomo installation and its proxy nodes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum


@dataclass
class ClashConfig:
    """Settings read from a Clash/Mihomo configuration file."""

    mixed_port: int = 0
    socks_port: int = 0
    http_port: int = 0
    external_controller: str = ""
    external_controller_pipe: str = ""
    secret: str = ""
    allow_lan: bool = False
    tun_enabled: bool = False
    source_path: str = ""


@dataclass
class ProxyPort:
    """A local proxy entry port and its kind (mixed, socks or http)."""

    kind: str = ""
    port: int = 0


class ControlKind(str, Enum):
    """Transport used to reach the controller API."""

    NONE = ""
    HTTP = "http"
    NAMED_PIPE = "named-pipe"

    def __str__(self) -> str:
        return self.value


@dataclass
class ControlEndpoint:
    """Where and how to reach the controller API."""

    kind: ControlKind = ControlKind.NONE
    address: str = ""
    secret: str = ""


@dataclass
class TUNInterface:
    """A network adapter that looks like a proxy TUN device."""

    name: str = ""
    description: str = ""
    index: int = 0
    status: str = ""


@dataclass
class ProxyNode:
    """One selectable proxy in a group."""

    group_name: str = ""
    name: str = ""
    type: str = ""
    region: str = ""
    current: bool = False
    delay: timedelta = timedelta(0)
    tailscale_route: str = ""
    tailscale_latency: str = ""
    recommended: bool = False


@dataclass
class DiscoveryReport:
    """What was found about the local Clash/Mihomo setup."""

    config: ClashConfig = field(default_factory=ClashConfig)
    tun_interfaces: list[TUNInterface] = field(default_factory=list)
    proxy_ports: list[ProxyPort] = field(default_factory=list)
    control: ControlEndpoint = field(default_factory=ControlEndpoint)
    nodes: list[ProxyNode] = field(default_factory=list)
    message: str = ""


@dataclass
class ApplyRequest:
    """Switch a group to a node and verify the peer is reached directly."""

    peer_tailscale_ip: str = ""
    group_name: str = ""
    node_name: str = ""
    previous_node: str = ""


@dataclass
class ApplyResult:
    """Outcome of switching nodes."""

    group_name: str = ""
    node_name: str = ""
    previous_node: str = ""
    route_type: str = ""
    endpoint: str = ""
    latency: str = ""
    improved: bool = False
    restored_previous: bool = False


@dataclass
class RouteCheck:
    """The route Tailscale reported to a peer."""

    route_type: str = ""
    endpoint: str = ""
    latency: str = ""


@dataclass
class Version:
    """Controller version string."""

    version: str = ""


@dataclass
class ProxyOption:
    """One member of a proxy group."""

    name: str = ""
    type: str = ""
    delay: timedelta = timedelta(0)


@dataclass
class ProxyGroup:
    """A selector group and its members."""

    name: str = ""
    type: str = ""
    now: str = ""
    options: list[ProxyOption] = field(default_factory=list)


@dataclass
class ProxySnapshot:
    """All proxy groups the controller reports."""

    groups: list[ProxyGroup] = field(default_factory=list)