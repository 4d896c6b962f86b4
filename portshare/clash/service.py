"""Discovery of a local Clash/Mihomo installation and switching of its proxy nodes."""

from __future__ import annotations

import glob
import json
import os
import re
import subprocess
from dataclasses import replace
from datetime import timedelta
from typing import Any, Protocol
from urllib.parse import urlsplit

from portshare.clash.config import parse_config_yaml
from portshare.clash.controller import (
    DEFAULT_DELAY_TEST_URL,
    DEFAULT_DELAY_TIMEOUT_MS,
    HTTPController,
    PipeController,
)
from portshare.clash.region import infer_region
from portshare.clash.runner import CommandRunner
from portshare.clash.types import (
    ApplyRequest,
    ApplyResult,
    ClashConfig,
    ControlEndpoint,
    ControlKind,
    DiscoveryReport,
    ProxyNode,
    ProxyPort,
    ProxySnapshot,
    RouteCheck,
    TUNInterface,
)

ROUTE_DIRECT = "direct"
ROUTE_DERP = "derp"

_CONFIG_NAMES = ("clash-verge.yaml", "clash-verge-check.yaml", "config.yaml")
_TUN_MARKERS = ("meta", "mihomo", "clash", "tun", "sing-box", "proxy")
_ADAPTER_SCRIPT = (
    "Get-NetAdapter | Select-Object Name,InterfaceDescription,ifIndex,Status | ConvertTo-Json -Compress"
)
_POWERSHELL_PREFIX = (
    "[Console]::OutputEncoding = [System.Text.UTF8Encoding]::new($false); "
    "$OutputEncoding = [System.Text.UTF8Encoding]::new($false); "
)
_PONG = re.compile(r"pong from .*? via (\S+) in (\S+)")


class ClashError(Exception):
    """A Clash/Mihomo operation failed; ``result`` holds what was done before it failed."""

    def __init__(self, message: str, result: ApplyResult | None = None) -> None:
        super().__init__(message)
        self.result = result


class _Runner(Protocol):
    def run(self, name: str, *args: str) -> bytes: ...


class _Controller(Protocol):
    def proxies(self) -> ProxySnapshot: ...

    def delay(self, proxy_name: str, test_url: str = "", timeout_ms: int = 0) -> timedelta: ...

    def select(self, group_name: str, proxy_name: str) -> None: ...


class _Verifier(Protocol):
    def verify_tailscale_direct(self, peer_ip: str) -> RouteCheck: ...


def _parse_ping_route(raw: bytes) -> RouteCheck:
    text = raw.decode("utf-8", errors="replace")
    matches = _PONG.findall(text)
    if not matches:
        return RouteCheck()
    endpoint, latency = matches[-1]
    route = ROUTE_DERP if endpoint.startswith("DERP(") else ROUTE_DIRECT
    return RouteCheck(route_type=route, endpoint=endpoint, latency=latency)


class _RunnerVerifier:
    """Nudges Tailscale to re-probe, then pings the peer to see how it is reached."""

    def __init__(self, runner: _Runner) -> None:
        self.runner = runner

    def verify_tailscale_direct(self, peer_ip: str) -> RouteCheck:
        for step in ("restun", "rebind"):
            try:
                self.runner.run("tailscale", "debug", step)
            except (OSError, subprocess.SubprocessError):
                pass
        raw = self.runner.run("tailscale", "ping", "--c", "10", peer_ip)
        return _parse_ping_route(raw)


def controller_for_endpoint(endpoint: ControlEndpoint) -> HTTPController | PipeController | None:
    """Client for a discovered control endpoint, or None if there is none."""
    if endpoint.kind == ControlKind.NAMED_PIPE:
        return PipeController(endpoint.address, endpoint.secret)
    if endpoint.kind == ControlKind.HTTP:
        return HTTPController(endpoint.address, endpoint.secret)
    return None


def nodes_from_snapshot(client: _Controller, snapshot: ProxySnapshot) -> list[ProxyNode]:
    """Flatten groups into nodes with fresh delays: current first, then fastest, unknown last."""
    nodes = []
    for group in snapshot.groups:
        for option in group.options:
            delay = option.delay
            try:
                refreshed = client.delay(option.name, DEFAULT_DELAY_TEST_URL, DEFAULT_DELAY_TIMEOUT_MS)
            except Exception:
                refreshed = timedelta(0)
            if refreshed > timedelta(0):
                delay = refreshed
            nodes.append(
                ProxyNode(
                    group_name=group.name,
                    name=option.name,
                    type=option.type,
                    region=infer_region(option.name),
                    current=option.name == group.now,
                    delay=delay,
                )
            )
    nodes.sort(key=lambda n: (not n.current, n.delay == timedelta(0), n.delay, n.name))
    return nodes


def proxy_ports(config: ClashConfig) -> list[ProxyPort]:
    """Configured proxy entry ports in mixed, socks, http order."""
    candidates = (("mixed", config.mixed_port), ("socks", config.socks_port), ("http", config.http_port))
    return [ProxyPort(kind=kind, port=port) for kind, port in candidates if port > 0]


def control_endpoint(config: ClashConfig) -> ControlEndpoint:
    """Controller endpoint, preferring the named pipe over HTTP."""
    pipe = config.external_controller_pipe.strip()
    if pipe:
        return ControlEndpoint(kind=ControlKind.NAMED_PIPE, address=pipe, secret=config.secret)
    controller = config.external_controller.strip()
    if not controller:
        return ControlEndpoint(secret=config.secret)
    if "://" not in controller:
        controller = "http://" + controller
    try:
        parsed = urlsplit(controller)
        parsed.port  # noqa: B018 - validates the port
    except ValueError:
        return ControlEndpoint(secret=config.secret)
    if not parsed.netloc:
        return ControlEndpoint(secret=config.secret)
    return ControlEndpoint(kind=ControlKind.HTTP, address=controller.rstrip("/"), secret=config.secret)


def is_tun_like(name: str, description: str) -> bool:
    """Whether an adapter's name or description suggests a proxy TUN device."""
    value = f"{name} {description}".lower()
    return any(marker in value for marker in _TUN_MARKERS)


def powershell_args(script: str) -> list[str]:
    """Arguments running a script non-interactively with UTF-8 output."""
    return ["-NoProfile", "-NonInteractive", "-Command", _POWERSHELL_PREFIX + script]


def _default_config_roots() -> list[str]:
    roots = []
    for env in ("APPDATA", "LOCALAPPDATA"):
        base = os.environ.get(env, "")
        if base:
            roots.append(os.path.join(base, "io.github.clash-verge-rev.clash-verge-rev"))
    app_data = os.environ.get("APPDATA", "")
    if app_data:
        roots.append(os.path.join(app_data, "clash_win"))
    return roots


def _one_or_many(raw: bytes) -> list[Any]:
    text = raw.decode("utf-8", errors="replace").strip()
    if not text:
        return []
    value = json.loads(text)
    if text.startswith("["):
        return value or []
    return [value]


def _text(item: dict, key: str) -> str:
    value = item.get(key)
    return value if isinstance(value, str) else ""


class ClashService:
    """Finds the local Clash/Mihomo setup and switches nodes through its controller."""

    def __init__(self, runner: _Runner | None = None, roots: list[str] | None = None) -> None:
        self.runner: _Runner = runner if runner is not None else CommandRunner()
        self.roots = list(roots or [])
        self.client: _Controller | None = None
        self.verifier: _Verifier = _RunnerVerifier(self.runner)
        self.previous_group = ""
        self.previous_node = ""

    def discover(self) -> DiscoveryReport:
        """Read the configuration and describe ports, controller and TUN adapters."""
        config = self._discover_config()
        report = DiscoveryReport(
            config=config,
            proxy_ports=proxy_ports(config),
            control=control_endpoint(config),
        )
        if self.client is None and report.control.kind != ControlKind.NONE:
            self.client = controller_for_endpoint(report.control)
        try:
            report.tun_interfaces = self._tun_interfaces()
        except (OSError, subprocess.SubprocessError, ValueError):
            pass
        return report

    def refresh_nodes(self) -> DiscoveryReport:
        """Discover, then list every proxy node with a fresh delay."""
        report = self.discover()
        client = self._controller()
        report.nodes = nodes_from_snapshot(client, client.proxies())
        return report

    def apply_node(self, request: ApplyRequest) -> ApplyResult:
        """Select a node and keep it only if Tailscale then reaches the peer directly."""
        client = self._controller()
        if not request.peer_tailscale_ip.strip():
            raise ClashError("缺少对端 Tailscale IP")
        if not request.group_name.strip() or not request.node_name.strip():
            raise ClashError("缺少 Clash/Mihomo 节点选择")
        client.select(request.group_name, request.node_name)
        self.previous_group = request.group_name
        self.previous_node = request.previous_node

        result = ApplyResult(
            group_name=request.group_name,
            node_name=request.node_name,
            previous_node=request.previous_node,
        )
        try:
            check = self.verifier.verify_tailscale_direct(request.peer_tailscale_ip)
        except Exception as exc:
            self._restore_previous_best_effort(client)
            result.restored_previous = request.previous_node != ""
            raise ClashError(str(exc), result) from exc
        result = replace(
            result, route_type=check.route_type, endpoint=check.endpoint, latency=check.latency
        )
        if check.route_type != ROUTE_DIRECT:
            self._restore_previous_best_effort(client)
            result.restored_previous = request.previous_node != ""
            raise ClashError(
                f"Tailscale 未建立 direct，当前为 {check.route_type} {check.endpoint} {check.latency}",
                result,
            )
        result.improved = True
        return result

    def restore_node(self) -> None:
        """Select again the node that was active before the last apply."""
        client = self._controller()
        if not self.previous_group or not self.previous_node:
            raise ClashError("没有可恢复的 Clash/Mihomo 节点")
        client.select(self.previous_group, self.previous_node)

    def config_candidates(self) -> list[str]:
        """Configuration files to try, in order of preference."""
        roots = self.roots or _default_config_roots()
        paths = []
        for root in roots:
            paths.extend(os.path.join(root, name) for name in _CONFIG_NAMES)
            pattern = os.path.join(glob.escape(root), "profiles", "*.yaml")
            paths.extend(sorted(glob.glob(pattern)))
        return paths

    def _controller(self) -> _Controller:
        if self.client is not None:
            return self.client
        report = self.discover()
        if report.control.kind == ControlKind.NONE:
            raise ClashError("未发现 Clash/Mihomo 控制接口")
        self.client = controller_for_endpoint(report.control)
        assert self.client is not None
        return self.client

    def _restore_previous_best_effort(self, client: _Controller) -> None:
        if not self.previous_group or not self.previous_node:
            return
        try:
            client.select(self.previous_group, self.previous_node)
        except Exception:
            pass

    def _discover_config(self) -> ClashConfig:
        for path in self.config_candidates():
            try:
                with open(path, "rb") as handle:
                    raw = handle.read()
                config = parse_config_yaml(raw)
            except (OSError, ValueError):
                continue
            config.source_path = path
            return config
        raise ClashError("未找到 Clash/Mihomo 配置")

    def _tun_interfaces(self) -> list[TUNInterface]:
        raw = self.runner.run("powershell.exe", *powershell_args(_ADAPTER_SCRIPT))
        result = []
        for item in _one_or_many(raw):
            if not isinstance(item, dict):
                raise ValueError(f"unexpected adapter entry: {item!r}")
            name = _text(item, "Name")
            description = _text(item, "InterfaceDescription")
            if not is_tun_like(name, description):
                continue
            index = item.get("ifIndex")
            result.append(
                TUNInterface(
                    name=name,
                    description=description,
                    index=index if isinstance(index, int) and not isinstance(index, bool) else 0,
                    status=_text(item, "Status"),
                )
            )
        return result