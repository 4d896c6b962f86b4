"""Direct-mode coordination: control server, trusted peers, localhost bridge, diagnostics and egress."""

from __future__ import annotations

import contextlib
import socket
import sys
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from portshare.clash.types import ApplyRequest, ApplyResult, DiscoveryReport
from portshare.direct import Client, ClientConfig, PairedPeer, Server, ServerConfig
from portshare.peer_store import TrustedPeer, derive_secret_label
from portshare.trust import (
    TrustedPeerAccess,
    host_from_address,
    trusted_peer_from_pair,
    upsert_trusted_peer,
)

RULE_PREFIX = "portshare"
CONTROL_PORT = 17890
BRIDGE_REFRESH_INTERVAL = 5.0
DEFAULT_PROBE_TIMEOUT = 0.15
CODE_TAILSCALE_UNAVAILABLE = "tailscale_unavailable"


class ManagerError(Exception):
    """A direct-mode operation was refused or a dependency is missing."""


class _Tailscale(Protocol):
    def check_ready(self) -> Any: ...


class _PairClient(Protocol):
    def pair(self, address: str) -> PairedPeer: ...


class _PeerStore(Protocol):
    def load_peers(self) -> list[TrustedPeer]: ...

    def save_peers(self, peers: list[TrustedPeer]) -> None: ...


class _AccessAuthorizer(Protocol):
    def allow_trusted_peer(self, access: TrustedPeerAccess) -> None: ...

    def revoke_trusted_peer(self, access: TrustedPeerAccess) -> None: ...


class _LocalhostBridge(Protocol):
    def set_local_tailscale_ip(self, ip: str) -> None: ...

    def set_allowed_peers(self, peers: list[str]) -> None: ...

    def refresh(self) -> None: ...

    def active_ports(self) -> list[int]: ...

    def conflict_ports(self) -> list[int]: ...

    def close(self) -> None: ...


class _NetworkDiagnostics(Protocol):
    def diagnose_peer(self, peer_tailscale_ip: str) -> Any: ...

    def apply_bypass(self, request: Any) -> Any: ...

    def clear_bypass(self, bypass: Any) -> None: ...

    def reprobe(self, request: Any) -> Any: ...


class _ClashEgress(Protocol):
    def discover(self) -> DiscoveryReport: ...

    def refresh_nodes(self) -> DiscoveryReport: ...

    def apply_node(self, request: ApplyRequest) -> ApplyResult: ...

    def restore_node(self) -> None: ...


@dataclass(frozen=True)
class ReadyState:
    """Whether Tailscale is ready and which address this device has on it."""

    ready: bool = False
    local_tailscale_ip: str = ""
    code: str = ""
    message: str = ""


def _parse_listen_address(address: str) -> tuple[str, int]:
    host, sep, port = address.strip().rpartition(":")
    if not sep:
        raise ManagerError(f"missing port in address {address!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        return host, int(port) if port else 0
    except ValueError as exc:
        raise ManagerError(f"invalid port in address {address!r}") from exc


def _join_host_port(host: str, port: int | str) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def _listen(address: str) -> socket.socket:
    host, port = _parse_listen_address(address)
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        if sys.platform != "win32":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen()
    except BaseException:
        sock.close()
        raise
    return sock


def _listener_address(sock: socket.socket) -> str:
    host, port = sock.getsockname()[:2]
    return _join_host_port(host, port)


def _close_quietly(sock: socket.socket) -> None:
    with contextlib.suppress(OSError):
        sock.close()


def probe_tcp_connect_latency(address: str, timeout: float) -> timedelta:
    """Time taken to open (and immediately close) a TCP connection to ``host:port``."""
    if timeout <= 0:
        timeout = DEFAULT_PROBE_TIMEOUT
    host, port = _parse_listen_address(address)
    started = time.perf_counter()
    conn = socket.create_connection((host, port), timeout=timeout)
    conn.close()
    elapsed = time.perf_counter() - started
    if elapsed <= 0:
        return timedelta(microseconds=1)
    return max(timedelta(seconds=elapsed), timedelta(microseconds=1))


class Manager:
    """Ties pairing, peer trust, firewall access, the localhost bridge and diagnostics together."""

    def __init__(
        self,
        *,
        tailscale: _Tailscale | None = None,
        pair_client: _PairClient | None = None,
        peer_store: _PeerStore | None = None,
        access_authorizer: _AccessAuthorizer | None = None,
        localhost_bridge: _LocalhostBridge | None = None,
        network_diagnostics: _NetworkDiagnostics | None = None,
        clash_egress: _ClashEgress | None = None,
        secret_label: str = "",
        device_id: str = "",
        device_name: str = "",
    ) -> None:
        self.tailscale = tailscale
        self.peer_store = peer_store
        self.access_authorizer = access_authorizer
        self.localhost_bridge = localhost_bridge
        self.network_diagnostics = network_diagnostics
        self.clash_egress = clash_egress
        self.device_id = device_id
        self.device_name = device_name

        self._auth_lock = threading.Lock()
        self._pair_client = pair_client
        self._secret_label = secret_label

        self._control_lock = threading.Lock()
        self._control_server: Server | None = None
        self._control_listener: socket.socket | None = None
        self._control_addr = ""
        self._bridge_stop: threading.Event | None = None
        self._bridge_enabled = True

        self._peer_lock = threading.Lock()

        self._network_lock = threading.Lock()
        self._active_bypass: Any = None
        self._has_active_bypass = False

    # Readiness and control server

    def ready(self) -> ReadyState:
        """Current Tailscale readiness."""
        if self.tailscale is None:
            return ReadyState(
                code=CODE_TAILSCALE_UNAVAILABLE,
                message="Tailscale client is not configured.",
            )
        report = self.tailscale.check_ready()
        return ReadyState(
            ready=report.ready,
            local_tailscale_ip=report.status.local_ipv4,
            code=report.code,
            message=report.message,
        )

    def start_control_server(self, listen_address: str, secret: str) -> None:
        """Listen for pairing requests, replacing any server already running."""
        if not secret.strip():
            raise ManagerError("shared secret is required")
        if not listen_address.strip():
            raise ManagerError("listen address is required")

        same_server: Server | None = None
        same_listener: socket.socket | None = None
        with self._control_lock:
            if self._control_listener is not None and self._control_addr == listen_address:
                same_server, same_listener = self._control_server, self._control_listener
                self._control_server = None
                self._control_listener = None
                self._control_addr = ""
        if same_server is not None:
            same_server.close()
        if same_listener is not None:
            _close_quietly(same_listener)

        listener = _listen(listen_address)
        address = _listener_address(listener)
        server = Server(
            ServerConfig(
                device_id=self.device_id,
                device_name=self.device_name,
                secret=secret,
                on_authenticated=self._on_authenticated,
            )
        )
        client = Client(
            ClientConfig(device_id=self.device_id, device_name=self.device_name, secret=secret)
        )

        with self._control_lock:
            old_server = self._control_server
            old_listener = self._control_listener
            old_stop = self._bridge_stop
            self._control_server = server
            self._control_listener = listener
            self._control_addr = address
            self._bridge_stop = None

        if old_stop is not None:
            old_stop.set()
        if old_server is not None:
            old_server.close()
        if old_listener is not None:
            _close_quietly(old_listener)

        with self._auth_lock:
            self._pair_client = client
            self._secret_label = derive_secret_label(secret)

        if self.localhost_bridge_enabled():
            self._start_bridge_polling(host_from_address(address))
        threading.Thread(target=self._serve, args=(server, listener), daemon=True).start()

    def stop_control_server(self) -> None:
        """Stop listening, stop bridge polling and close the localhost bridge."""
        with self._control_lock:
            server = self._control_server
            listener = self._control_listener
            stop = self._bridge_stop
            self._control_server = None
            self._control_listener = None
            self._control_addr = ""
            self._bridge_stop = None

        if stop is not None:
            stop.set()
        if self.localhost_bridge is not None:
            with contextlib.suppress(Exception):
                self.localhost_bridge.close()
        if server is not None:
            server.close()
        if listener is not None:
            _close_quietly(listener)

    def control_address(self) -> str:
        """``host:port`` the control server listens on, or an empty string."""
        with self._control_lock:
            return self._control_addr if self._control_listener is not None else ""

    @staticmethod
    def _serve(server: Server, listener: socket.socket) -> None:
        with contextlib.suppress(OSError, ValueError):
            server.serve(listener)

    def _on_authenticated(self, peer: PairedPeer) -> None:
        # Runs on a handler thread; a failed trust update must not break the handshake.
        with contextlib.suppress(Exception):
            self.trust_authenticated_peer(peer)

    # Localhost bridge

    def localhost_bridge_enabled(self) -> bool:
        """Whether the localhost bridge is switched on (it is by default)."""
        with self._control_lock:
            return self._bridge_enabled

    def set_localhost_bridge_enabled(self, enabled: bool) -> None:
        """Switch the localhost bridge on or off."""
        with self._control_lock:
            unchanged = self._bridge_enabled == enabled
            stop: threading.Event | None = None
            address = ""
            listening = False
            if not unchanged:
                self._bridge_enabled = enabled
                stop = self._bridge_stop
                self._bridge_stop = None
                listening = self._control_listener is not None
                address = self._control_addr if listening else ""

        if unchanged:
            if enabled:
                self._refresh_localhost_bridge()
            return
        if stop is not None:
            stop.set()
        if not enabled:
            if self.localhost_bridge is not None:
                self.localhost_bridge.close()
            return
        if listening:
            self._start_bridge_polling(host_from_address(address))
            return
        self._refresh_localhost_bridge()

    def localhost_bridge_ports(self) -> list[int]:
        """Ports the bridge currently forwards."""
        if self.localhost_bridge is None:
            return []
        return list(self.localhost_bridge.active_ports())

    def localhost_bridge_conflict_ports(self) -> list[int]:
        """Ports the bridge could not claim."""
        if self.localhost_bridge is None:
            return []
        return list(self.localhost_bridge.conflict_ports())

    def _start_bridge_polling(self, local_ip: str) -> None:
        bridge = self.localhost_bridge
        if bridge is None:
            return
        stop = threading.Event()
        with self._control_lock:
            if not self._bridge_enabled:
                return
            self._bridge_stop = stop
        bridge.set_local_tailscale_ip(local_ip)
        with contextlib.suppress(Exception):
            self._refresh_localhost_bridge()
        threading.Thread(target=self._poll_bridge, args=(stop,), daemon=True).start()

    def _poll_bridge(self, stop: threading.Event) -> None:
        while not stop.wait(BRIDGE_REFRESH_INTERVAL):
            with contextlib.suppress(Exception):
                self._refresh_localhost_bridge()

    def _refresh_localhost_bridge(self) -> None:
        bridge = self.localhost_bridge
        if bridge is None or not self.localhost_bridge_enabled():
            return
        bridge.set_local_tailscale_ip(self._local_tailscale_ip())
        bridge.set_allowed_peers(self._trusted_peer_ips())
        bridge.refresh()

    def _trusted_peer_ips(self) -> list[str]:
        if self.peer_store is None:
            return []
        try:
            peers = self.peer_store.load_peers()
        except Exception:
            return []
        ips: list[str] = []
        for peer in peers:
            ip = peer.tailscale_ip.strip()
            if ip and ip not in ips:
                ips.append(ip)
        return ips

    def _local_tailscale_ip(self) -> str:
        host = host_from_address(self.control_address())
        if host:
            return host
        if self.tailscale is None:
            return ""
        return self.ready().local_tailscale_ip

    # Trusted peers

    def pair_peer(self, address: str) -> PairedPeer:
        """Pair with the peer at ``address``, authorize it and remember it."""
        with self._auth_lock:
            pair_client = self._pair_client
            secret_label = self._secret_label
        if pair_client is None:
            raise ManagerError("pair client is not configured")
        if self.peer_store is None:
            raise ManagerError("peer store is not configured")

        peer = pair_client.pair(address)
        with self._peer_lock:
            trusted = self._build_and_authorize(peer, address, secret_label)
            peers = upsert_trusted_peer(self.peer_store.load_peers(), trusted)
            self.peer_store.save_peers(peers)
            with contextlib.suppress(Exception):
                self._refresh_localhost_bridge()
        return peer

    def trust_authenticated_peer(self, peer: PairedPeer) -> None:
        """Authorize and remember a peer that paired with this device's server."""
        if self.peer_store is None:
            raise ManagerError("peer store is not configured")
        with self._auth_lock:
            secret_label = self._secret_label
        with self._peer_lock:
            trusted = self._build_and_authorize(peer, peer.address, secret_label)
            peers = upsert_trusted_peer(self.peer_store.load_peers(), trusted)
            self.peer_store.save_peers(peers)
            self._refresh_localhost_bridge()

    def trusted_peers(self) -> list[TrustedPeer]:
        """All remembered peers."""
        if self.peer_store is None:
            raise ManagerError("peer store is not configured")
        with self._peer_lock:
            return self.peer_store.load_peers()

    def remove_trusted_peer(self, peer_id: str) -> None:
        """Revoke a peer's firewall access and forget it."""
        peer_id = peer_id.strip()
        if not peer_id:
            raise ManagerError("peer id is required")
        if self.peer_store is None:
            raise ManagerError("peer store is not configured")

        with self._peer_lock:
            peers = self.peer_store.load_peers()
            position = next((i for i, peer in enumerate(peers) if peer.id == peer_id), None)
            if position is None:
                raise ManagerError("trusted peer not found")
            removed = peers[position]
            if self.access_authorizer is not None and removed.tailscale_ip.strip():
                self.access_authorizer.revoke_trusted_peer(
                    TrustedPeerAccess(
                        rule_prefix=RULE_PREFIX,
                        local_tailscale_ip=self._local_tailscale_ip(),
                        peer_tailscale_ip=removed.tailscale_ip,
                        peer_id=removed.id,
                        peer_name=removed.display_name,
                    )
                )
            self.peer_store.save_peers([*peers[:position], *peers[position + 1 :]])
            self._refresh_localhost_bridge()

    def _build_and_authorize(self, peer: PairedPeer, address: str, secret_label: str) -> TrustedPeer:
        trusted = trusted_peer_from_pair(peer, address, secret_label)
        if self.access_authorizer is None:
            return trusted
        self.access_authorizer.allow_trusted_peer(
            TrustedPeerAccess(
                rule_prefix=RULE_PREFIX,
                local_tailscale_ip=self._local_tailscale_ip(),
                peer_tailscale_ip=trusted.tailscale_ip,
                peer_id=trusted.id,
                peer_name=trusted.display_name,
            )
        )
        return replace(trusted, access_authorized_at=datetime.now(timezone.utc))

    # Network diagnostics

    def _diagnostics(self) -> _NetworkDiagnostics:
        if self.network_diagnostics is None:
            raise ManagerError("network diagnostics is not configured")
        return self.network_diagnostics

    def network_path(self, peer_tailscale_ip: str) -> Any:
        """Describe how traffic to a peer currently travels."""
        return self._diagnostics().diagnose_peer(peer_tailscale_ip)

    def apply_network_bypass(self, request: Any) -> Any:
        """Route a peer's endpoint around the proxy and remember the route."""
        active = self._diagnostics().apply_bypass(request)
        with self._network_lock:
            self._active_bypass = active
            self._has_active_bypass = True
        return active

    def clear_network_bypass(self) -> None:
        """Remove the remembered bypass route, if any."""
        diagnostics = self._diagnostics()
        with self._network_lock:
            active, has_active = self._active_bypass, self._has_active_bypass
        if not has_active:
            return
        diagnostics.clear_bypass(active)
        with self._network_lock:
            self._active_bypass = None
            self._has_active_bypass = False

    def active_network_bypass(self) -> Any:
        """The bypass route in effect, or None."""
        with self._network_lock:
            return self._active_bypass if self._has_active_bypass else None

    def probe_peer_latency(self, peer_ip: str) -> timedelta:
        """TCP connect time to a peer's control port."""
        peer_ip = peer_ip.strip()
        if not peer_ip:
            raise ManagerError("peer tailscale ip is required")
        return probe_tcp_connect_latency(_join_host_port(peer_ip, CONTROL_PORT), DEFAULT_PROBE_TIMEOUT)

    # Proxy egress

    def _egress(self) -> _ClashEgress:
        if self.clash_egress is None:
            raise ManagerError("clash egress is not configured")
        return self.clash_egress

    def detect_clash(self) -> DiscoveryReport:
        """Describe the local Clash/Mihomo setup."""
        return self._egress().discover()

    def refresh_clash_nodes(self) -> DiscoveryReport:
        """List proxy nodes with fresh delays."""
        return self._egress().refresh_nodes()

    def apply_clash_node(self, request: ApplyRequest) -> ApplyResult:
        """Switch to a proxy node and verify the peer is reached directly."""
        return self._egress().apply_node(request)

    def restore_clash_node(self) -> None:
        """Switch back to the node active before the last apply."""
        self._egress().restore_node()