import socket
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import timedelta
from types import SimpleNamespace

import pytest

from portshare.clash.types import (
    ApplyRequest,
    ApplyResult,
    ControlEndpoint,
    ControlKind,
    DiscoveryReport,
    ProxyNode,
)
from portshare.direct import Client, ClientConfig, PairedPeer
from portshare.manager import (
    CODE_TAILSCALE_UNAVAILABLE,
    Manager,
    ManagerError,
    ReadyState,
    probe_tcp_connect_latency,
)
from portshare.peer_store import PeerStore, TrustedPeer
from portshare.trust import TrustedPeerAccess


@dataclass
class FakeStatus:
    local_ipv4: str = ""


@dataclass
class FakeReport:
    ready: bool = False
    code: str = ""
    message: str = ""
    status: FakeStatus = field(default_factory=FakeStatus)


class FakeTailscale:
    def __init__(self, report):
        self.report = report

    def check_ready(self):
        return self.report

    def ping_peer(self, peer_ip):
        return None


class FakePairClient:
    def __init__(self, peers=None):
        self.peers = peers or {}
        self.lock = threading.Lock()

    def pair(self, address):
        with self.lock:
            peer = self.peers.get(address)
            if peer is None:
                return PairedPeer(device_id="device-b", device_name="desktop-b", address=address)
            if not peer.address:
                peer = replace(peer, address=address)
            return peer


class FakeAccessAuthorizer:
    def __init__(self):
        self.lock = threading.Lock()
        self.calls = []
        self.revoke_calls = []

    def allow_trusted_peer(self, access):
        with self.lock:
            self.calls.append(access)

    def revoke_trusted_peer(self, access):
        with self.lock:
            self.revoke_calls.append(access)


class FakeBridge:
    def __init__(self):
        self.lock = threading.Lock()
        self.local_ip = ""
        self.peers = []
        self.refresh_count = 0
        self.closed = False
        self.refreshed = threading.Event()

    def set_local_tailscale_ip(self, ip):
        with self.lock:
            self.local_ip = ip

    def set_allowed_peers(self, peers):
        with self.lock:
            self.peers = list(peers)

    def refresh(self):
        with self.lock:
            self.refresh_count += 1
        self.refreshed.set()

    def active_ports(self):
        return [8080]

    def conflict_ports(self):
        return [3000]

    def close(self):
        with self.lock:
            self.closed = True

    def snapshot(self):
        with self.lock:
            return self.local_ip, list(self.peers), self.refresh_count, self.closed


class MemoryPeerStore:
    def __init__(self, peers=None):
        self.lock = threading.Lock()
        self.peers = list(peers or [])

    def load_peers(self):
        with self.lock:
            return list(self.peers)

    def save_peers(self, peers):
        with self.lock:
            self.peers = list(peers)


class RacingPeerStore(MemoryPeerStore):
    def __init__(self):
        super().__init__()
        self.loads = 0
        self.second_load_seen = threading.Event()

    def load_peers(self):
        with self.lock:
            self.loads += 1
            loads = self.loads
            if loads == 2:
                self.second_load_seen.set()
            peers = list(self.peers)
        if loads == 1:
            self.second_load_seen.wait(0.05)
        return peers


class FailingPeerStore:
    def load_peers(self):
        raise ValueError("load failed")

    def save_peers(self, peers):
        raise ValueError("load failed")


class FakeNetworkDiagnostics:
    def __init__(self, report=None):
        self.report = report
        self.report_peer = ""
        self.apply_request = None
        self.cleared = None

    def diagnose_peer(self, peer):
        self.report_peer = peer
        return self.report

    def apply_bypass(self, request):
        self.apply_request = request
        return SimpleNamespace(
            peer_tailscale_ip=request.peer_tailscale_ip,
            endpoint_ip=request.endpoint_ip,
            interface_index=request.candidate.interface_index,
            next_hop=request.candidate.next_hop,
        )

    def clear_bypass(self, bypass):
        self.cleared = bypass

    def reprobe(self, request):
        return request


class FakeClashEgress:
    def __init__(self, report):
        self.report = report
        self.apply_request = None
        self.restored = False

    def discover(self):
        return self.report

    def refresh_nodes(self):
        return self.report

    def apply_node(self, request):
        self.apply_request = request
        return ApplyResult(
            group_name=request.group_name, node_name=request.node_name, route_type="direct", latency="25ms"
        )

    def restore_node(self):
        self.restored = True


@pytest.fixture
def started():
    managers = []
    yield managers.append
    for manager in managers:
        manager.stop_control_server()


def ready_tailscale(ip="100.79.83.104"):
    return FakeTailscale(FakeReport(ready=True, code="ok", status=FakeStatus(local_ipv4=ip)))


def test_real_client_and_peer_store_pair_end_to_end(tmp_path, started):
    server_side = Manager(peer_store=PeerStore(tmp_path / "b.json"), device_id="device-b", device_name="desktop-b")
    server_side.start_control_server("127.0.0.1:0", "secret")
    started(server_side)
    client_side = Manager(
        pair_client=Client(ClientConfig(device_id="device-a", device_name="desktop-a", secret="secret")),
        peer_store=PeerStore(tmp_path / "a.json"),
    )
    peer = client_side.pair_peer(server_side.control_address())
    assert peer.device_id == "device-b"
    stored = client_side.trusted_peers()
    assert [(p.id, p.tailscale_ip) for p in stored] == [("device-b", "127.0.0.1")]


def test_start_control_server_rejects_empty_secret():
    manager = Manager(device_id="device-a", device_name="desktop-a")
    with pytest.raises(ManagerError, match="shared secret is required"):
        manager.start_control_server("127.0.0.1:0", "")


def test_start_control_server_rejects_empty_address():
    with pytest.raises(ManagerError, match="listen address is required"):
        Manager().start_control_server(" ", "secret")


def test_start_control_server_pairs_and_stop_closes_listener():
    manager = Manager(device_id="device-b", device_name="desktop-b")
    manager.start_control_server("127.0.0.1:0", "secret")
    address = manager.control_address()
    assert address.startswith("127.0.0.1:")

    client = Client(ClientConfig(device_id="device-a", device_name="desktop-a", secret="secret"))
    peer = client.pair(address, timeout=3)
    assert (peer.device_id, peer.device_name) == ("device-b", "desktop-b")

    manager.stop_control_server()
    assert manager.control_address() == ""
    with pytest.raises(OSError):
        client.pair(address, timeout=1)


def test_start_control_server_replaces_existing_listener(started):
    manager = Manager(device_id="device-b", device_name="desktop-b")
    manager.start_control_server("127.0.0.1:0", "secret")
    started(manager)
    first = manager.control_address()
    manager.start_control_server("127.0.0.1:0", "token")
    second = manager.control_address()
    assert second != ""
    assert second != first


def test_start_control_server_can_restart_same_address(started):
    manager = Manager(device_id="device-b", device_name="desktop-b")
    manager.start_control_server("127.0.0.1:0", "secret")
    started(manager)
    address = manager.control_address()
    manager.start_control_server(address, "token")
    client = Client(ClientConfig(device_id="device-a", device_name="desktop-a", secret="token"))
    peer = client.pair(address, timeout=3)
    assert peer.device_id == "device-b"


def test_start_control_server_configures_localhost_bridge(started):
    store = MemoryPeerStore([TrustedPeer(id="device-b", tailscale_ip="100.109.251.97")])
    bridge = FakeBridge()
    manager = Manager(peer_store=store, localhost_bridge=bridge, device_id="device-a", device_name="desktop-a")
    manager.start_control_server("127.0.0.1:0", "secret")
    started(manager)

    assert bridge.refreshed.wait(1)
    local_ip, peers, refresh, closed = bridge.snapshot()
    assert local_ip == "127.0.0.1"
    assert peers == ["100.109.251.97"]
    assert refresh > 0
    assert closed is False


def test_stop_control_server_closes_localhost_bridge():
    bridge = FakeBridge()
    manager = Manager(localhost_bridge=bridge, device_id="device-a", device_name="desktop-a")
    manager.start_control_server("127.0.0.1:0", "secret")
    manager.stop_control_server()
    assert bridge.snapshot()[3] is True


def test_set_localhost_bridge_enabled_closes_and_restarts_bridge(started):
    store = MemoryPeerStore([TrustedPeer(id="device-b", tailscale_ip="100.109.251.97")])
    bridge = FakeBridge()
    manager = Manager(peer_store=store, localhost_bridge=bridge, device_id="device-a", device_name="desktop-a")
    assert manager.localhost_bridge_enabled() is True
    manager.start_control_server("127.0.0.1:0", "secret")
    started(manager)
    assert bridge.refreshed.wait(1)

    manager.set_localhost_bridge_enabled(False)
    assert manager.localhost_bridge_enabled() is False
    _, _, refresh_after_disable, closed = bridge.snapshot()
    assert closed is True

    manager.trust_authenticated_peer(
        PairedPeer(device_id="device-b", device_name="desktop-b", address="100.109.251.97:17890")
    )
    assert bridge.snapshot()[2] == refresh_after_disable

    bridge.refreshed.clear()
    manager.set_localhost_bridge_enabled(True)
    assert manager.localhost_bridge_enabled() is True
    assert bridge.refreshed.wait(1)
    local_ip, peers, refresh_after_enable, _ = bridge.snapshot()
    assert local_ip == "127.0.0.1"
    assert peers == ["100.109.251.97"]
    assert refresh_after_enable > refresh_after_disable


def test_ready_uses_tailscale_report():
    state = Manager(tailscale=ready_tailscale()).ready()
    assert state == ReadyState(ready=True, local_tailscale_ip="100.79.83.104", code="ok", message="")


def test_ready_without_tailscale():
    state = Manager().ready()
    assert state.ready is False
    assert state.code == CODE_TAILSCALE_UNAVAILABLE
    assert state.message == "Tailscale client is not configured."


def test_pair_peer_stores_trusted_peer():
    store = MemoryPeerStore()
    manager = Manager(
        tailscale=FakeTailscale(FakeReport(ready=True, code="ok")),
        pair_client=FakePairClient(
            {"100.109.251.97:17890": PairedPeer(device_id="device-b", device_name="desktop-b")}
        ),
        peer_store=store,
    )
    peer = manager.pair_peer("100.109.251.97:17890")
    assert peer.device_id == "device-b"
    assert len(store.peers) == 1
    stored = store.peers[0]
    assert stored.tailscale_ip == "100.109.251.97"
    assert stored.first_paired_at is not None
    assert stored.last_seen_at is not None


def test_pair_peer_authorizes_trusted_peer_access():
    store = MemoryPeerStore()
    authorizer = FakeAccessAuthorizer()
    manager = Manager(
        tailscale=ready_tailscale(),
        pair_client=FakePairClient(
            {"100.109.251.97:17890": PairedPeer(device_id="device-b", device_name="desktop-b")}
        ),
        peer_store=store,
        access_authorizer=authorizer,
    )
    manager.pair_peer("100.109.251.97:17890")
    assert authorizer.calls == [
        TrustedPeerAccess(
            rule_prefix="portshare",
            local_tailscale_ip="100.79.83.104",
            peer_tailscale_ip="100.109.251.97",
            peer_id="device-b",
            peer_name="desktop-b",
        )
    ]
    assert len(store.peers) == 1
    assert store.peers[0].access_authorized_at is not None


def test_pair_peer_refreshes_localhost_bridge_peers():
    bridge = FakeBridge()
    manager = Manager(
        tailscale=ready_tailscale(),
        pair_client=FakePairClient(
            {"100.109.251.97:17890": PairedPeer(device_id="device-b", device_name="desktop-b")}
        ),
        peer_store=MemoryPeerStore(),
        localhost_bridge=bridge,
    )
    manager.pair_peer("100.109.251.97:17890")
    local_ip, peers, refresh, _ = bridge.snapshot()
    assert local_ip == "100.79.83.104"
    assert peers == ["100.109.251.97"]
    assert refresh > 0


def test_pair_peer_requires_pair_client_and_store():
    with pytest.raises(ManagerError, match="pair client is not configured"):
        Manager(peer_store=MemoryPeerStore()).pair_peer("100.109.251.97:17890")
    with pytest.raises(ManagerError, match="peer store is not configured"):
        Manager(pair_client=FakePairClient()).pair_peer("100.109.251.97:17890")


def test_remove_trusted_peer_revokes_firewall_and_refreshes_bridge():
    store = MemoryPeerStore(
        [
            TrustedPeer(id="device-b", display_name="desktop-b", tailscale_ip="100.109.251.97"),
            TrustedPeer(id="device-c", display_name="desktop-c", tailscale_ip="100.109.251.98"),
        ]
    )
    authorizer = FakeAccessAuthorizer()
    bridge = FakeBridge()
    manager = Manager(
        tailscale=ready_tailscale(), peer_store=store, access_authorizer=authorizer, localhost_bridge=bridge
    )
    manager.remove_trusted_peer("device-b")

    assert authorizer.revoke_calls == [
        TrustedPeerAccess(
            rule_prefix="portshare",
            local_tailscale_ip="100.79.83.104",
            peer_tailscale_ip="100.109.251.97",
            peer_id="device-b",
            peer_name="desktop-b",
        )
    ]
    assert [p.id for p in store.peers] == ["device-c"]
    local_ip, peers, refresh, _ = bridge.snapshot()
    assert local_ip == "100.79.83.104"
    assert peers == ["100.109.251.98"]
    assert refresh > 0


def test_remove_trusted_peer_revokes_without_local_tailscale_ip():
    store = MemoryPeerStore(
        [
            TrustedPeer(id="device-b", display_name="desktop-b", tailscale_ip="100.109.251.97"),
            TrustedPeer(id="device-c", display_name="desktop-c", tailscale_ip="100.109.251.98"),
        ]
    )
    authorizer = FakeAccessAuthorizer()
    bridge = FakeBridge()
    manager = Manager(
        tailscale=FakeTailscale(FakeReport(ready=False, code="tailscale_unavailable")),
        peer_store=store,
        access_authorizer=authorizer,
        localhost_bridge=bridge,
    )
    manager.remove_trusted_peer("device-b")
    assert len(authorizer.revoke_calls) == 1
    assert authorizer.revoke_calls[0].local_tailscale_ip == ""
    assert [p.id for p in store.peers] == ["device-c"]
    local_ip, peers, refresh, _ = bridge.snapshot()
    assert local_ip == ""
    assert peers == ["100.109.251.98"]
    assert refresh > 0


def test_remove_trusted_peer_rejects_invalid_requests():
    with pytest.raises(ManagerError, match="peer id is required"):
        Manager(peer_store=MemoryPeerStore()).remove_trusted_peer(" ")
    with pytest.raises(ManagerError, match="peer store is not configured"):
        Manager().remove_trusted_peer("device-b")

    store = MemoryPeerStore([TrustedPeer(id="device-b")])
    with pytest.raises(ManagerError, match="trusted peer not found"):
        Manager(peer_store=store).remove_trusted_peer("missing")
    assert [p.id for p in store.peers] == ["device-b"]


def test_network_path_delegates_to_diagnostics():
    report = SimpleNamespace(peer_tailscale_ip="100.109.251.97", endpoint_ip="115.233.222.82")
    diagnostics = FakeNetworkDiagnostics(report)
    manager = Manager(network_diagnostics=diagnostics)
    result = manager.network_path("100.109.251.97")
    assert diagnostics.report_peer == "100.109.251.97"
    assert result.endpoint_ip == "115.233.222.82"


def test_network_operations_require_diagnostics():
    manager = Manager()
    with pytest.raises(ManagerError, match="network diagnostics is not configured"):
        manager.network_path("100.109.251.97")
    with pytest.raises(ManagerError, match="network diagnostics is not configured"):
        manager.clear_network_bypass()


def test_apply_and_clear_network_bypass_stores_active_route():
    diagnostics = FakeNetworkDiagnostics()
    manager = Manager(network_diagnostics=diagnostics)
    request = SimpleNamespace(
        peer_tailscale_ip="100.109.251.97",
        endpoint_ip="115.233.222.82",
        candidate=SimpleNamespace(interface_index=15, next_hop="192.168.1.1"),
    )
    active = manager.apply_network_bypass(request)
    assert active.endpoint_ip == "115.233.222.82"
    assert diagnostics.apply_request.endpoint_ip == "115.233.222.82"
    assert manager.active_network_bypass().endpoint_ip == "115.233.222.82"

    manager.clear_network_bypass()
    assert diagnostics.cleared.endpoint_ip == "115.233.222.82"
    assert manager.active_network_bypass() is None


def test_clear_network_bypass_without_active_route_does_nothing():
    diagnostics = FakeNetworkDiagnostics()
    Manager(network_diagnostics=diagnostics).clear_network_bypass()
    assert diagnostics.cleared is None


def test_clash_egress_delegates_discovery_and_node_selection():
    egress = FakeClashEgress(
        DiscoveryReport(
            control=ControlEndpoint(kind=ControlKind.NAMED_PIPE, address=r"\\.\pipe\verge-mihomo"),
            nodes=[ProxyNode(group_name="GLOBAL", name="上海 01", region="上海")],
        )
    )
    manager = Manager(clash_egress=egress)
    assert manager.detect_clash().control.kind == ControlKind.NAMED_PIPE
    nodes = manager.refresh_clash_nodes().nodes
    assert [n.name for n in nodes] == ["上海 01"]

    result = manager.apply_clash_node(
        ApplyRequest(peer_tailscale_ip="100.109.251.97", group_name="GLOBAL", node_name="上海 01")
    )
    assert egress.apply_request.node_name == "上海 01"
    assert result.latency == "25ms"
    manager.restore_clash_node()
    assert egress.restored is True


def test_clash_operations_require_egress():
    with pytest.raises(ManagerError, match="clash egress is not configured"):
        Manager().detect_clash()


def test_probe_tcp_connect_latency_measures_reachable_listener():
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen()

    def accept_once():
        conn, _ = listener.accept()
        conn.close()

    thread = threading.Thread(target=accept_once)
    thread.start()
    try:
        host, port = listener.getsockname()
        latency = probe_tcp_connect_latency(f"{host}:{port}", 1.0)
        assert latency > timedelta(0)
    finally:
        thread.join(2)
        listener.close()


def test_probe_peer_latency_requires_peer_ip():
    with pytest.raises(ManagerError, match="peer tailscale ip is required"):
        Manager().probe_peer_latency("  ")


def test_localhost_bridge_ports_delegate():
    manager = Manager(localhost_bridge=FakeBridge())
    assert manager.localhost_bridge_ports() == [8080]
    assert manager.localhost_bridge_conflict_ports() == [3000]
    assert Manager().localhost_bridge_ports() == []


def test_authenticated_incoming_peer_is_stored_and_authorized(started):
    store = MemoryPeerStore()
    authorizer = FakeAccessAuthorizer()
    manager = Manager(peer_store=store, access_authorizer=authorizer, device_id="device-b", device_name="desktop-b")
    manager.start_control_server("127.0.0.1:0", "secret")
    started(manager)

    client = Client(ClientConfig(device_id="device-a", device_name="desktop-a", secret="secret"))
    client.pair(manager.control_address(), timeout=3)

    deadline = time.monotonic() + 1
    while not (len(store.load_peers()) == 1 and len(authorizer.calls) == 1):
        assert time.monotonic() < deadline, "incoming peer was not stored and authorized"
        time.sleep(0.01)
    peer = store.load_peers()[0]
    assert (peer.id, peer.display_name, peer.tailscale_ip) == ("device-a", "desktop-a", "127.0.0.1")
    assert peer.access_authorized_at is not None


def test_pair_peer_upserts_duplicate_peer():
    store = MemoryPeerStore()
    client = FakePairClient(
        {
            "100.109.251.97:17890": PairedPeer(device_id="device-b", device_name="desktop-b"),
            "100.109.251.98:17890": PairedPeer(device_id="device-b", device_name="desktop-b-renamed"),
        }
    )
    manager = Manager(pair_client=client, peer_store=store)
    manager.pair_peer("100.109.251.97:17890")
    first = store.peers[0].first_paired_at
    time.sleep(0.01)
    manager.pair_peer("100.109.251.98:17890")

    assert len(store.peers) == 1
    assert store.peers[0].display_name == "desktop-b-renamed"
    assert store.peers[0].tailscale_ip == "100.109.251.98"
    assert store.peers[0].first_paired_at == first


def test_pair_peer_serializes_store_updates():
    store = RacingPeerStore()
    client = FakePairClient(
        {
            "100.109.251.97:17890": PairedPeer(device_id="device-a", device_name="desktop-a"),
            "100.109.251.98:17890": PairedPeer(device_id="device-b", device_name="desktop-b"),
        }
    )
    manager = Manager(pair_client=client, peer_store=store)
    errors = []

    def pair(address):
        try:
            manager.pair_peer(address)
        except Exception as exc:
            errors.append(exc)

    threads = [
        threading.Thread(target=pair, args=(address,))
        for address in ("100.109.251.97:17890", "100.109.251.98:17890")
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(2)

    assert errors == []
    assert sorted(p.id for p in store.peers) == ["device-a", "device-b"]


def test_pair_peer_returns_store_errors():
    manager = Manager(pair_client=FakePairClient(), peer_store=FailingPeerStore())
    with pytest.raises(ValueError, match="load failed"):
        manager.pair_peer("100.109.251.97:17890")