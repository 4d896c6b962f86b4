from datetime import datetime, timedelta, timezone

import pytest

from portshare.direct import PairedPeer
from portshare.peer_store import TrustedPeer, derive_secret_label
from portshare.trust import host_from_address, trusted_peer_from_pair, upsert_trusted_peer


@pytest.mark.parametrize(
    ("address", "expected"),
    [
        ("100.109.251.97:17890", "100.109.251.97"),
        ("  100.109.251.97:17890  ", "100.109.251.97"),
        ("100.109.251.97", "100.109.251.97"),
        ("[::1]:17890", "::1"),
        ("", ""),
        ("   ", ""),
    ],
)
def test_host_from_address(address, expected):
    assert host_from_address(address) == expected


def test_host_from_address_keeps_unparseable_address():
    assert host_from_address("fe80::1") == "fe80::1"


def test_trusted_peer_from_pair_uses_fallback_address():
    label = derive_secret_label("secret")
    peer = PairedPeer(device_id="device-b", device_name="desktop-b")
    trusted = trusted_peer_from_pair(peer, "100.109.251.97:17890", label)
    assert trusted.id == "device-b"
    assert trusted.display_name == "desktop-b"
    assert trusted.tailscale_ip == "100.109.251.97"
    assert trusted.secret_label == label
    assert trusted.first_paired_at == trusted.last_seen_at
    assert trusted.first_paired_at.utcoffset() == timedelta(0)
    assert trusted.access_authorized_at is None


def test_trusted_peer_from_pair_prefers_peer_address():
    peer = PairedPeer(device_id="device-b", address="127.0.0.1:5000")
    trusted = trusted_peer_from_pair(peer, "100.109.251.97:17890", "")
    assert trusted.tailscale_ip == "127.0.0.1"


def test_upsert_appends_new_peer():
    existing = TrustedPeer(id="device-a")
    new = TrustedPeer(id="device-b")
    assert [p.id for p in upsert_trusted_peer([existing], new)] == ["device-a", "device-b"]


def test_upsert_replaces_and_preserves_history():
    first = datetime(2024, 1, 1, tzinfo=timezone.utc)
    authorized = first + timedelta(hours=1)
    existing = TrustedPeer(
        id="device-b",
        display_name="desktop-b",
        tailscale_ip="100.109.251.97",
        first_paired_at=first,
        access_authorized_at=authorized,
        last_route="direct",
        secret_label="sha256:old",
    )
    other = TrustedPeer(id="device-c")
    renamed = trusted_peer_from_pair(
        PairedPeer(device_id="device-b", device_name="desktop-b-renamed"), "100.109.251.98:17890", ""
    )

    peers = upsert_trusted_peer([existing, other], renamed)

    assert [p.id for p in peers] == ["device-b", "device-c"]
    merged = peers[0]
    assert merged.display_name == "desktop-b-renamed"
    assert merged.tailscale_ip == "100.109.251.98"
    assert merged.first_paired_at == first
    assert merged.access_authorized_at == authorized
    assert merged.last_route == "direct"
    assert merged.secret_label == "sha256:old"
    assert merged.last_seen_at == renamed.last_seen_at


def test_upsert_new_label_wins_and_input_untouched():
    existing = TrustedPeer(id="device-b", secret_label="sha256:old")
    label = derive_secret_label("secret")
    peers_before = [existing]
    peers = upsert_trusted_peer(peers_before, TrustedPeer(id="device-b", secret_label=label))
    assert peers[0].secret_label == label
    assert peers_before[0].secret_label == "sha256:old"