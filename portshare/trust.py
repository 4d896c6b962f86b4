"""Building and merging trusted-peer records from completed pairings."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone

from portshare.direct import PairedPeer
from portshare.peer_store import TrustedPeer


@dataclass(frozen=True)
class TrustedPeerAccess:
    """What a firewall needs to allow or revoke a trusted peer."""

    rule_prefix: str = ""
    local_tailscale_ip: str = ""
    peer_tailscale_ip: str = ""
    peer_id: str = ""
    peer_name: str = ""


def _split_host(address: str) -> str | None:
    colon = address.rfind(":")
    if colon < 0:
        return None
    if address.startswith("["):
        end = address.find("]")
        if end < 0 or end + 1 != colon:
            return None
        if "[" in address[1:] or "]" in address[end + 1 :]:
            return None
        return address[1:end]
    host = address[:colon]
    if ":" in host or "[" in address or "]" in address:
        return None
    return host


def host_from_address(address: str) -> str:
    """Host part of ``host:port``; the address itself if it has no port."""
    address = address.strip()
    if not address:
        return ""
    host = _split_host(address)
    return address if host is None else host


def trusted_peer_from_pair(peer: PairedPeer, address: str, secret_label: str) -> TrustedPeer:
    """Record for a freshly paired peer, stamped with the current UTC time."""
    now = datetime.now(timezone.utc)
    peer_address = peer.address or address
    return TrustedPeer(
        id=peer.device_id,
        display_name=peer.device_name,
        tailscale_ip=host_from_address(peer_address),
        first_paired_at=now,
        last_seen_at=now,
        secret_label=secret_label,
    )


def upsert_trusted_peer(peers: list[TrustedPeer], trusted: TrustedPeer) -> list[TrustedPeer]:
    """Replace the peer with the same id, keeping history it already had, or append it."""
    for position, existing in enumerate(peers):
        if existing.id != trusted.id:
            continue
        merged = replace(
            trusted,
            first_paired_at=existing.first_paired_at or trusted.first_paired_at,
            secret_label=trusted.secret_label or existing.secret_label,
            last_route=trusted.last_route or existing.last_route,
            access_authorized_at=trusted.access_authorized_at or existing.access_authorized_at,
        )
        return [*peers[:position], merged, *peers[position + 1 :]]
    return [*peers, trusted]