# portshare

This package gives you the parts needed to share local services between trusted devices on a tailnet.

- **Direct pairing** (`portshare.protocol`, `portshare.direct`). Two devices that know the same shared secret prove this to each other. Each side sends an HMAC-SHA256 proof computed over both device ids and a pair of random 32-byte nonces. Messages travel as JSON frames, each preceded by a 4-byte big-endian length.
- **Trusted peer store** (`portshare.peer_store`). `PeerStore` keeps the paired devices in a JSON file and replaces the file atomically on each save. `derive_secret_label` produces a short, non-secret label that identifies the shared secret in use.
- **Direct-mode manager** (`portshare.manager`, `portshare.trust`).
  - `Manager` runs the control server and pairs with peers.
  - It stores and merges trusted peers, and asks an access authorizer to allow or revoke each peer.
  - It keeps a localhost bridge informed of the trusted peer addresses, refreshing it every five seconds while the server runs.
  - It forwards network-path and Clash requests to services you plug in.
- **Clash/Mihomo egress** (`portshare.clash`).
  - `ClashService` reads the proxy's YAML configuration, the proxy ports and the controller endpoint. The endpoint is either HTTP or a Windows named pipe; the named pipe is preferred when both are configured.
  - It lists TUN-like network adapters through PowerShell.
  - It lists proxy nodes with their guessed region and a freshly measured delay.
  - It can switch a group to a given node.
- **Utilities**:
  - `portshare.audit.AuditLog` is an append-only JSON Lines audit log with retention cleanup.
  - `portshare.config.ConfigStore` reads and writes the application settings file; `default_path()` gives its usual location.
  - `portshare.discovery.probe` and `scan_common` check common local development ports and read the page title.

## Pairing two devices

```python
from portshare.direct import Client, ClientConfig

client = Client(ClientConfig(device_id="device-a", device_name="desktop-a", secret="secret"))
peer = client.pair("100.64.0.2:17890", timeout=5.0)
print(peer.device_id, peer.device_name)
```

`Client.pair` raises `AuthFailedError` when the other side does not prove it holds the same secret. If you pass a `threading.Event` as `cancel` and set it, the pairing stops and raises `PairingCancelledError`.

The other side answers with a `Server`:

```python
import socket
from portshare.direct import Server, ServerConfig

listener = socket.create_server(("0.0.0.0", 17890))
server = Server(ServerConfig(device_id="device-b", device_name="desktop-b", secret="secret",
                             on_authenticated=print))
server.serve(listener)   # blocks until server.close() is called from another thread
```

## Running direct mode

```python
from portshare.manager import Manager
from portshare.peer_store import PeerStore

manager = Manager(peer_store=PeerStore("direct-peers.json"), device_id="device-b", device_name="desktop-b")
manager.start_control_server("0.0.0.0:17890", "secret")
print(manager.control_address())

for trusted in manager.trusted_peers():
    print(trusted.id, trusted.tailscale_ip)

manager.stop_control_server()
```

Starting the control server also has these effects:

- Peers that authenticate against the server are stored and authorised automatically.
- `manager.pair_peer(address)` pairs with another device and stores it.
- `manager.remove_trusted_peer(peer_id)` revokes a peer's access and forgets it.

Every `Manager` method that depends on a missing service raises `ManagerError`.

## Steering Clash/Mihomo egress

```python
from portshare.clash.service import ClashError, ClashService
from portshare.clash.types import ApplyRequest

service = ClashService()
report = service.refresh_nodes()
for node in report.nodes:
    print(node.group_name, node.name, node.region, node.delay)

try:
    result = service.apply_node(ApplyRequest(
        peer_tailscale_ip="100.64.0.2",
        group_name="GLOBAL",
        node_name="上海 01",
        previous_node="杭州 01",
    ))
    print(result.route_type, result.latency)
except ClashError as exc:
    print(exc, exc.result)
```

After switching, `apply_node` runs `tailscale debug restun`, then `tailscale debug rebind`, then `tailscale ping --c 10 <peer>`. If the link does not come up direct, it selects the previous node again and raises `ClashError`. The error's `result` describes the route that was seen. `restore_node()` selects the previous node explicitly.

If no search roots are given, configuration files are looked for under `%APPDATA%` and `%LOCALAPPDATA%`. The named-pipe controller works only on Windows.

## What this package does not do

- It has no command-line program and no window. It is a library only.
- It does not include a firewall authorizer, a Tailscale status client, a localhost bridge or network-path diagnostics. `Manager` accepts objects that provide these:
  - `access_authorizer`: `allow_trusted_peer` and `revoke_trusted_peer`, each taking a `TrustedPeerAccess`.
  - `tailscale`: `check_ready()`.
  - `localhost_bridge`: `set_local_tailscale_ip`, `set_allowed_peers`, `refresh`, `active_ports`, `conflict_ports` and `close`.
  - `network_diagnostics`: `diagnose_peer`, `apply_bypass`, `clear_bypass` and `reprobe`.

  When one of these objects is not supplied, the operations that need it either do nothing or raise `ManagerError`.
- It does not start shares or manage them. `portshare.domain` only defines the share and service data types.

## Tests

The test suite uses pytest, which comes with the `test` extra:

```
pip install -e .[test]
pytest
```