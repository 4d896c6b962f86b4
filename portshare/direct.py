"""Authenticated pairing over the direct-mode control channel."""

from __future__ import annotations

import contextlib
import select
import socket
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from portshare.protocol import (
    VERSION,
    ControlMessage,
    FrameError,
    MessageType,
    compute_proof,
    new_nonce,
    read_frame,
    verify_proof,
    write_frame,
)

HANDSHAKE_TIMEOUT = 10.0
_AUTH_FAILED = "authentication failed"
_CANCEL_POLL = 0.02
_ACCEPT_POLL = 0.05
_TRANSPORT_ERRORS = (OSError, EOFError, FrameError)


class AuthFailedError(Exception):
    """The peer did not prove knowledge of the shared secret."""

    def __init__(self, message: str = _AUTH_FAILED) -> None:
        super().__init__(message)


class PairingCancelledError(Exception):
    """Pairing stopped because the caller cancelled it."""


@dataclass(frozen=True)
class PairedPeer:
    """A device that completed the pairing handshake."""

    device_id: str = ""
    device_name: str = ""
    address: str = ""


@dataclass
class ClientConfig:
    """Identity and shared secret used when initiating a pairing."""

    device_id: str = ""
    device_name: str = ""
    secret: str = ""


@dataclass
class ServerConfig:
    """Identity, shared secret and callback used when answering pairings."""

    device_id: str = ""
    device_name: str = ""
    secret: str = ""
    on_authenticated: Callable[[PairedPeer], Any] | None = None


def _split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.strip().rpartition(":")
    if not sep or not port:
        raise ValueError(f"missing port in address {address!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise ValueError(f"too many colons in address {address!r}")
    return host, int(port)


def _join_host_port(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def _shutdown(sock: socket.socket) -> None:
    with contextlib.suppress(OSError):
        sock.shutdown(socket.SHUT_RDWR)


def _set_deadline(sock: socket.socket, deadline: float) -> None:
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise TimeoutError("pairing deadline exceeded")
    sock.settimeout(remaining)


class _CancelWatcher:
    """Shuts a socket down as soon as the cancel event is set."""

    def __init__(self, sock: socket.socket, cancel: threading.Event | None) -> None:
        self._sock = sock
        self._cancel = cancel
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def __enter__(self) -> _CancelWatcher:
        if self._cancel is not None:
            self._thread = threading.Thread(target=self._watch, daemon=True)
            self._thread.start()
        return self

    def _watch(self) -> None:
        assert self._cancel is not None
        while not self._stop.is_set():
            if self._cancel.wait(_CANCEL_POLL):
                _shutdown(self._sock)
                return

    def __exit__(self, *exc_info: Any) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()


class Client:
    """Initiates pairing with a peer's control server."""

    def __init__(self, config: ClientConfig) -> None:
        self.config = config

    def pair(
        self,
        address: str,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> PairedPeer:
        """Run the handshake against ``host:port`` and return the peer's identity."""
        if cancel is not None and cancel.is_set():
            raise PairingCancelledError("pairing cancelled")
        host, port = _split_address(address)
        deadline = time.monotonic() + (HANDSHAKE_TIMEOUT if timeout is None else timeout)
        try:
            return self._pair(host, port, address, deadline, cancel)
        except _TRANSPORT_ERRORS as exc:
            if cancel is not None and cancel.is_set():
                raise PairingCancelledError("pairing cancelled") from exc
            raise

    def _pair(
        self,
        host: str,
        port: int,
        address: str,
        deadline: float,
        cancel: threading.Event | None,
    ) -> PairedPeer:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError("pairing deadline exceeded")
        sock = socket.create_connection((host, port), timeout=remaining)
        with sock, sock.makefile("rwb", buffering=0) as stream, _CancelWatcher(sock, cancel):
            return self._handshake(sock, stream, address, deadline)

    def _handshake(self, sock: socket.socket, stream: Any, address: str, deadline: float) -> PairedPeer:
        config = self.config
        initiator_nonce = new_nonce()
        _set_deadline(sock, deadline)
        write_frame(
            stream,
            ControlMessage(
                type=MessageType.HELLO,
                device_id=config.device_id,
                device_name=config.device_name,
                nonce=initiator_nonce,
            ),
        )
        _set_deadline(sock, deadline)
        response = read_frame(stream)
        if (
            response.type != MessageType.HELLO_RESPONSE
            or response.version != VERSION
            or not verify_proof(
                config.secret,
                response.device_id,
                config.device_id,
                initiator_nonce,
                response.nonce,
                response.proof,
            )
        ):
            raise AuthFailedError()

        client_proof = compute_proof(
            config.secret, config.device_id, response.device_id, initiator_nonce, response.nonce
        )
        _set_deadline(sock, deadline)
        write_frame(stream, ControlMessage(type=MessageType.AUTH_PROOF, proof=client_proof))
        _set_deadline(sock, deadline)
        auth_ok = read_frame(stream)
        if auth_ok.type != MessageType.AUTH_OK or auth_ok.version != VERSION:
            raise AuthFailedError()
        return PairedPeer(
            device_id=response.device_id,
            device_name=response.device_name,
            address=address,
        )


class Server:
    """Answers pairing handshakes on a listening socket."""

    def __init__(self, config: ServerConfig) -> None:
        self.config = config
        self._lock = threading.Lock()
        self._closed = False
        self._listener: socket.socket | None = None
        self._active: set[socket.socket] = set()

    def __enter__(self) -> Server:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def serve(self, listener: socket.socket) -> None:
        """Accept connections until closed; returns quietly after close()."""
        with self._lock:
            if self._closed:
                listener.close()
                return
            self._listener = listener
        try:
            while True:
                conn = self._accept(listener)
                if conn is None:
                    return
                if not self._add_active(conn):
                    conn.close()
                    continue
                threading.Thread(target=self._handle, args=(conn,), daemon=True).start()
        finally:
            with self._lock:
                if self._listener is listener:
                    self._listener = None

    def close(self) -> None:
        """Stop serving and drop every connection still in its handshake."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            listener = self._listener
            active = list(self._active)
        if listener is not None:
            with contextlib.suppress(OSError):
                listener.close()
        for conn in active:
            _shutdown(conn)
            with contextlib.suppress(OSError):
                conn.close()

    def _is_closed(self) -> bool:
        with self._lock:
            return self._closed

    def _accept(self, listener: socket.socket) -> socket.socket | None:
        while True:
            if self._is_closed():
                return None
            try:
                ready, _, _ = select.select([listener], [], [], _ACCEPT_POLL)
                if not ready:
                    continue
                conn, _ = listener.accept()
            except BlockingIOError:
                continue
            except (OSError, ValueError):
                if self._is_closed():
                    return None
                raise
            if self._is_closed():
                conn.close()
                return None
            return conn

    def _add_active(self, *conns: socket.socket) -> bool:
        with self._lock:
            if self._closed:
                return False
            self._active.update(conns)
            return True

    def _remove_active(self, *conns: socket.socket) -> None:
        with self._lock:
            self._active.difference_update(conns)

    def _handle(self, conn: socket.socket) -> None:
        try:
            with conn, conn.makefile("rwb", buffering=0) as stream:
                conn.settimeout(HANDSHAKE_TIMEOUT)
                host, port = conn.getpeername()[:2]
                peer = self._authenticate(stream, _join_host_port(host, port))
                if peer is not None and self.config.on_authenticated is not None:
                    self.config.on_authenticated(peer)
        except _TRANSPORT_ERRORS:
            pass
        finally:
            self._remove_active(conn)

    def _authenticate(self, stream: Any, remote: str) -> PairedPeer | None:
        config = self.config
        hello = read_frame(stream)
        if hello.type != MessageType.HELLO or hello.version != VERSION:
            _write_auth_failure(stream)
            return None

        responder_nonce = new_nonce()
        server_proof = compute_proof(
            config.secret, config.device_id, hello.device_id, hello.nonce, responder_nonce
        )
        write_frame(
            stream,
            ControlMessage(
                type=MessageType.HELLO_RESPONSE,
                device_id=config.device_id,
                device_name=config.device_name,
                nonce=responder_nonce,
                proof=server_proof,
            ),
        )

        auth_proof = read_frame(stream)
        if (
            auth_proof.type != MessageType.AUTH_PROOF
            or auth_proof.version != VERSION
            or not verify_proof(
                config.secret,
                hello.device_id,
                config.device_id,
                hello.nonce,
                responder_nonce,
                auth_proof.proof,
            )
        ):
            _write_auth_failure(stream)
            return None

        write_frame(
            stream,
            ControlMessage(
                type=MessageType.AUTH_OK,
                device_id=config.device_id,
                device_name=config.device_name,
            ),
        )
        return PairedPeer(device_id=hello.device_id, device_name=hello.device_name, address=remote)


def _write_auth_failure(stream: Any) -> None:
    write_frame(stream, ControlMessage(type=MessageType.AUTH_ERROR, error=_AUTH_FAILED))