"""Wire protocol for the direct-mode control channel: messages, frames and proofs."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Any

VERSION = 1
MAX_FRAME_SIZE = 1 << 20

_PROOF_CONTEXT = b"portshare-direct-v1"
_HEADER = struct.Struct(">I")


class FrameError(ValueError):
    """A control frame could not be encoded or decoded."""


class MessageType(str, Enum):
    """Kinds of control messages exchanged during pairing."""

    HELLO = "hello"
    HELLO_RESPONSE = "hello_response"
    AUTH_PROOF = "auth_proof"
    AUTH_OK = "auth_ok"
    AUTH_ERROR = "auth_error"

    def __str__(self) -> str:
        return self.value


def _message_type(value: Any) -> MessageType | str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise FrameError(f"invalid message type: {value!r}")
    try:
        return MessageType(value)
    except ValueError:
        return value


def _text_field(payload: dict, key: str) -> str:
    value = payload.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise FrameError(f"invalid {key}: {value!r}")
    return value


def _bytes_field(payload: dict, key: str) -> bytes:
    value = payload.get(key)
    if value is None:
        return b""
    if not isinstance(value, str):
        raise FrameError(f"invalid {key}: {value!r}")
    try:
        return base64.b64decode(value, validate=True)
    except binascii.Error as exc:
        raise FrameError(f"invalid {key}: {exc}") from exc


@dataclass
class ControlMessage:
    """One message of the pairing handshake."""

    type: MessageType | str
    version: int = VERSION
    device_id: str = ""
    device_name: str = ""
    nonce: bytes = b""
    proof: bytes = b""
    error: str = ""

    def to_json(self) -> bytes:
        """Encode as compact JSON, leaving out empty optional fields."""
        payload: dict[str, Any] = {"type": str(self.type), "version": self.version}
        if self.device_id:
            payload["device_id"] = self.device_id
        if self.device_name:
            payload["device_name"] = self.device_name
        if self.nonce:
            payload["nonce"] = base64.b64encode(self.nonce).decode("ascii")
        if self.proof:
            payload["proof"] = base64.b64encode(self.proof).decode("ascii")
        if self.error:
            payload["error"] = self.error
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes | str) -> ControlMessage:
        """Decode a message from its JSON form."""
        try:
            payload = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise FrameError(f"invalid frame payload: {exc}") from exc
        if not isinstance(payload, dict):
            raise FrameError("frame payload must be a JSON object")
        version = payload.get("version")
        if version is None:
            version = 0
        if isinstance(version, bool) or not isinstance(version, int):
            raise FrameError(f"invalid version: {version!r}")
        return cls(
            type=_message_type(payload.get("type")),
            version=version,
            device_id=_text_field(payload, "device_id"),
            device_name=_text_field(payload, "device_name"),
            nonce=_bytes_field(payload, "nonce"),
            proof=_bytes_field(payload, "proof"),
            error=_text_field(payload, "error"),
        )


def new_nonce() -> bytes:
    """Return 32 random bytes."""
    return secrets.token_bytes(32)


def compute_proof(secret: str, from_device: str, to_device: str, nonce_a: bytes, nonce_b: bytes) -> bytes:
    """HMAC-SHA256 proof binding both devices and both nonces to the shared secret."""
    mac = hmac.new(secret.encode("utf-8"), digestmod=hashlib.sha256)
    mac.update(_PROOF_CONTEXT)
    mac.update(from_device.encode("utf-8"))
    mac.update(b"\x00")
    mac.update(to_device.encode("utf-8"))
    mac.update(b"\x00")
    mac.update(bytes(nonce_a))
    mac.update(bytes(nonce_b))
    return mac.digest()


def verify_proof(
    secret: str, from_device: str, to_device: str, nonce_a: bytes, nonce_b: bytes, proof: bytes
) -> bool:
    """Check a proof in constant time."""
    expected = compute_proof(secret, from_device, to_device, nonce_a, nonce_b)
    return hmac.compare_digest(expected, bytes(proof))


def _write_full(writer: Any, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = writer.write(view)
        if written is None:
            # Buffered and text-like writers accept everything they are given.
            return
        if written == 0:
            raise FrameError("short write")
        if written > len(view):
            raise FrameError(f"invalid write count: {written} > {len(view)}")
        view = view[written:]


def write_frame(writer: Any, message: ControlMessage) -> None:
    """Write a message as a 4-byte big-endian length followed by its JSON."""
    data = message.to_json()
    if len(data) > MAX_FRAME_SIZE:
        raise FrameError(f"frame too large: {len(data)}")
    _write_full(writer, _HEADER.pack(len(data)))
    _write_full(writer, data)
    flush = getattr(writer, "flush", None)
    if flush is not None:
        flush()


def _read_exact(reader: Any, size: int) -> bytes:
    chunks = bytearray()
    while len(chunks) < size:
        chunk = reader.read(size - len(chunks))
        if not chunk:
            raise EOFError(f"expected {size} bytes, got {len(chunks)}")
        chunks.extend(chunk)
    return bytes(chunks)


def read_frame(reader: Any) -> ControlMessage:
    """Read one length-prefixed message."""
    (size,) = _HEADER.unpack(_read_exact(reader, _HEADER.size))
    if size == 0 or size > MAX_FRAME_SIZE:
        raise FrameError(f"invalid frame size: {size}")
    return ControlMessage.from_json(_read_exact(reader, size))