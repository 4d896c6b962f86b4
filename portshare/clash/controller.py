"""Clients for the Clash/Mihomo controller API over HTTP or a named pipe."""

from __future__ import annotations

import http.client
import io
import ipaddress
import json
import sys
import urllib.error
import urllib.request
from datetime import timedelta
from typing import Any, Callable, Protocol
from urllib.parse import quote, urlencode, urlsplit

from portshare.clash.types import ProxyGroup, ProxyOption, ProxySnapshot, Version

DEFAULT_DELAY_TEST_URL = "https://www.gstatic.com/generate_204"
DEFAULT_DELAY_TIMEOUT_MS = 5000


class ControllerError(Exception):
    """The controller could not be reached or refused a request."""


class PipeTransport(Protocol):
    """Sends one raw HTTP request and returns the raw response."""

    def round_trip(self, request: bytes) -> bytes: ...


_Requester = Callable[..., Any]


def _escape_segment(value: str) -> str:
    return quote(value, safe="$&+:=@")


def _delay_path(proxy_name: str, test_url: str, timeout_ms: int) -> str:
    if not test_url:
        test_url = DEFAULT_DELAY_TEST_URL
    if timeout_ms <= 0:
        timeout_ms = DEFAULT_DELAY_TIMEOUT_MS
    query = urlencode([("timeout", str(timeout_ms)), ("url", test_url)])
    return f"/proxies/{_escape_segment(proxy_name)}/delay?{query}"


def _decode_first(body: bytes) -> Any:
    """Decode the first JSON value in a body, ignoring anything after it."""
    text = body.decode("utf-8").lstrip()
    value, _ = json.JSONDecoder().raw_decode(text)
    return value


def _object(value: Any, what: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ControllerError(f"unexpected {what} response: {value!r}")
    return value


def _text(data: dict, key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ControllerError(f"invalid {key}: {value!r}")
    return value


def _number(data: dict, key: str) -> int:
    value = data.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ControllerError(f"invalid {key}: {value!r}")
    return value


def _latest_delay(history: Any) -> timedelta:
    if not history:
        return timedelta(0)
    if not isinstance(history, list):
        raise ControllerError(f"invalid history: {history!r}")
    delay = _number(_object(history[-1], "history"), "delay")
    if delay <= 0:
        return timedelta(0)
    return timedelta(milliseconds=delay)


def snapshot_from_proxies(payload: Any) -> ProxySnapshot:
    """Build proxy groups from a decoded ``/proxies`` response."""
    proxies = _object(_object(payload, "proxies").get("proxies"), "proxies")
    groups = []
    for name, raw in proxies.items():
        entry = _object(raw, "proxy")
        members = entry.get("all") or []
        if not members:
            continue
        options = []
        for option_name in members:
            option = _object(proxies.get(option_name), "proxy")
            options.append(
                ProxyOption(
                    name=option_name,
                    type=_text(option, "type"),
                    delay=_latest_delay(option.get("history")),
                )
            )
        groups.append(
            ProxyGroup(name=name, type=_text(entry, "type"), now=_text(entry, "now"), options=options)
        )
    return ProxySnapshot(groups=groups)


def _version(request: _Requester) -> Version:
    response = _object(request("GET", "/version"), "version")
    return Version(version=_text(response, "version"))


def _proxies(request: _Requester) -> ProxySnapshot:
    return snapshot_from_proxies(request("GET", "/proxies"))


def _delay(request: _Requester, proxy_name: str, test_url: str, timeout_ms: int) -> timedelta:
    response = _object(request("GET", _delay_path(proxy_name, test_url, timeout_ms)), "delay")
    return timedelta(milliseconds=_number(response, "delay"))


def _select(request: _Requester, group_name: str, proxy_name: str) -> None:
    request("PUT", f"/proxies/{_escape_segment(group_name)}", {"name": proxy_name}, decode=False)


def _is_loopback(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


class HTTPController:
    """Controller API reached over HTTP."""

    def __init__(self, base_url: str, secret: str, timeout: float | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.secret = secret
        self.timeout = timeout
        host = urlsplit(self.base_url).hostname or ""
        if _is_loopback(host):
            self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))
        else:
            self._opener = urllib.request.build_opener()

    def version(self) -> Version:
        """Controller version."""
        return _version(self._request)

    def proxies(self) -> ProxySnapshot:
        """All proxy groups with their members and last known delays."""
        return _proxies(self._request)

    def delay(self, proxy_name: str, test_url: str = "", timeout_ms: int = 0) -> timedelta:
        """Ask the controller to measure a proxy's delay."""
        return _delay(self._request, proxy_name, test_url, timeout_ms)

    def select(self, group_name: str, proxy_name: str) -> None:
        """Switch a selector group to the named proxy."""
        _select(self._request, group_name, proxy_name)

    def _request(self, method: str, path: str, payload: Any = None, decode: bool = True) -> Any:
        data = None
        headers = {}
        if payload is not None:
            data = json.dumps(payload, separators=(",", ":")).encode("utf-8")
            headers["Content-Type"] = "application/json"
        if self.secret:
            headers["Authorization"] = f"Bearer {self.secret}"
        request = urllib.request.Request(self.base_url + path, data=data, headers=headers, method=method)
        try:
            with self._opener.open(request, timeout=self.timeout) as response:
                status, reason = response.status, response.reason
                body = response.read()
        except urllib.error.HTTPError as exc:
            with exc:
                raise ControllerError(f"Clash API 返回 {exc.code} {exc.reason}") from None
        if not 200 <= status < 300:
            raise ControllerError(f"Clash API 返回 {status} {reason}")
        if not decode:
            return None
        return _decode_first(body)


class _BufferSocket:
    def __init__(self, raw: bytes) -> None:
        self._raw = raw

    def makefile(self, *args: Any, **kwargs: Any) -> io.BytesIO:
        return io.BytesIO(self._raw)


def _parse_response(raw: bytes) -> tuple[int, str, bytes]:
    response = http.client.HTTPResponse(_BufferSocket(raw))  # type: ignore[arg-type]
    try:
        response.begin()
        try:
            body = response.read()
        except http.client.IncompleteRead as exc:
            body = exc.partial
    except http.client.HTTPException as exc:
        raise ControllerError(f"invalid pipe response: {exc!r}") from exc
    finally:
        response.close()
    return response.status, response.reason, body


class SystemPipeTransport:
    """Talks to a Windows named pipe; unavailable elsewhere."""

    def __init__(self, pipe_path: str) -> None:
        self.pipe_path = pipe_path

    def round_trip(self, request: bytes) -> bytes:
        """Write the request and read until the pipe closes."""
        if sys.platform != "win32":
            raise ControllerError(
                f"named pipe controller is only supported on Windows: {self.pipe_path}"
            )
        with open(self.pipe_path, "r+b", buffering=0) as pipe:
            view = memoryview(request)
            while view:
                written = pipe.write(view)
                if not written:
                    raise ControllerError("short write to named pipe")
                view = view[written:]
            return pipe.read() or b""


class PipeController:
    """Controller API reached through a named pipe."""

    def __init__(self, pipe_path: str, secret: str, transport: PipeTransport | None = None) -> None:
        self.pipe_path = pipe_path
        self.secret = secret
        self.transport: PipeTransport = transport or SystemPipeTransport(pipe_path)

    def version(self) -> Version:
        """Controller version."""
        return _version(self._request)

    def proxies(self) -> ProxySnapshot:
        """All proxy groups with their members and last known delays."""
        return _proxies(self._request)

    def delay(self, proxy_name: str, test_url: str = "", timeout_ms: int = 0) -> timedelta:
        """Ask the controller to measure a proxy's delay."""
        return _delay(self._request, proxy_name, test_url, timeout_ms)

    def select(self, group_name: str, proxy_name: str) -> None:
        """Switch a selector group to the named proxy."""
        _select(self._request, group_name, proxy_name)

    def _raw_request(self, method: str, path: str, payload: Any) -> bytes:
        body = b""
        if payload is not None:
            body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        lines = [f"{method} {path} HTTP/1.1", "Host: mihomo", "Connection: close"]
        if self.secret:
            lines.append(f"Authorization: Bearer {self.secret}")
        if payload is not None:
            lines.append("Content-Type: application/json")
            lines.append(f"Content-Length: {len(body)}")
        head = "".join(line + "\r\n" for line in lines) + "\r\n"
        return head.encode("utf-8") + body

    def _request(self, method: str, path: str, payload: Any = None, decode: bool = True) -> Any:
        raw = self.transport.round_trip(self._raw_request(method, path, payload))
        status, reason, body = _parse_response(raw)
        if not 200 <= status < 300:
            raise ControllerError(f"Clash pipe API 返回 {status} {reason}")
        if not decode:
            return None
        return _decode_first(body)