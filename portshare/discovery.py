"""Probing of local web services and extraction of their page titles."""

from __future__ import annotations

import http.client
import ipaddress
import re
import urllib.error
import urllib.request
from datetime import datetime
from urllib.parse import urlsplit

from portshare.domain import LocalService

_TITLE_PATTERN = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)
_BODY_LIMIT = 256 * 1024
_COMMON_PORTS = (3000, 5173, 8080, 8000, 5000, 4200, 8443)


def _is_loopback(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def _opener_for(host: str) -> urllib.request.OpenerDirector:
    if _is_loopback(host):
        return urllib.request.build_opener(urllib.request.ProxyHandler({}))
    return urllib.request.build_opener()


def extract_title(html: str) -> str:
    """Contents of the first <title> element, on one line; empty if none."""
    match = _TITLE_PATTERN.search(html)
    if match is None:
        return ""
    return match.group(1).strip().replace("\n", " ").replace("\t", " ")


def probe(raw_url: str, timeout: float) -> LocalService:
    """Fetch a URL and describe the service answering there, whatever its status."""
    parsed = urlsplit(raw_url)
    host = parsed.hostname or ""
    port = parsed.port or 0
    request = urllib.request.Request(raw_url, method="GET")
    try:
        response = _opener_for(host).open(request, timeout=timeout)
    except urllib.error.HTTPError as exc:
        response = exc
    with response:
        body = response.read(_BODY_LIMIT)
    title = extract_title(body.decode("utf-8", errors="replace")) or f"本地服务 {port}"
    return LocalService(
        id=f"{parsed.scheme}-{host}-{port}",
        name=title,
        scheme=parsed.scheme,
        host=host,
        port=port,
        title=title,
        discovered=True,
        last_checked=datetime.now().astimezone(),
    )


def scan_common(timeout: float) -> list[LocalService]:
    """Probe the usual development ports on loopback, trying http before https."""
    services = []
    for port in _COMMON_PORTS:
        for scheme in ("http", "https"):
            try:
                service = probe(f"{scheme}://127.0.0.1:{port}", timeout)
            except (OSError, ValueError, http.client.HTTPException):
                continue
            services.append(service)
            break
    return services