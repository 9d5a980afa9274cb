"""
Optional `http` helper: get, post, put, patch, delete.

Never bound by default; a caller injects it explicitly with
``helpers={"http": make_http_module(...)}``. Uses httpx; requests may only
target public addresses of hosts in the allow-list (CODE_HTTP_ALLOWED_HOSTS).
"""

import ipaddress
import socket
from typing import Any
from urllib.parse import urlparse

import httpx

from codenode.core.config import parse_csv, settings


def allowed_hosts_from_settings() -> frozenset[str]:
    return frozenset(h.lower() for h in parse_csv(settings.CODE_HTTP_ALLOWED_HOSTS))


def _resolve(host: str) -> list[ipaddress.IPv4Address | ipaddress.IPv6Address]:
    try:
        return [ipaddress.ip_address(host)]
    except ValueError:
        pass
    try:
        infos = socket.getaddrinfo(host, None, socket.AF_UNSPEC, socket.SOCK_STREAM)
    except (socket.gaierror, OSError):
        return []
    return [ipaddress.ip_address(info[4][0]) for info in infos]


def _is_public(host: str) -> bool:
    """False when *host* cannot be resolved or any address is non-global."""
    addrs = _resolve(host)
    return bool(addrs) and all(a.is_global for a in addrs)


def host_allowed(hostname: str, allowed_hosts: frozenset[str]) -> bool:
    """``*`` allows any public host; ``*.x.com`` matches subdomains only."""
    if "*" in allowed_hosts or hostname in allowed_hosts:
        return True
    return any(
        p.startswith("*.") and hostname.endswith(p[1:]) for p in allowed_hosts
    )


def check_url(url: str, allowed_hosts: frozenset[str]) -> None:
    """Raise ``PermissionError`` when the URL target is not allowed."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise PermissionError(f"URL scheme '{parsed.scheme}' is not allowed; only http/https.")
    hostname = (parsed.hostname or "").lower()
    if not hostname:
        raise PermissionError("URL has no hostname.")
    if not host_allowed(hostname, allowed_hosts):
        raise PermissionError(
            f"Host '{hostname}' is not in CODE_HTTP_ALLOWED_HOSTS. "
            f"Allowed: {', '.join(sorted(allowed_hosts)) or '(none)'}."
        )
    if not _is_public(hostname):
        raise PermissionError(f"Requests to private/internal addresses are blocked: {hostname}")


class HttpHelper:
    """One lazily created httpx.Client per injected helper."""

    __slots__ = ("_client", "_hosts", "_timeout")

    def __init__(self, *, allowed_hosts: frozenset[str], timeout: float) -> None:
        self._hosts = allowed_hosts
        self._timeout = timeout
        self._client: httpx.Client | None = None

    def request(self, method: str, url: str, **kwargs: Any) -> Any:
        check_url(url, self._hosts)
        if self._client is None:
            self._client = httpx.Client(timeout=self._timeout, follow_redirects=False)
        resp = self._client.request(method.upper(), url, **kwargs)
        resp.raise_for_status()
        if "application/json" in resp.headers.get("content-type", ""):
            return resp.json()
        return resp.text

    def get(self, url: str, **kwargs: Any) -> Any:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> Any:
        return self.request("POST", url, **kwargs)

    def put(self, url: str, **kwargs: Any) -> Any:
        return self.request("PUT", url, **kwargs)

    def patch(self, url: str, **kwargs: Any) -> Any:
        return self.request("PATCH", url, **kwargs)

    def delete(self, url: str, **kwargs: Any) -> Any:
        return self.request("DELETE", url, **kwargs)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


def make_http_module(
    *,
    allowed_hosts: frozenset[str] | None = None,
    timeout: float | None = None,
) -> HttpHelper:
    """Empty *allowed_hosts* means every request is refused."""
    return HttpHelper(
        allowed_hosts=allowed_hosts if allowed_hosts is not None else allowed_hosts_from_settings(),
        timeout=timeout if timeout is not None else settings.CODE_HTTP_TIMEOUT,
    )
