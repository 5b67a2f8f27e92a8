"""
Shared web security helpers for the admin routes.

Contains the CSRF same-origin check applied to every state-changing admin
request. Browser clients send Origin/Referer; server-to-server clients send
neither and are authenticated by their bearer token alone.
"""
from __future__ import annotations

import os
from typing import Optional, Tuple
from urllib.parse import urlparse

from fastapi import Request


Origin = Tuple[str, str, int]


def _default_port(scheme: str) -> int:
    return 443 if scheme == "https" else 80


def _parse_origin(url: str) -> Origin:
    p = urlparse(url)
    if not p.scheme or not p.hostname:
        raise ValueError("invalid_origin")
    scheme = p.scheme.lower()
    return scheme, p.hostname.lower(), int(p.port or _default_port(scheme))


def _first(value: Optional[str]) -> str:
    return (value or "").split(",")[0].strip()


def _server_origin(request: Request) -> Origin:
    """Origin the server is reachable under.

    X-Forwarded-* headers are only honored with CLASSIO_TRUST_PROXY=true.
    """
    trust_proxy = (os.getenv("CLASSIO_TRUST_PROXY", "false") or "").lower() == "true"
    if not trust_proxy:
        scheme = (request.url.scheme or "http").lower()
        port = int(request.url.port) if request.url.port else _default_port(scheme)
        return scheme, (request.url.hostname or "").lower(), port

    scheme = (_first(request.headers.get("x-forwarded-proto")) or request.url.scheme or "http").lower()
    host_raw = _first(request.headers.get("x-forwarded-host") or request.headers.get("host"))
    host = (request.url.hostname or "").lower()
    port = int(request.url.port) if request.url.port else _default_port(scheme)
    if host_raw:
        host_only, sep, port_str = host_raw.rpartition(":")
        if sep and port_str.isdigit():
            host, port = host_only.lower(), int(port_str)
        else:
            host, port = host_raw.lower(), _default_port(scheme)
    forwarded_port = _first(request.headers.get("x-forwarded-port"))
    if forwarded_port.isdigit():
        port = int(forwarded_port)
    return scheme, host, port


def _is_same_origin(request: Request) -> bool:
    """True when a browser write comes from our own origin.

    Behavior:
    - `Origin` wins; otherwise the origin part of `Referer` is compared.
    - Admin API clients without either header (CLI, provider hooks) pass.
    - Unparseable header values count as foreign.
    """
    try:
        server = _server_origin(request)
        for header in ("origin", "referer"):
            value = request.headers.get(header)
            if value:
                return _parse_origin(value) == server
        return True
    except ValueError:
        return False
