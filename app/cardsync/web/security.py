"""Client allowlist for the control API.

The API can start syncs, restore backups over a local scope and poke the
AnkiConnect connection, so only callers from the configured networks get in.
"""

from __future__ import annotations

import ipaddress
import logging
import os
from typing import Iterable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse

logger = logging.getLogger("web")

ALLOWED_NETS_ENV = "CARDSYNC_ALLOWED_NETS"

IpNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


def parse_nets(entries: Iterable[str]) -> list[IpNetwork]:
    """CIDR strings to networks; a bare address is a single host."""
    nets: list[IpNetwork] = []
    for entry in entries:
        s = entry.strip()
        if not s:
            continue
        try:
            nets.append(ipaddress.ip_network(s, strict=False))
        except ValueError as exc:
            raise ValueError(f"invalid_allowed_net: {s}") from exc
    return nets


def resolve_allowed_nets(configured: Iterable[str]) -> list[str]:
    raw = os.environ.get(ALLOWED_NETS_ENV)
    if raw is None:
        return [s for s in configured if s.strip()]
    return [s.strip() for s in raw.split(",") if s.strip()]


class ControlApiAllowlist(BaseHTTPMiddleware):
    """403 for callers outside `allowed_nets`, 503 while the list itself is invalid."""

    def __init__(self, app, allowed_nets: Iterable[str]):
        super().__init__(app)
        self.allowed: list[IpNetwork] = []
        self.allowlist_error: str | None = None
        try:
            self.allowed = parse_nets(allowed_nets)
        except ValueError as exc:
            self.allowlist_error = str(exc)
            logger.error("allowlist_invalid error=%s", exc)

    def permits(self, host: str) -> bool:
        try:
            ip = ipaddress.ip_address(host)
        except ValueError:
            return False
        # an empty list opens the API to every address
        return not self.allowed or any(ip in net for net in self.allowed)

    async def dispatch(self, request: Request, call_next):
        if self.allowlist_error:
            return PlainTextResponse(f"control_api_misconfigured: {self.allowlist_error}", status_code=503)

        host = request.client.host if request.client else ""
        if not self.permits(host):
            logger.warning("control_api_denied client=%s path=%s", host or "-", request.url.path)
            return PlainTextResponse(f"control_api_denied: {host or 'unknown client'}", status_code=403)

        return await call_next(request)
