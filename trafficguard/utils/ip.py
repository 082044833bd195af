"""Client identity helpers."""
from __future__ import annotations

import re
from typing import Mapping

UNKNOWN_IP = "unknown"

# Docker bridge networks and loopback.
INTERNAL_IP_PATTERNS = (
    re.compile(r"^172\.\d+\.\d+\.\d+$"),
    re.compile(r"^127\.0\.0\.1$"),
    re.compile(r"^localhost$"),
    re.compile(r"^::1$"),
)


def get_client_ip(headers: Mapping[str, str], *, dev_mode: bool) -> str:
    """Resolve the caller IP from proxy headers.

    Precedence is ``CF-Connecting-IP``, then the *last* entry of
    ``X-Forwarded-For`` (the proxy appends the address it saw), then
    ``X-Real-IP``. Without any of them the result is ``"unknown"`` in
    development and an empty string in production.
    """

    cf_ip = (headers.get("cf-connecting-ip") or "").strip()
    if cf_ip:
        return cf_ip

    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        ips = [ip.strip() for ip in forwarded.split(",")]
        if ips[-1]:
            return ips[-1]

    real_ip = (headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip

    return UNKNOWN_IP if dev_mode else ""


def is_internal_request(ip: str, *, dev_mode: bool) -> bool:
    """Return ``True`` when ``ip`` belongs to the internal network."""

    if not ip:
        return False
    if ip == UNKNOWN_IP:
        return dev_mode
    return any(pattern.match(ip) for pattern in INTERNAL_IP_PATTERNS)
