"""
Outbound URL policy - applied to delivery targets and to script HTTP calls.
Blocks loopback/private/link-local hosts and optionally enforces https.
"""
import ipaddress
from typing import Optional
from urllib.parse import urlsplit

BLOCKED_HOSTNAMES = {"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"}

BLOCKED_NETWORKS = [
    ipaddress.ip_network(cidr)
    for cidr in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "::1/128",
        "fc00::/7",
        "fe80::/10",
    )
]


class UrlNotAllowed(ValueError):
    """Raised when a target URL violates the outbound policy."""


def _is_blocked_host(host: str) -> bool:
    host = host.strip("[]").lower()
    if host in BLOCKED_HOSTNAMES or host.endswith(".localhost"):
        return True
    try:
        addr = ipaddress.ip_address(host)
    except ValueError:
        return False
    if addr.version == 6 and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped
    return any(addr in net for net in BLOCKED_NETWORKS)


def check_url(
    url: str,
    enforce_https: Optional[bool] = None,
    block_private: Optional[bool] = None,
) -> str:
    """Validate a URL and return it unchanged; raises UrlNotAllowed."""
    if enforce_https is None or block_private is None:
        from eventrelay.config import get_settings
        settings = get_settings()
        if enforce_https is None:
            enforce_https = settings.enforce_https
        if block_private is None:
            block_private = settings.block_private_networks

    parts = urlsplit(url or "")
    if parts.scheme not in ("http", "https"):
        raise UrlNotAllowed(f"Unsupported URL scheme: {parts.scheme or 'none'}")
    if enforce_https and parts.scheme != "https":
        raise UrlNotAllowed("Only https URLs are allowed")
    if not parts.hostname:
        raise UrlNotAllowed("URL has no host")
    if block_private and _is_blocked_host(parts.hostname):
        raise UrlNotAllowed(f"Host not allowed: {parts.hostname}")
    return url
