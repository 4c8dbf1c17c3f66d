"""
Safety check for crawl source URLs.

Crawl sources are configured by operators, but the fetch still runs on our
network, so a URL must not reach:
- loopback or private addresses (by literal IP or by DNS resolution)
- anything that is not plain http(s)
"""

import ipaddress
import socket
from typing import Optional
from urllib.parse import urlparse


class UnsafeURLError(ValueError):
    """Raised when a crawl source URL fails the safety check."""


BLOCKED_HOSTNAMES = {"localhost", "localhost.localdomain"}

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


def _is_blocked(addr: IPAddress) -> bool:
    return (
        addr.is_private
        or addr.is_loopback
        or addr.is_link_local
        or addr.is_multicast
        or addr.is_reserved
        or addr.is_unspecified
    )


def _parse_ip(host: str) -> Optional[IPAddress]:
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        return None


def _resolve(host: str) -> set[str]:
    infos = socket.getaddrinfo(host, None, socket.AF_UNSPEC)
    return {info[4][0] for info in infos}


def validate_source_url(url: str, resolve_dns: bool = True) -> str:
    """
    Validate a crawl source URL.

    Args:
        url: URL to check
        resolve_dns: Also resolve the hostname and reject private results.
                     Resolution failures are left to the HTTP fetch.

    Returns:
        The stripped URL

    Raises:
        UnsafeURLError: With a message naming the reason
    """
    if not url or not isinstance(url, str):
        raise UnsafeURLError("URL must be a non-empty string")

    url = url.strip()
    parsed = urlparse(url)

    if parsed.scheme.lower() not in ("http", "https"):
        raise UnsafeURLError(f"Only HTTP(S) URLs are allowed (got {parsed.scheme or 'no scheme'})")

    host = (parsed.hostname or "").lower()
    if not host:
        raise UnsafeURLError("URL must include a hostname")

    if host in BLOCKED_HOSTNAMES or host.endswith(".localhost"):
        raise UnsafeURLError(f"Access to {host} is blocked (loopback)")

    literal = _parse_ip(host)
    if literal is not None:
        if _is_blocked(literal):
            raise UnsafeURLError(f"Access to {host} is blocked (private address)")
        return url

    if resolve_dns:
        try:
            resolved = _resolve(host)
        except socket.gaierror:
            return url
        for ip in resolved:
            addr = _parse_ip(ip)
            if addr is not None and _is_blocked(addr):
                raise UnsafeURLError(f"Access to {host} is blocked (resolves to private address {ip})")

    return url
