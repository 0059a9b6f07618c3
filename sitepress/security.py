"""URL admission policy.

Every externally supplied URL goes through ``assert_url_allowed`` before the
service touches the network for it. The policy is not configurable per request:

- only http and https
- no ``localhost``, no literal IPv6 host
- no literal private, loopback or link-local IPv4 host
- the hostname must not resolve to any private address
- a hostname that fails to resolve is treated as private
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
import socket
import urllib.parse
from typing import Dict, List

from .reliability.errors import BlockedHostError, ValidationError

logger = logging.getLogger("sitepress.security")

_IPV4_RE = re.compile(r"^\d{1,3}(\.\d{1,3}){3}$")

# host -> resolves to a private address; read concurrently, only ever added to
DNS_CACHE: Dict[str, bool] = {}


def is_ipv4_literal(host: str) -> bool:
    return bool(_IPV4_RE.match(host or ""))


def is_ipv6_literal(host: str) -> bool:
    return ":" in (host or "")


def is_private_ipv4(ip: str) -> bool:
    """10/8, 127/8, 0/8, 192.168/16, 172.16/12, 169.254/16. Malformed counts as private."""
    try:
        parts = [int(x) for x in ip.split(".")]
    except ValueError:
        return True
    if len(parts) != 4 or any(n < 0 or n > 255 for n in parts):
        return True
    a, b = parts[0], parts[1]
    if a in (10, 127, 0):
        return True
    if a == 192 and b == 168:
        return True
    if a == 172 and 16 <= b <= 31:
        return True
    if a == 169 and b == 254:
        return True
    return False


def is_private_ipv6(ip: str) -> bool:
    """Prefix match on the textual form: ::, ::1, fe8-feb (link-local), fc/fd (unique-local).

    IPv4-mapped addresses are judged by their IPv4 part.
    """
    v = (ip or "").lower().split("%", 1)[0]
    if v in ("::", "::1"):
        return True
    if v.startswith(("fe8", "fe9", "fea", "feb")):
        return True
    if v.startswith(("fc", "fd")):
        return True
    try:
        mapped = ipaddress.IPv6Address(v).ipv4_mapped
    except ValueError:
        return False
    return mapped is not None and is_private_ipv4(str(mapped))


async def resolve_addresses(host: str) -> List[str]:
    """All addresses the system resolver returns for ``host``."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, None, family=socket.AF_UNSPEC, type=socket.SOCK_STREAM)
    return [info[4][0] for info in infos]


async def resolves_to_private_ip(host: str) -> bool:
    if is_ipv4_literal(host):
        return is_private_ipv4(host)
    if is_ipv6_literal(host):
        return True

    cached = DNS_CACHE.get(host)
    if cached is not None:
        return cached

    try:
        addresses = await resolve_addresses(host)
    except (OSError, UnicodeError) as e:
        logger.info(f"DNS lookup failed for {host}: {e}")
        return True
    if not addresses:
        return True

    verdict = False
    for address in addresses:
        if ":" in address:
            if is_private_ipv6(address):
                verdict = True
                break
        elif is_private_ipv4(address):
            verdict = True
            break
    DNS_CACHE.setdefault(host, verdict)
    return verdict


async def assert_url_allowed(url: str) -> None:
    """Raise ``ValidationError`` / ``BlockedHostError`` unless ``url`` may be fetched."""
    try:
        parsed = urllib.parse.urlsplit(url or "")
        host = (parsed.hostname or "").lower()
    except ValueError:
        raise ValidationError(f"Invalid URL: {url}")

    if not parsed.scheme:
        raise ValidationError(f"Invalid URL: {url}")
    if parsed.scheme.lower() not in ("http", "https"):
        raise BlockedHostError(url, f"protocol '{parsed.scheme}' is not allowed")
    if not parsed.netloc or not host:
        raise BlockedHostError(url, "missing host")
    if host == "localhost" or host.endswith(".localhost"):
        raise BlockedHostError(url, "localhost is not allowed")
    if is_ipv6_literal(host):
        raise BlockedHostError(url, "IPv6 hosts are not allowed")
    if is_ipv4_literal(host) and is_private_ipv4(host):
        raise BlockedHostError(url, f"private address {host}")

    if await resolves_to_private_ip(host):
        raise BlockedHostError(url, f"{host} resolves to a private address")
