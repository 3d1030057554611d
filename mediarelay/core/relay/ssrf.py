from __future__ import annotations

import ipaddress
import socket
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional
from urllib.parse import urlsplit

import anyio
from loguru import logger

Resolver = Callable[[str, int], Awaitable[list[str]]]

_BLOCKED_HOSTNAMES = {
    "localhost",
    "localhost.localdomain",
    "ip6-localhost",
    "ip6-loopback",
    "metadata",
    "metadata.google.internal",
    "metadata.azure.internal",
    "instance-data",
    "instance-data.ec2.internal",
}
_BLOCKED_SUFFIXES = (".localhost", ".local", ".internal")

# Cloud metadata endpoints. Most are already link-local or private; the
# explicit list catches the ones that are not (e.g. Alibaba's 100.100.100.200).
_METADATA_ADDRESSES = {
    ipaddress.ip_address("169.254.169.254"),
    ipaddress.ip_address("169.254.170.2"),
    ipaddress.ip_address("100.100.100.200"),
    ipaddress.ip_address("fd00:ec2::254"),
}


@dataclass(frozen=True)
class BlockVerdict:
    blocked: bool
    reason: str = ""


def _normalize(addr: ipaddress.IPv4Address | ipaddress.IPv6Address):
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    return addr


def is_blocked_address(raw: str) -> bool:
    """
    Return whether an IP literal is unsafe to relay to.

    Private, loopback, link-local, unique-local, multicast, unspecified and
    any other non-global range is blocked, as are cloud metadata endpoints.
    """
    try:
        addr = _normalize(ipaddress.ip_address(raw.split("%", 1)[0]))
    except ValueError:
        return True
    if addr in _METADATA_ADDRESSES:
        return True
    return (
        addr.is_private
        or addr.is_loopback
        or addr.is_link_local
        or addr.is_multicast
        or addr.is_unspecified
        or addr.is_reserved
        or not addr.is_global
    )


def _literal_address(host: str) -> Optional[str]:
    candidate = host.strip("[]")
    try:
        ipaddress.ip_address(candidate.split("%", 1)[0])
    except ValueError:
        return None
    return candidate


async def resolve_host(host: str, port: int) -> list[str]:
    """
    Resolve a hostname to the list of addresses it currently points at.
    """
    infos = await anyio.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    return [str(info[4][0]) for info in infos]


def _first_blocked(addresses: Iterable[str]) -> Optional[str]:
    for address in addresses:
        if is_blocked_address(address):
            return address
    return None


async def is_blocked_target_with_dns(
    url: str, *, resolver: Resolver = resolve_host
) -> BlockVerdict:
    """
    Decide whether an upstream URL points at an address the relay must not reach.

    Literal hosts are checked directly. Names are resolved and every returned
    address must be public; a name that does not resolve is blocked as well.

    Parameters:
        url (str): Absolute http(s) URL already validated for shape.
        resolver (Resolver): Async callable returning the addresses of a host.

    Returns:
        BlockVerdict: `blocked=True` with a short reason when the target is unsafe.
    """
    parsed = urlsplit(url)
    host = (parsed.hostname or "").strip().rstrip(".").lower()
    if not host:
        return BlockVerdict(True, "missing host")
    if host in _BLOCKED_HOSTNAMES or host.endswith(_BLOCKED_SUFFIXES):
        logger.debug("Blocked local hostname {}", host)
        return BlockVerdict(True, "local hostname")

    literal = _literal_address(host)
    if literal is not None:
        if is_blocked_address(literal):
            logger.debug("Blocked literal address {}", literal)
            return BlockVerdict(True, "private address")
        return BlockVerdict(False)

    try:
        port = parsed.port or (443 if parsed.scheme == "https" else 80)
    except ValueError:
        return BlockVerdict(True, "invalid port")

    try:
        addresses = await resolver(host, port)
    except (OSError, UnicodeError) as exc:
        logger.warning("DNS resolution failed for {}: {}", host, exc)
        return BlockVerdict(True, "unresolvable host")
    if not addresses:
        return BlockVerdict(True, "unresolvable host")

    bad = _first_blocked(addresses)
    if bad is not None:
        logger.warning("Blocked {} resolving to non-public address {}", host, bad)
        return BlockVerdict(True, "resolves to private address")
    logger.trace("DNS verdict for {}: public ({})", host, ", ".join(addresses))
    return BlockVerdict(False)
