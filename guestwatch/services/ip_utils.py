"""Client IP extraction, classification, hashing and masking.

Header priority when picking the client address:
    cf-connecting-ip > true-client-ip > x-forwarded-for > x-real-ip > socket
"""

import hashlib
import ipaddress
from collections.abc import Mapping
from dataclasses import dataclass, field

UNKNOWN_IP = "unknown"

CANDIDATE_HEADERS = (
    "cf-connecting-ip",
    "true-client-ip",
    "x-forwarded-for",
    "x-real-ip",
    "x-client-ip",
)


@dataclass
class ClientIP:
    """Result of client IP extraction.

    ``source`` is one of ``cf``, ``cf-true``, ``xff``, ``real``, ``socket``
    or ``unknown``.
    """

    ip: str
    source: str
    is_private: bool
    all_headers: dict[str, str | None] = field(default_factory=dict)


def is_valid_ip(ip: str | None) -> bool:
    if not ip or ip == UNKNOWN_IP:
        return False
    try:
        ipaddress.ip_address(ip)
    except ValueError:
        return False
    return True


def is_private_ip(ip: str | None) -> bool:
    """Private, loopback, link-local and unspecified addresses count as private.

    Anything that is not a parseable address is treated as private too, so it
    never reaches the geo lookup.
    """
    if not is_valid_ip(ip):
        return True
    addr = ipaddress.ip_address(ip)
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped
    return addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_unspecified


def _normalize(ip: str) -> str:
    if ip.lower().startswith("::ffff:"):
        mapped = ip[7:]
        if is_valid_ip(mapped):
            return mapped
    return ip


def extract_client_ip(headers: Mapping[str, str], peer: str | None = None) -> ClientIP:
    """Pick the client address from proxy headers or the socket peer.

    Args:
        headers: Request headers (lower-case lookups must work)
        peer: Socket peer address

    Returns:
        ClientIP with the chosen address and the header it came from
    """
    all_headers: dict[str, str | None] = {name: headers.get(name) for name in CANDIDATE_HEADERS}
    all_headers["socket"] = peer

    ip, source = UNKNOWN_IP, "unknown"

    cf_ip = all_headers["cf-connecting-ip"]
    true_ip = all_headers["true-client-ip"]
    xff = all_headers["x-forwarded-for"]
    real_ip = all_headers["x-real-ip"]

    if cf_ip and is_valid_ip(cf_ip.strip()):
        ip, source = cf_ip.strip(), "cf"
    elif true_ip and is_valid_ip(true_ip.strip()):
        ip, source = true_ip.strip(), "cf-true"
    elif xff:
        candidates = [part.strip() for part in xff.split(",")]
        for candidate in candidates:
            if is_valid_ip(candidate) and not is_private_ip(candidate):
                ip, source = candidate, "xff"
                break
        # Fall back to the first hop when every hop is private
        if ip == UNKNOWN_IP and candidates and is_valid_ip(candidates[0]):
            ip, source = candidates[0], "xff"
    elif real_ip and is_valid_ip(real_ip.strip()):
        ip, source = real_ip.strip(), "real"
    elif peer and is_valid_ip(peer):
        ip, source = peer, "socket"

    ip = _normalize(ip)
    return ClientIP(ip=ip, source=source, is_private=is_private_ip(ip), all_headers=all_headers)


def hash_ip(ip: str, salt: str) -> str:
    """Salted SHA-256 of the address, truncated to 32 hex chars."""
    return hashlib.sha256((ip + salt).encode("utf-8")).hexdigest()[:32]


def mask_ip(ip: str | None) -> str:
    """Mask an address for display, e.g. ``203.0.xxx.xxx``."""
    if not ip or ip == UNKNOWN_IP:
        return UNKNOWN_IP
    if "." in ip:
        parts = ip.split(".")
        if len(parts) == 4:
            return f"{parts[0]}.{parts[1]}.xxx.xxx"
    if ":" in ip:
        parts = ip.split(":")
        if len(parts) >= 4:
            return ":".join(parts[:4]) + ":xxxx:xxxx:xxxx:xxxx"
    return "xxx.xxx.xxx.xxx"
