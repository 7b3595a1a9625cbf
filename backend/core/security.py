"""
Security utilities for the media proxy backend.

URL validation here is purely lexical: hostnames are never resolved, so a
public name that resolves to a private address is not caught. IP literals
are normalized first, so decimal, hex, octal and expanded IPv6 spellings of
a private address are caught.
"""
import re
import socket
import logging
import ipaddress
from typing import Optional
from urllib.parse import urlsplit

import httpx

logger = logging.getLogger(__name__)

PRIVATE_IP_PATTERNS = [
    re.compile(r"^127\."),  # 127.0.0.0/8
    re.compile(r"^10\."),  # 10.0.0.0/8
    re.compile(r"^192\.168\."),  # 192.168.0.0/16
    re.compile(r"^0\.0\.0\.0$"),
]

_PRIVATE_172 = re.compile(r"^172\.(\d+)\.")

# Characters that can never appear in a hostname
_FORBIDDEN_HOST_CHARS = re.compile(r"[\x00-\x20#%/:<>?@\[\\\]^|\x7f]")


def _normalize_ip_literal(host: str) -> Optional[str]:
    """Return the canonical form of an IP literal, or None for a name."""
    try:
        addr = ipaddress.ip_address(host)
    except ValueError:
        pass
    else:
        if addr.version == 6 and addr.ipv4_mapped:
            addr = addr.ipv4_mapped
        return str(addr)

    # Legacy IPv4 spellings: 2130706433, 0x7f.0.0.1, 0177.0.0.1, 127.1
    try:
        return socket.inet_ntoa(socket.inet_aton(host))
    except OSError:
        return None


def _is_private_host(hostname: str) -> bool:
    """Check if a hostname is localhost or a loopback/private IP literal."""
    bare = hostname.strip("[]")
    if bare.endswith("."):
        bare = bare[:-1]
    if bare == "localhost":
        return True

    address = _normalize_ip_literal(bare)
    if address is None:
        return False
    if address == "::1":
        return True

    for pattern in PRIVATE_IP_PATTERNS:
        if pattern.match(address):
            return True

    # 172.16.0.0 - 172.31.255.255
    match = _PRIVATE_172.match(address)
    if match and 16 <= int(match.group(1)) <= 31:
        return True

    return False


def is_url_allowed(url: Optional[str]) -> bool:
    """Validate that a URL is safe to proxy (https only, no internal hosts)."""
    if not url:
        return False

    try:
        parsed = urlsplit(url)
        # Accessing .port validates it; a bad port raises ValueError
        parsed.port
        # Anything httpx cannot build a request from is refused up front
        httpx.URL(url)
    except (ValueError, httpx.InvalidURL):
        return False

    if parsed.scheme != "https":
        return False

    hostname = parsed.hostname
    if not hostname:
        return False

    if _normalize_ip_literal(hostname) is None and _FORBIDDEN_HOST_CHARS.search(hostname):
        return False

    if _is_private_host(hostname.lower()):
        logger.warning(f"Rejected private host: {hostname[:60]}")
        return False

    return True


def is_content_type_allowed(content_type: Optional[str]) -> bool:
    """Only audio/* and video/* are proxied."""
    if not content_type:
        return False
    mime = content_type.split(";")[0].strip().lower()
    return mime.startswith("video/") or mime.startswith("audio/")


def get_user_from_request(request) -> Optional[str]:
    """Extract user identity from Cloudflare header or query param."""
    # Try Cloudflare Access header first
    user_email = request.headers.get("cf-access-authenticated-user-email")
    # Fallback to query param for dev/testing
    if not user_email:
        user_email = request.query_params.get("user")
    return user_email or None
