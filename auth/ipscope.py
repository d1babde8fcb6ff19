"""
auth/ipscope.py -- Client address normalization and IP-scope matching.

A scope pattern is either an exact address literal ("10.0.0.5") or a dotted
pattern with wildcard segments ("192.168.1.*"). Wildcard patterns compile to
an anchored regular expression: the literal text is escaped first, then each
"*" expands to ".*". Compiled patterns are cached per distinct pattern string
because the same handful of scopes is checked on every request.

Layer rule: stdlib only. No imports from api/ or core/.
"""

from __future__ import annotations

import ipaddress
import re
from collections.abc import Iterable, Mapping
from functools import lru_cache

_LOOPBACK_ALIASES = {"::1", "::ffff:127.0.0.1"}
_MAPPED_PREFIX = "::ffff:"

# Returned by client_ip() when no address can be resolved. Never a valid scope.
UNKNOWN_IP = "unknown"

_SEGMENT_RE = re.compile(r"^(\*|25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)$")


def normalize_ip(address: str | None) -> str | None:
    """Collapse IPv6 loopback and IPv4-mapped forms to plain IPv4.

    Total over strings: anything that is not one of the recognised forms is
    returned unchanged.
    """
    if not address:
        return address
    if address in _LOOPBACK_ALIASES:
        return "127.0.0.1"
    if address.startswith(_MAPPED_PREFIX):
        return address[len(_MAPPED_PREFIX) :]
    return address


@lru_cache(maxsize=1024)
def _compile(pattern: str) -> re.Pattern[str]:
    return re.compile("^" + re.escape(pattern).replace(r"\*", ".*") + "$")


def matches(address: str | None, patterns: Iterable[str] | None) -> bool:
    """Return True if address equals or matches any pattern, left to right.

    An empty or missing pattern list means "allow any". Call sites that must
    not grant open scope (token verification) always pass a non-empty list.
    """
    if not patterns:
        return True
    normalized = normalize_ip(address) or ""
    for pattern in patterns:
        if pattern == normalized:
            return True
        if "*" in pattern and _compile(pattern).match(normalized):
            return True
    return False


def is_valid_scope(pattern: str) -> bool:
    """Return True if pattern is an IP literal or a dotted wildcard pattern.

    Used to reject garbage in the login request's allowedIps before it is
    baked into signed tokens.
    """
    if not pattern:
        return False
    if "*" not in pattern:
        try:
            ipaddress.ip_address(normalize_ip(pattern))
        except ValueError:
            return False
        return True
    segments = pattern.split(".")
    return len(segments) == 4 and all(_SEGMENT_RE.match(s) for s in segments)


def client_ip(headers: Mapping[str, str], peer: str | None) -> str:
    """Resolve the caller's address: X-Forwarded-For (first hop), X-Real-IP, then the socket peer."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return peer or UNKNOWN_IP
