"""Utility helpers for EventCall."""

from __future__ import annotations

import secrets
import string
import time
import uuid
from datetime import UTC, datetime
from urllib.parse import urlparse

LOCAL_HOSTNAMES = frozenset({"localhost", "127.0.0.1", "0.0.0.0", "::1"})
STATIC_HOST_SUFFIXES = (".github.io",)

_base36_alphabet = string.digits + string.ascii_lowercase


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def epoch_ms() -> int:
    return int(time.time() * 1000)


def iso_now() -> str:
    """Return the current UTC time as an ISO-8601 string with a ``Z`` suffix."""

    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO timestamp into an aware UTC datetime.

    Naive values are treated as UTC. Empty strings yield ``None``.
    """

    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


def random_suffix(length: int = 9) -> str:
    """Return ``length`` random lowercase alphanumerics."""

    return "".join(secrets.choice(_base36_alphabet) for _ in range(length))


def to_base36(value: int) -> str:
    if value < 0:
        raise ValueError("to_base36 expects a non-negative integer")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_base36_alphabet[remainder])
    return "".join(reversed(digits))


def hostname_of(origin: str | None) -> str:
    """Return the lowercase hostname of an origin URL or bare host."""

    if not origin:
        return ""
    candidate = origin if "://" in origin else f"//{origin}"
    return (urlparse(candidate).hostname or "").lower()


def is_local_hostname(hostname: str) -> bool:
    hostname = (hostname or "").lower()
    return hostname in LOCAL_HOSTNAMES or hostname.endswith(".local")


def is_static_host(hostname: str) -> bool:
    hostname = (hostname or "").lower()
    return hostname.endswith(STATIC_HOST_SUFFIXES)
