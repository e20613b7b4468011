"""CSRF handshake tokens shared by the proxy and its clients."""

from __future__ import annotations

import base64
import hashlib
import hmac
import threading
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

CSRF_CLIENT_HEADER = "X-CSRF-Client"
CSRF_TOKEN_HEADER = "X-CSRF-Token"
CSRF_EXPIRES_HEADER = "X-CSRF-Expires"
DEFAULT_TTL = timedelta(minutes=15)
# Refresh cached handshakes this long before they expire.
REFRESH_MARGIN_MS = 60_000


class CSRFError(Exception):
    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.message = message


def _now_ms() -> int:
    return int(time.time() * 1000)


def sign(client_id: str, expires: int | str, secret: str) -> str:
    digest = hmac.new(
        secret.encode("utf-8"),
        f"{client_id}:{expires}".encode("utf-8"),
        hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode("ascii")


def constant_time_equal(left: str, right: str) -> bool:
    return hmac.compare_digest(str(left).encode("utf-8"), str(right).encode("utf-8"))


@dataclass(frozen=True)
class CSRFToken:
    client_id: str
    token: str
    expires: int

    def as_dict(self) -> dict[str, Any]:
        return {"clientId": self.client_id, "token": self.token, "expires": self.expires}

    def headers(self) -> dict[str, str]:
        return {
            CSRF_CLIENT_HEADER: self.client_id,
            CSRF_TOKEN_HEADER: self.token,
            CSRF_EXPIRES_HEADER: str(self.expires),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CSRFToken:
        return cls(
            client_id=str(data["clientId"]),
            token=str(data["token"]),
            expires=int(data["expires"]),
        )


def issue_token(
    secret: str, *, ttl: timedelta = DEFAULT_TTL, now_ms: int | None = None
) -> CSRFToken:
    client_id = str(uuid.uuid4())
    now = _now_ms() if now_ms is None else now_ms
    expires = now + int(ttl.total_seconds() * 1000)
    return CSRFToken(client_id=client_id, token=sign(client_id, expires, secret), expires=expires)


def verify_token(
    client_id: str | None,
    token: str | None,
    expires: str | None,
    secret: str,
    *,
    now_ms: int | None = None,
) -> None:
    """Raise :class:`CSRFError` unless the presented handshake is valid."""

    if not client_id or not token or not expires:
        raise CSRFError(400, "Missing CSRF headers")
    try:
        expires_ms = int(expires)
    except ValueError:
        raise CSRFError(403, "Invalid CSRF token") from None
    now = _now_ms() if now_ms is None else now_ms
    if now > expires_ms:
        raise CSRFError(403, "CSRF token expired")
    if not constant_time_equal(sign(client_id, expires, secret), token):
        raise CSRFError(403, "Invalid CSRF token")


def origin_allowed(
    origin: str | None, referer: str | None, allowed: Iterable[str]
) -> bool:
    """Apply the proxy's origin allow-list.

    Requests without an Origin header (server-to-server, curl) are allowed.
    """

    allowed = tuple(allowed)
    if not origin:
        return True
    if origin not in allowed:
        return False
    if referer and not any(
        referer == item or referer.startswith(item + "/") for item in allowed
    ):
        return False
    return True


class CSRFTokenCache:
    """Client-side cache for one proxy handshake."""

    def __init__(
        self,
        fetch: Callable[[], CSRFToken],
        *,
        clock_ms: Callable[[], int] = _now_ms,
        margin_ms: int = REFRESH_MARGIN_MS,
    ) -> None:
        self._fetch = fetch
        self._clock_ms = clock_ms
        self._margin_ms = margin_ms
        self._lock = threading.Lock()
        self._token: CSRFToken | None = None

    def get(self) -> CSRFToken:
        with self._lock:
            if self._token is None or self._clock_ms() >= self._token.expires - self._margin_ms:
                self._token = self._fetch()
            return self._token

    def invalidate(self) -> None:
        with self._lock:
            self._token = None
