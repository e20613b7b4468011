"""GitHub token selection and rotation."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Protocol

from .errors import TokenExpired

logger = logging.getLogger(__name__)

TOKEN_INDEX_KEY = "github_token_index"


class SessionStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...


class MemorySessionStore:
    """Process-local session storage."""

    def __init__(self) -> None:
        self._values: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value


def _now() -> datetime:
    return datetime.now(UTC)


class TokenRotationPolicy:
    """Pick the active token from a list and advance on rate-limit exhaustion.

    The active index lives in ``store`` so a freshly built policy sharing the
    same store resumes on the same token.
    """

    def __init__(
        self,
        tokens: Sequence[str] = (),
        *,
        fallback_token: str | None = None,
        store: SessionStore | None = None,
        expires_at: datetime | None = None,
        on_expired: Callable[[], None] | None = None,
        index_key: str = TOKEN_INDEX_KEY,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self.tokens = tuple(token for token in tokens if token)
        self.fallback_token = fallback_token or None
        self.store = store or MemorySessionStore()
        self.expires_at = expires_at
        self.on_expired = on_expired
        self.index_key = index_key
        self._clock = clock

    @property
    def index(self) -> int:
        raw = self.store.get(self.index_key)
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            logger.warning("Ignoring unreadable token index %r", raw)
            return 0

    def check_expiry(self) -> None:
        if self.expires_at is None:
            return
        if self._clock() >= self.expires_at:
            if self.on_expired is not None:
                self.on_expired()
            raise TokenExpired(
                f"GitHub token expired at {self.expires_at.isoformat()}"
            )

    def current_token(self) -> str | None:
        self.check_expiry()
        if self.tokens:
            return self.tokens[self.index % len(self.tokens)]
        return self.fallback_token

    def advance(self) -> int:
        """Move to the next token; a no-op with fewer than two tokens."""
        current = self.index
        if len(self.tokens) < 2:
            return current
        new_index = (current + 1) % len(self.tokens)
        self.store.set(self.index_key, str(new_index))
        logger.info("Rotated GitHub token to index %s", new_index)
        return new_index
