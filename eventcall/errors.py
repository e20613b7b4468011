"""Error taxonomy shared by the EventCall client, proxy and CLI.

Every error carries a ``kind`` so user-facing surfaces can pick a short,
actionable message without parsing exception text.
"""

from __future__ import annotations

from typing import Any


class EventCallError(Exception):
    kind = "error"


class ConfigurationError(EventCallError):
    kind = "configuration"


class NetworkFailure(EventCallError):
    kind = "network"


class RequestFailed(EventCallError):
    """Raised once the retry budget for a request is spent."""

    def __init__(
        self, message: str, *, context: str, attempts: int, cause: BaseException | None
    ) -> None:
        super().__init__(message)
        self.context = context
        self.attempts = attempts
        self.cause = cause

    @property
    def kind(self) -> str:  # type: ignore[override]
        if isinstance(self.cause, EventCallError):
            return self.cause.kind
        return NetworkFailure.kind


class GitHubAPIError(EventCallError):
    kind = "github"

    def __init__(
        self, status: int, message: str, *, path: str | None = None, details: Any = None
    ) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.path = path
        self.details = details


class RateLimited(GitHubAPIError):
    kind = "rate_limited"


class AuthError(GitHubAPIError):
    kind = "auth"


class PermissionDenied(GitHubAPIError):
    kind = "permission"


class NotFound(GitHubAPIError):
    kind = "not_found"


class ConflictError(GitHubAPIError):
    kind = "conflict"


class DispatchError(GitHubAPIError):
    kind = "dispatch"

    def __init__(
        self,
        status: int,
        message: str,
        *,
        should_fallback: bool = False,
        path: str | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(status, message, path=path, details=details)
        self.should_fallback = should_fallback


class ValidationError(EventCallError):
    kind = "validation"

    def __init__(self, errors: list[str] | str) -> None:
        self.errors = [errors] if isinstance(errors, str) else list(errors)
        super().__init__("; ".join(self.errors))


class AuthTimeout(EventCallError):
    kind = "timeout"


class AuthCancelled(EventCallError):
    kind = "cancelled"


class MalformedResponse(EventCallError):
    kind = "malformed"


class TokenExpired(EventCallError):
    kind = "token_expired"


class InvalidCredentials(EventCallError):
    kind = "auth"


class SubmissionFailed(EventCallError):
    kind = "submission"

    def __init__(self, failures: dict[str, str]) -> None:
        self.failures = dict(failures)
        detail = "; ".join(f"{tier}: {reason}" for tier, reason in self.failures.items())
        super().__init__(f"All submission methods failed ({detail})")


USER_MESSAGES: dict[str, str] = {
    "network": "Network issue. Check your connection and try again.",
    "rate_limited": "GitHub rate limit reached. Please wait a moment and try again.",
    "auth": "Your session is no longer valid. Please sign in again.",
    "token_expired": "The configured GitHub token has expired. Please sign in again.",
    "permission": "Permission denied. The token cannot access this repository.",
    "not_found": "The requested item could not be found.",
    "conflict": "This item was changed elsewhere. Reload and try again.",
    "validation": "Some fields need attention before submitting.",
    "timeout": "The request took too long to complete. Please try again.",
    "cancelled": "The request was cancelled.",
    "malformed": "Received an unreadable response. Please try again later.",
    "dispatch": "The backend workflow could not be started.",
    "submission": "Your RSVP could not be saved. It has been kept locally.",
    "configuration": "EventCall is not configured correctly.",
}


def user_message(exc: BaseException) -> str:
    """Return a short actionable message for ``exc``."""

    kind = getattr(exc, "kind", None)
    if isinstance(exc, ValidationError):
        return f"{USER_MESSAGES['validation']} {exc}"
    if isinstance(exc, InvalidCredentials):
        return str(exc) or USER_MESSAGES["auth"]
    return USER_MESSAGES.get(kind or "", "An unexpected error occurred. Please try again.")
