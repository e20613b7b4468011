"""Shared GitHub REST transport."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

import httpx

from .errors import (
    AuthError,
    ConflictError,
    GitHubAPIError,
    NotFound,
    PermissionDenied,
    RateLimited,
    RequestFailed,
)
from .ratelimit import FetchClient, is_rate_limited
from .tokens import TokenRotationPolicy

logger = logging.getLogger(__name__)

GITHUB_ACCEPT = "application/vnd.github.v3+json"
DEFAULT_USER_AGENT = "EventCall-App"
TOKEN_INVALID_MESSAGE = "GitHub token is invalid or expired. Please re-authenticate."
PERMISSION_MESSAGE = "GitHub API rate limit exceeded or insufficient permissions"


def response_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return response.text or response.reason_phrase


def error_for_response(
    response: httpx.Response,
    *,
    context: str,
    conflict_statuses: Iterable[int] = (409,),
) -> GitHubAPIError:
    """Map a failed GitHub response onto the error taxonomy."""

    status = response.status_code
    detail = response_message(response)
    path = response.request.url.path
    if status == 401:
        return AuthError(status, TOKEN_INVALID_MESSAGE, path=path, details=detail)
    if is_rate_limited(response):
        return RateLimited(
            status,
            "GitHub API rate limit exceeded. Please wait and try again.",
            path=path,
            details=detail,
        )
    if status == 403:
        return PermissionDenied(
            status, f"{PERMISSION_MESSAGE}: {detail}", path=path, details=detail
        )
    if status == 404:
        return NotFound(status, f"{context}: {detail}", path=path, details=detail)
    if status in tuple(conflict_statuses):
        return ConflictError(
            status, f"{context} conflict: {detail}", path=path, details=detail
        )
    return GitHubAPIError(
        status, f"{context} failed ({status}): {detail}", path=path, details=detail
    )


class GitHubClient:
    """Authenticated access to one ``owner/repo`` through a :class:`FetchClient`."""

    def __init__(
        self,
        fetcher: FetchClient,
        *,
        owner: str,
        repo: str,
        tokens: TokenRotationPolicy | None = None,
        api_base: str = "https://api.github.com",
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self.fetcher = fetcher
        self.owner = owner
        self.repo = repo
        self.tokens = tokens
        self.api_base = api_base.rstrip("/")
        self.user_agent = user_agent

    def url(self, suffix: str = "") -> str:
        base = f"{self.api_base}/repos/{self.owner}/{self.repo}"
        return f"{base}/{suffix.lstrip('/')}" if suffix else base

    def headers(self) -> dict[str, str]:
        headers = {"Accept": GITHUB_ACCEPT, "User-Agent": self.user_agent}
        token = self.tokens.current_token() if self.tokens is not None else None
        if token:
            headers["Authorization"] = f"token {token}"
        return headers

    def request(
        self,
        method: str,
        suffix: str,
        *,
        context: str,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        kwargs: dict[str, Any] = {"headers": self.headers()}
        if json is not None:
            kwargs["json"] = json
        if params:
            kwargs["params"] = params
        try:
            response = self.fetcher.fetch(
                method, self.url(suffix), context=context, **kwargs
            )
        except RequestFailed as exc:
            if isinstance(exc.cause, RateLimited):
                self._rotate("retry budget spent on rate limiting")
            raise
        remaining = response.headers.get("x-ratelimit-remaining")
        if remaining is not None and remaining.lstrip("-").isdigit() and int(remaining) <= 0:
            self._rotate("rate limit exhausted")
        return response

    def _rotate(self, reason: str) -> None:
        if self.tokens is None:
            return
        logger.warning("Advancing GitHub token: %s", reason)
        self.tokens.advance()

    def list_issues(
        self,
        *,
        state: str = "open",
        labels: Iterable[str] | None = None,
        sort: str = "created",
        direction: str = "desc",
        per_page: int = 100,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {
            "state": state,
            "sort": sort,
            "direction": direction,
            "per_page": per_page,
        }
        if labels:
            params["labels"] = ",".join(labels)
        response = self.request("GET", "issues", context="List issues", params=params)
        if not response.is_success:
            raise error_for_response(response, context="List issues")
        return response.json()

    def create_issue(
        self, title: str, body: str, labels: Iterable[str] = ()
    ) -> dict[str, Any]:
        response = self.request(
            "POST",
            "issues",
            context="Create issue",
            json={"title": title, "body": body, "labels": list(labels)},
        )
        if not response.is_success:
            raise error_for_response(response, context="Create issue")
        return response.json()

    def update_issue(self, number: int, **fields: Any) -> dict[str, Any]:
        response = self.request(
            "PATCH", f"issues/{number}", context=f"Update issue #{number}", json=fields
        )
        if not response.is_success:
            raise error_for_response(response, context=f"Update issue #{number}")
        return response.json()

    def close_issue(
        self, number: int, *, labels: Iterable[str] | None = None
    ) -> dict[str, Any]:
        fields: dict[str, Any] = {"state": "closed"}
        if labels is not None:
            fields["labels"] = list(labels)
        return self.update_issue(number, **fields)
