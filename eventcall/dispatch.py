"""repository_dispatch transports and the bridge that selects one."""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from typing import Any, Protocol

from .config import Settings
from .csrf import CSRFToken, CSRFTokenCache
from .errors import DispatchError, ValidationError
from .github import GitHubClient, error_for_response, response_message
from .ratelimit import FetchClient
from .utils import epoch_ms, is_local_hostname, is_static_host

logger = logging.getLogger(__name__)

MAX_EVENT_TYPE_LENGTH = 100
EVENT_TYPE_PATTERN = re.compile(r"[A-Za-z0-9_.-]+")


def valid_event_type(event_type: Any) -> bool:
    return (
        isinstance(event_type, str)
        and len(event_type) <= MAX_EVENT_TYPE_LENGTH
        and EVENT_TYPE_PATTERN.fullmatch(event_type) is not None
    )


def build_client_payload(
    payload: dict[str, Any],
    *,
    origin: str = "",
    referer: str = "",
    csrf_token: str | None = None,
) -> dict[str, Any]:
    """Wrap ``payload`` the way the workflow expects it.

    GitHub caps the number of top-level client_payload properties, so the
    real payload always travels under ``data``.
    """

    return {
        "data": payload,
        "sentAt": epoch_ms(),
        "source": {"origin": origin, "referer": referer or origin},
        "csrfToken": csrf_token,
    }


@dataclass(frozen=True)
class DispatchResult:
    success: bool
    transport: str
    local: bool = False


class DispatchTransport(Protocol):
    name: str

    def dispatch(self, event_type: str, payload: dict[str, Any]) -> DispatchResult: ...


def _workflow_missing(status: int, message: str) -> bool:
    return status == 404 and "Not Found" in message


class DirectDispatchTransport:
    """POST straight to ``/dispatches`` with the configured token."""

    name = "direct"

    def __init__(
        self,
        github: GitHubClient,
        *,
        origin: str = "",
        csrf_token: str | None = None,
    ) -> None:
        self.github = github
        self.origin = origin
        self.csrf_token = csrf_token or secrets.token_urlsafe(24)

    def dispatch(self, event_type: str, payload: dict[str, Any]) -> DispatchResult:
        context = f"Dispatch {event_type}"
        response = self.github.request(
            "POST",
            "dispatches",
            context=context,
            json={
                "event_type": event_type,
                "client_payload": build_client_payload(
                    payload, origin=self.origin, csrf_token=self.csrf_token
                ),
            },
        )
        if response.is_success:
            return DispatchResult(success=True, transport=self.name)
        message = response_message(response)
        if _workflow_missing(response.status_code, message):
            raise DispatchError(
                response.status_code,
                f"Workflow dispatch unavailable: {message}",
                should_fallback=True,
            )
        raise error_for_response(response, context=context)


class ProxyDispatchTransport:
    """Dispatch through the CSRF-protected proxy; the token stays server side."""

    name = "proxy"

    def __init__(
        self,
        fetcher: FetchClient,
        base_url: str,
        *,
        origin: str = "",
        csrf_cache: CSRFTokenCache | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.base_url = base_url.rstrip("/")
        self.origin = origin
        self.csrf = csrf_cache or CSRFTokenCache(self._handshake)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.origin:
            headers["Origin"] = self.origin
        return headers

    def _handshake(self) -> CSRFToken:
        response = self.fetcher.fetch(
            "GET",
            f"{self.base_url}/api/csrf",
            context="CSRF handshake",
            headers=self._headers(),
        )
        if not response.is_success:
            raise DispatchError(
                response.status_code,
                f"CSRF handshake failed: {_proxy_error(response)}",
            )
        return CSRFToken.from_dict(response.json())

    def dispatch(self, event_type: str, payload: dict[str, Any]) -> DispatchResult:
        token = self.csrf.get()
        response = self.fetcher.fetch(
            "POST",
            f"{self.base_url}/api/dispatch",
            endpoint_key="github_dispatch",
            context=f"Proxy dispatch {event_type}",
            headers={**self._headers(), **token.headers()},
            json={
                "event_type": event_type,
                "client_payload": build_client_payload(
                    payload, origin=self.origin, csrf_token=token.token
                ),
            },
        )
        if response.is_success:
            return DispatchResult(success=True, transport=self.name)
        if response.status_code == 403:
            self.csrf.invalidate()
        message = _proxy_error(response)
        raise DispatchError(
            response.status_code,
            f"Proxy dispatch failed: {message}",
            should_fallback=_workflow_missing(response.status_code, message),
        )


def _proxy_error(response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return response_message(response)


class LocalDevDispatchTransport:
    """Development bypass: dispatches are logged and reported as local successes.

    Selected only for local hostnames when ``force_backend_in_dev`` is off.
    Nothing is sent to GitHub, so no workflow ever runs.
    """

    name = "local_dev"

    def dispatch(self, event_type: str, payload: dict[str, Any]) -> DispatchResult:
        logger.warning(
            "Local development mode: skipping %s dispatch "
            "(set force_backend_in_dev to send it)",
            event_type,
        )
        return DispatchResult(success=True, transport=self.name, local=True)


def select_dispatch_transport(
    settings: Settings, *, fetcher: FetchClient, github: GitHubClient
) -> DispatchTransport:
    hostname = settings.client_hostname
    if is_local_hostname(hostname) and not settings.force_backend_in_dev:
        return LocalDevDispatchTransport()
    if settings.dispatch_url and (settings.force_proxy or is_static_host(hostname)):
        return ProxyDispatchTransport(
            fetcher, settings.dispatch_url, origin=settings.client_origin
        )
    return DirectDispatchTransport(github, origin=settings.client_origin)


class WorkflowDispatchBridge:
    """Validated entry point for triggering backend workflows."""

    def __init__(self, transport: DispatchTransport) -> None:
        self.transport = transport

    @property
    def is_local(self) -> bool:
        return isinstance(self.transport, LocalDevDispatchTransport)

    def dispatch(self, event_type: str, payload: dict[str, Any]) -> DispatchResult:
        if not valid_event_type(event_type):
            raise ValidationError("Invalid event_type")
        logger.info("Dispatching %s via %s transport", event_type, self.transport.name)
        return self.transport.dispatch(event_type, payload)
