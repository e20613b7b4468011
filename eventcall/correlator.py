"""Request/response correlation over workflow dispatch and GitHub Issues.

A request is a ``repository_dispatch`` carrying a ``client_id``. The workflow
answers by opening an issue titled ``AUTH_RESPONSE::<client_id>`` whose body
is the JSON result. This module polls for that issue, consumes it and closes
it.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from .dispatch import WorkflowDispatchBridge
from .errors import AuthCancelled, AuthTimeout, EventCallError, MalformedResponse
from .github import GitHubClient
from .utils import epoch_ms, random_suffix

logger = logging.getLogger(__name__)

AUTH_RESPONSE_PREFIX = "AUTH_RESPONSE::"
DEFAULT_TIMEOUT = 30.0
DEFAULT_INTERVAL = 2.0


def generate_client_id(purpose: str) -> str:
    return f"{purpose}_{epoch_ms()}_{random_suffix(9)}"


def response_title(client_id: str) -> str:
    return f"{AUTH_RESPONSE_PREFIX}{client_id}"


def parse_response_body(issue: dict[str, Any]) -> Any:
    body = issue.get("body") or ""
    try:
        return json.loads(body)
    except ValueError as exc:
        raise MalformedResponse(
            f"Response issue #{issue.get('number')} does not contain valid JSON"
        ) from exc


class AuthResponseCorrelator:
    def __init__(
        self,
        bridge: WorkflowDispatchBridge,
        issues: GitHubClient,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        interval: float = DEFAULT_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.bridge = bridge
        self.issues = issues
        self.timeout = timeout
        self.interval = interval
        self._clock = clock
        self._sleep = sleep

    def request(
        self,
        action: str,
        payload: dict[str, Any],
        *,
        purpose: str | None = None,
        cancel: threading.Event | None = None,
    ) -> Any:
        client_id = generate_client_id(purpose or action)
        self.bridge.dispatch(action, {**payload, "client_id": client_id})
        return self.await_response(client_id, cancel=cancel)

    def find_response_issue(self, client_id: str) -> dict[str, Any] | None:
        """Newest-first search of open issues, then of all issues."""
        marker = response_title(client_id)
        for state in ("open", "all"):
            for issue in self.issues.list_issues(state=state):
                if marker in (issue.get("title") or ""):
                    return issue
        return None

    def await_response(
        self, client_id: str, *, cancel: threading.Event | None = None
    ) -> Any:
        start = self._clock()
        while self._clock() - start < self.timeout:
            if cancel is not None and cancel.is_set():
                raise AuthCancelled(f"Stopped waiting for {client_id}")
            issue = self.find_response_issue(client_id)
            if issue is not None:
                payload = parse_response_body(issue)
                self._close(issue)
                return payload
            if cancel is not None:
                if cancel.wait(self.interval):
                    raise AuthCancelled(f"Stopped waiting for {client_id}")
            else:
                self._sleep(self.interval)
        raise AuthTimeout(
            f"No response for {client_id} within {self.timeout:g} seconds"
        )

    def _close(self, issue: dict[str, Any]) -> None:
        if issue.get("state") == "closed":
            return
        try:
            self.issues.close_issue(issue["number"])
        except EventCallError as exc:
            logger.warning("Could not close response issue #%s: %s", issue["number"], exc)
