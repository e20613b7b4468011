"""Shared pytest fixtures for EventCall."""

from __future__ import annotations

import dataclasses
import hashlib
import itertools
import json
import os
import sys
import tempfile
from pathlib import Path
from typing import Any
from urllib.parse import unquote

import httpx
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Settings are loaded at import time; keep the default cache out of the tree.
os.environ.setdefault("EVENTCALL_BASE_DIR", tempfile.mkdtemp(prefix="eventcall-tests-"))

from eventcall import config, database  # noqa: E402
from eventcall.client import EventCallClient  # noqa: E402
from eventcall.content import decode_content, encode_content  # noqa: E402
from eventcall.models import Base  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def configure_in_memory_db():
    """Reuse a single in-memory SQLite database for fast, isolated tests."""

    engine = database.configure("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    yield
    database.SessionLocal.remove()


@pytest.fixture(autouse=True)
def clean_database():
    """Reset all tables between tests to guarantee isolation."""

    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield


def _json(status: int, data: Any = None, headers: dict[str, str] | None = None) -> httpx.Response:
    return httpx.Response(status, json=data if data is not None else {}, headers=headers)


class FakeGitHub:
    """In-memory stand-in for the parts of the GitHub REST API EventCall uses.

    ``files`` maps a repository path to ``(value, sha)``. Responses queued in
    ``failures`` under ``(METHOD, path fragment)`` are served before the
    normal handling; an exception in the queue is raised instead.
    """

    def __init__(self) -> None:
        self.files: dict[str, tuple[Any, str]] = {}
        self.issues: list[dict[str, Any]] = []
        self.dispatches: list[dict[str, Any]] = []
        self.commits: list[str] = []
        self.requests: list[httpx.Request] = []
        self.failures: dict[tuple[str, str], list[httpx.Response | Exception]] = {}
        self.dispatch_status = 204
        self.rate_limit_remaining: str | None = None
        self._shas = itertools.count(1)
        self._issue_numbers = itertools.count(1)

    # helpers used by tests

    def seed_file(self, path: str, value: Any) -> str:
        sha = self._new_sha(value)
        self.files[path] = (value, sha)
        return sha

    def read(self, path: str) -> Any:
        return self.files[path][0]

    def fail(self, method: str, fragment: str, *responses: httpx.Response | Exception) -> None:
        self.failures.setdefault((method, fragment), []).extend(responses)

    def add_issue(
        self, title: str, body: str, labels: list[str] | tuple[str, ...] = (), state: str = "open"
    ) -> dict[str, Any]:
        number = next(self._issue_numbers)
        issue = {
            "number": number,
            "title": title,
            "body": body,
            "state": state,
            "labels": [{"name": label} for label in labels],
            "html_url": f"https://github.com/acme/EventCall/issues/{number}",
        }
        self.issues.append(issue)
        return issue

    def calls(self, method: str, fragment: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and fragment in r.url.path]

    def _new_sha(self, value: Any) -> str:
        digest = hashlib.sha1(json.dumps(value, sort_keys=True).encode()).hexdigest()
        return f"{digest[:30]}{next(self._shas):010d}"

    # transport

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for (method, fragment), queue in self.failures.items():
            if queue and request.method == method and fragment in request.url.path:
                item = queue.pop(0)
                if isinstance(item, Exception):
                    raise item
                return item

        parts = request.url.path.strip("/").split("/")
        if len(parts) < 4 or parts[0] != "repos":
            return _json(404, {"message": "Not Found"})
        rest = parts[3:]
        headers = {}
        if self.rate_limit_remaining is not None:
            headers["x-ratelimit-remaining"] = self.rate_limit_remaining

        if rest[0] == "contents":
            return self._contents(request, unquote("/".join(rest[1:])), headers)
        if rest[:2] == ["git", "trees"]:
            tree = [
                {"path": path, "type": "blob", "sha": sha}
                for path, (_, sha) in sorted(self.files.items())
            ]
            return _json(200, {"tree": tree, "truncated": False}, headers)
        if rest[:2] == ["git", "blobs"]:
            for value, sha in self.files.values():
                if sha == rest[2]:
                    return _json(200, {"content": encode_content(value), "encoding": "base64"}, headers)
            return _json(404, {"message": "Not Found"})
        if rest[0] == "issues":
            return self._issues(request, rest, headers)
        if rest[0] == "dispatches" and request.method == "POST":
            self.dispatches.append(json.loads(request.content))
            if self.dispatch_status >= 400:
                return _json(self.dispatch_status, {"message": "Not Found"})
            return httpx.Response(self.dispatch_status)
        return _json(404, {"message": "Not Found"})

    def _contents(self, request: httpx.Request, path: str, headers: dict[str, str]) -> httpx.Response:
        stored = self.files.get(path)
        if request.method == "GET":
            if stored is None:
                return _json(404, {"message": "Not Found"})
            value, sha = stored
            return _json(
                200, {"path": path, "sha": sha, "content": encode_content(value)}, headers
            )
        body = json.loads(request.content)
        if request.method == "PUT":
            if stored is not None and "sha" not in body:
                return _json(422, {"message": 'Invalid request.\n\n"sha" wasn\'t supplied.'})
            if stored is not None and body["sha"] != stored[1]:
                return _json(409, {"message": f"{path} does not match {body['sha']}"})
            value = decode_content(body["content"])
            sha = self.seed_file(path, value)
            self.commits.append(body["message"])
            return _json(
                201 if stored is None else 200,
                {"content": {"path": path, "sha": sha}, "commit": {"sha": f"commit-{sha}"}},
                headers,
            )
        if request.method == "DELETE":
            if stored is None:
                return _json(404, {"message": "Not Found"})
            if body.get("sha") != stored[1]:
                return _json(409, {"message": f"{path} does not match"})
            del self.files[path]
            self.commits.append(body["message"])
            return _json(200, {"commit": {"sha": "commit-delete"}}, headers)
        return _json(405, {"message": "Method Not Allowed"})

    def _issues(self, request: httpx.Request, rest: list[str], headers: dict[str, str]) -> httpx.Response:
        if len(rest) == 1 and request.method == "GET":
            state = request.url.params.get("state", "open")
            wanted = {
                label for label in request.url.params.get("labels", "").split(",") if label
            }
            found = [
                issue
                for issue in self.issues
                if (state == "all" or issue["state"] == state)
                and wanted <= {label["name"] for label in issue["labels"]}
            ]
            found.sort(key=lambda issue: issue["number"], reverse=True)
            return _json(200, found, headers)
        if len(rest) == 1 and request.method == "POST":
            body = json.loads(request.content)
            issue = self.add_issue(body["title"], body["body"], body.get("labels", []))
            return _json(201, issue, headers)
        if len(rest) == 2 and request.method == "PATCH":
            number = int(rest[1])
            body = json.loads(request.content)
            for issue in self.issues:
                if issue["number"] == number:
                    if "state" in body:
                        issue["state"] = body["state"]
                    if "labels" in body:
                        issue["labels"] = [{"name": label} for label in body["labels"]]
                    return _json(200, issue, headers)
            return _json(404, {"message": "Not Found"})
        return _json(404, {"message": "Not Found"})


def make_settings(**overrides: Any) -> config.Settings:
    values: dict[str, Any] = {
        "github_owner": "acme",
        "github_repo": "EventCall",
        "data_repo": "EventCall-Data",
        "github_branch": "main",
        "github_api_base": "https://api.github.test",
        "github_token": "test-token",
        "github_tokens": "",
        "token_expires_at": "",
        "dispatch_url": "",
        "force_proxy": False,
        "client_origin": "https://events.example.com",
        "force_backend_in_dev": False,
        "auth_mode": "workflow",
        "simple_users": "",
        "poll_timeout_seconds": 5.0,
        "poll_interval_seconds": 1.0,
        "retry_max_attempts": 3,
        "retry_base_delay": 1.0,
        "retry_jitter": False,
        "csrf_shared_secret": "shared-secret",
        "allowed_origins": "https://events.example.com",
        "enable_scheduler": False,
    }
    values.update(overrides)
    return dataclasses.replace(config.settings, **values)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture()
def github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def make_client(github, clock):
    clients: list[EventCallClient] = []

    def factory(settings: config.Settings | None = None, **kwargs: Any) -> EventCallClient:
        client = EventCallClient(
            settings or make_settings(),
            http=httpx.Client(transport=httpx.MockTransport(github.handler)),
            sleep=clock.sleep,
            clock=clock,
            **kwargs,
        )
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.close()
