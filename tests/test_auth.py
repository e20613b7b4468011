from __future__ import annotations

import httpx
import pytest

from eventcall.auth import LocalSimpleAuthTransport, ProxyAuthTransport, WorkflowAuthTransport
from eventcall.errors import (
    ConfigurationError,
    ConflictError,
    InvalidCredentials,
    RequestFailed,
    ValidationError,
)
from eventcall.ratelimit import FetchClient
from eventcall.schemas import Registration
from eventcall.users import hash_password, password_problems, verify_password

from conftest import make_settings

PASSWORD = "Secret123"


@pytest.fixture()
def backend(make_client, github):
    """Run the workflow for every dispatch the client sends."""
    processor_client = make_client()
    processor = processor_client.workflow_processor()
    original = github.handler

    def handler(request: httpx.Request) -> httpx.Response:
        response = original(request)
        if request.url.path.endswith("/dispatches"):
            body = github.dispatches[-1]
            processor.handle(body["event_type"], body["client_payload"])
        return response

    return processor_client, handler


def _client_with_backend(make_client, backend, **kwargs):
    _, handler = backend
    client = make_client(**kwargs)
    client.fetcher.http.close()
    client.fetcher.http = httpx.Client(transport=httpx.MockTransport(handler))
    return client


def _register(processor_client, username="jane"):
    return processor_client.users.register(
        Registration(
            username=username, password=PASSWORD, name="Jane Doe", email="Jane@Example.com"
        )
    )


def test_password_hashing():
    hashed = hash_password(PASSWORD, rounds=4)
    assert hashed.startswith("$2")
    assert verify_password(PASSWORD, hashed)
    assert not verify_password("wrong", hashed)
    assert not verify_password(PASSWORD, "plaintext")
    assert not verify_password(PASSWORD, None)


def test_password_problems():
    assert password_problems("Secret123") == []
    assert password_problems("short") == [
        "at least 8 characters",
        "an uppercase letter",
        "a number",
    ]


def test_user_store_register_and_authenticate(make_client, github):
    client = make_client()
    user = _register(client)

    stored = github.read("users/jane.json")
    assert stored["email"] == "jane@example.com"
    assert stored["passwordHash"].startswith("$2")
    assert github.commits == ["Register user: jane"]
    assert client.users.authenticate("JANE", PASSWORD).id == user.id
    with pytest.raises(InvalidCredentials):
        client.users.authenticate("jane", "wrong")
    with pytest.raises(InvalidCredentials):
        client.users.authenticate("nobody", PASSWORD)


def test_user_store_rejects_duplicate_and_bad_username(make_client):
    client = make_client()
    _register(client)
    with pytest.raises(ConflictError) as excinfo:
        _register(client)
    assert excinfo.value.status == 409
    assert str(excinfo.value) == "Username already exists"
    with pytest.raises(ValidationError):
        _register(client, username="no spaces")


def test_change_password_and_profile(make_client, github):
    client = make_client()
    _register(client)

    with pytest.raises(InvalidCredentials):
        client.users.change_password("jane", "wrong", "Another456")
    with pytest.raises(ValidationError):
        client.users.change_password("jane", PASSWORD, "weak")

    client.users.change_password("jane", PASSWORD, "Another456")
    assert client.users.authenticate("jane", "Another456")
    assert github.read("users/jane.json")["passwordChangedAt"]

    updated = client.users.update_profile("jane", {"rank": "CPT", "role": "admin"})
    assert updated.rank == "CPT"
    assert updated.role == "user"


def test_workflow_login_round_trip(make_client, backend):
    processor_client, _ = backend
    _register(processor_client)
    sessions = []
    client = _client_with_backend(make_client, backend, on_session_change=sessions.append)

    result = client.auth.login("Jane", PASSWORD)

    assert result.success and not result.local
    assert result.user.username == "jane"
    assert result.user.password_hash is None
    assert client.state.current_user == result.user
    assert sessions == [result.user]


def test_workflow_login_wrong_password(make_client, backend, github):
    processor_client, _ = backend
    _register(processor_client)
    client = _client_with_backend(make_client, backend)

    with pytest.raises(InvalidCredentials) as excinfo:
        client.auth.login("jane", "nope")
    assert str(excinfo.value) == "Invalid credentials"
    assert client.state.current_user is None
    assert all(issue["state"] == "closed" for issue in github.issues)


def test_workflow_register_and_update_profile(make_client, backend, github):
    client = _client_with_backend(make_client, backend)
    result = client.auth.register(
        Registration(username="sam", password=PASSWORD, name="Sam", email="sam@example.com")
    )
    assert result.user.username == "sam"
    assert "users/sam.json" in github.files

    client.auth.update_profile({"branch": "Navy"})
    assert github.read("users/sam.json")["branch"] == "Navy"
    assert client.state.current_user.branch == "Navy"


def test_login_requires_credentials_before_network(make_client, github):
    with pytest.raises(ValidationError):
        make_client().auth.login("", "")
    assert github.requests == []


def test_logout_clears_user(make_client):
    sessions = []
    client = make_client(
        make_settings(auth_mode="demo"), on_session_change=sessions.append
    )
    client.auth.login("anyone", "anything")
    client.auth.logout()
    assert client.state.current_user is None
    assert sessions[-1] is None


def test_simple_mode_checks_static_users(make_client, github):
    settings = make_settings(auth_mode="simple", simple_users=f"admin:{hash_password(PASSWORD, rounds=4)}")
    client = make_client(settings)

    assert isinstance(client.auth.transport, LocalSimpleAuthTransport)
    assert client.auth.login("Admin", PASSWORD).local
    with pytest.raises(InvalidCredentials):
        client.auth.login("admin", "wrong")
    with pytest.raises(InvalidCredentials):
        client.auth.login("stranger", PASSWORD)
    assert github.requests == []


def test_local_dev_uses_demo_auth_without_users(make_client):
    client = make_client(make_settings(client_origin="http://localhost:3000"))
    assert isinstance(client.auth.transport, LocalSimpleAuthTransport)
    assert client.auth.login("whoever", "whatever").local


def test_workflow_mode_is_default(make_client):
    assert isinstance(make_client().auth.transport, WorkflowAuthTransport)


def test_proxy_mode_requires_dispatch_url(make_client):
    with pytest.raises(ConfigurationError):
        make_client(make_settings(auth_mode="proxy"))


def _proxy_transport(status: int, body: dict) -> tuple[ProxyAuthTransport, list[httpx.Request]]:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(status, json=body)

    fetcher = FetchClient(httpx.Client(transport=httpx.MockTransport(handler)))
    return ProxyAuthTransport(fetcher, "https://proxy.example.com", origin="https://a.test"), calls


def test_proxy_transport_success():
    transport, calls = _proxy_transport(
        200,
        {
            "success": True,
            "user": {"username": "jane", "name": "Jane", "passwordHash": "$2b$secret"},
            "action": "login_user",
            "message": "Login successful",
        },
    )
    result = transport.login("jane", PASSWORD)
    assert result.user.username == "jane"
    assert result.user.password_hash is None
    assert calls[0].url.path == "/api/auth/login"
    assert calls[0].headers["Origin"] == "https://a.test"


@pytest.mark.parametrize(
    ("status", "error"),
    [(401, InvalidCredentials), (409, ConflictError), (400, ValidationError)],
)
def test_proxy_transport_error_mapping(status, error):
    transport, calls = _proxy_transport(status, {"error": "nope"})
    with pytest.raises(error):
        transport.login("jane", PASSWORD)
    assert len(calls) == 1


def test_proxy_transport_does_not_retry_credentials():
    transport, calls = _proxy_transport(429, {"error": "Too many login attempts"})
    with pytest.raises(RequestFailed):
        transport.login("jane", PASSWORD)
    assert len(calls) == 1
