"""Authentication transports and the service that owns the signed-in user."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from .config import Settings
from .correlator import AuthResponseCorrelator
from .dispatch import WorkflowDispatchBridge
from .errors import (
    ConfigurationError,
    ConflictError,
    GitHubAPIError,
    InvalidCredentials,
    MalformedResponse,
    ValidationError,
)
from .ratelimit import FetchClient, RetryConfig
from .schemas import Registration, User, parse_document
from .state import AppState
from .users import PROFILE_FIELDS, hash_password, normalize_username, verify_password

logger = logging.getLogger(__name__)

# Credentials are never replayed automatically.
SINGLE_ATTEMPT = RetryConfig(max_attempts=1, jitter=False)


@dataclass
class AuthResult:
    success: bool
    user: User | None
    action: str
    message: str = ""
    local: bool = False

    @classmethod
    def from_response(cls, data: Any, *, action: str) -> AuthResult:
        if not isinstance(data, dict):
            raise MalformedResponse(f"{action} response is not a JSON object")
        if not data.get("success"):
            raise InvalidCredentials(
                str(data.get("error") or data.get("message") or "Authentication failed")
            )
        user_data = dict(data.get("user") or {})
        user_data.pop("passwordHash", None)
        return cls(
            success=True,
            user=parse_document(User, user_data) if user_data else None,
            action=str(data.get("action") or action),
            message=str(data.get("message") or ""),
        )


class AuthTransport(Protocol):
    name: str

    def login(self, username: str, password: str) -> AuthResult: ...

    def register(self, registration: Registration) -> AuthResult: ...

    def update_profile(self, user: User, updates: dict[str, Any]) -> AuthResult: ...


class WorkflowAuthTransport:
    """Dispatch an auth action and wait for the workflow's response issue."""

    name = "workflow"

    def __init__(
        self,
        correlator: AuthResponseCorrelator,
        *,
        cancel: threading.Event | None = None,
    ) -> None:
        self.correlator = correlator
        self.cancel = cancel

    def _request(self, action: str, payload: dict[str, Any], purpose: str) -> AuthResult:
        data = self.correlator.request(action, payload, purpose=purpose, cancel=self.cancel)
        return AuthResult.from_response(data, action=action)

    def login(self, username: str, password: str) -> AuthResult:
        return self._request(
            "login_user",
            {"username": normalize_username(username), "password": password},
            "login",
        )

    def register(self, registration: Registration) -> AuthResult:
        payload = registration.model_dump()
        payload["username"] = normalize_username(registration.username)
        return self._request("register_user", payload, "register")

    def update_profile(self, user: User, updates: dict[str, Any]) -> AuthResult:
        return self._request(
            "update_profile", {"username": user.username, "updates": updates}, "profile"
        )


class ProxyAuthTransport:
    """Fast-path login and registration served by the proxy."""

    name = "proxy"

    def __init__(
        self,
        fetcher: FetchClient,
        base_url: str,
        *,
        origin: str = "",
        profile_transport: AuthTransport | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.base_url = base_url.rstrip("/")
        self.origin = origin
        self.profile_transport = profile_transport

    def _post(self, path: str, body: dict[str, Any], action: str) -> AuthResult:
        headers = {"Content-Type": "application/json"}
        if self.origin:
            headers["Origin"] = self.origin
        response = self.fetcher.fetch(
            "POST",
            f"{self.base_url}{path}",
            context=f"Proxy {action}",
            retry=SINGLE_ATTEMPT,
            headers=headers,
            json=body,
        )
        try:
            data = response.json()
        except ValueError:
            data = {}
        error = str(data.get("error") or response.reason_phrase) if isinstance(data, dict) else ""
        if response.status_code == 401:
            raise InvalidCredentials(error or "Invalid credentials")
        if response.status_code == 409:
            raise ConflictError(409, error)
        if response.status_code == 400:
            raise ValidationError(error)
        if not response.is_success:
            raise GitHubAPIError(response.status_code, error)
        return AuthResult.from_response(data, action=action)

    def login(self, username: str, password: str) -> AuthResult:
        return self._post(
            "/api/auth/login", {"username": username, "password": password}, "login_user"
        )

    def register(self, registration: Registration) -> AuthResult:
        return self._post("/api/auth/register", registration.model_dump(), "register_user")

    def change_password(self, username: str, current: str, new: str) -> AuthResult:
        return self._post(
            "/api/auth/change-password",
            {"username": username, "currentPassword": current, "newPassword": new},
            "change_password",
        )

    def update_profile(self, user: User, updates: dict[str, Any]) -> AuthResult:
        if self.profile_transport is None:
            raise ConfigurationError("Profile updates need a workflow transport")
        return self.profile_transport.update_profile(user, updates)


class LocalSimpleAuthTransport:
    """Credentials checked against a static list, or anything in demo mode.

    No network call is made. Results are marked ``local``.
    """

    name = "local_simple"

    def __init__(self, users: Mapping[str, str] | None = None, *, demo: bool = False) -> None:
        self.users = {normalize_username(name): value for name, value in (users or {}).items()}
        self.demo = demo

    def login(self, username: str, password: str) -> AuthResult:
        username = normalize_username(username)
        if not self.demo and not verify_password(password, self.users.get(username)):
            raise InvalidCredentials("Invalid credentials")
        user = User(username=username or "demo", name=username or "Demo User")
        return AuthResult(True, user, "login_user", "Login successful", local=True)

    def register(self, registration: Registration) -> AuthResult:
        username = normalize_username(registration.username)
        if username in self.users:
            raise ConflictError(409, "Username already exists")
        self.users[username] = hash_password(registration.password)
        user = User(
            username=username,
            name=registration.name,
            email=registration.email.strip().lower(),
            branch=registration.branch,
            rank=registration.rank,
        )
        return AuthResult(True, user, "register_user", "Registration successful", local=True)

    def update_profile(self, user: User, updates: dict[str, Any]) -> AuthResult:
        allowed = {key: value for key, value in updates.items() if key in PROFILE_FIELDS}
        return AuthResult(
            True, user.model_copy(update=allowed), "update_profile", "Profile updated", local=True
        )


def select_auth_transport(
    settings: Settings,
    *,
    bridge: WorkflowDispatchBridge,
    correlator: AuthResponseCorrelator,
    fetcher: FetchClient,
) -> AuthTransport:
    users = settings.simple_user_hashes
    if settings.auth_mode in ("simple", "demo"):
        return LocalSimpleAuthTransport(users, demo=settings.auth_mode == "demo")
    if bridge.is_local:
        # A skipped dispatch never produces a response issue to wait for.
        logger.warning("Local development dispatch is active, using local authentication")
        return LocalSimpleAuthTransport(users, demo=not users)
    workflow = WorkflowAuthTransport(correlator)
    if settings.auth_mode == "proxy":
        if not settings.dispatch_url:
            raise ConfigurationError("auth_mode 'proxy' requires dispatch_url")
        return ProxyAuthTransport(
            fetcher,
            settings.dispatch_url,
            origin=settings.client_origin,
            profile_transport=workflow,
        )
    return workflow


class AuthService:
    def __init__(
        self,
        transport: AuthTransport,
        state: AppState,
        *,
        on_session_change: Callable[[User | None], None] | None = None,
    ) -> None:
        self.transport = transport
        self.state = state
        self.on_session_change = on_session_change

    def _set_user(self, user: User | None) -> None:
        self.state.current_user = user
        if self.on_session_change is not None:
            self.on_session_change(user)

    def login(self, username: str, password: str) -> AuthResult:
        if not normalize_username(username) or not password:
            raise ValidationError("Username and password are required")
        result = self.transport.login(username, password)
        self._set_user(result.user)
        return result

    def register(self, registration: Registration) -> AuthResult:
        result = self.transport.register(registration)
        self._set_user(result.user)
        return result

    def update_profile(self, updates: dict[str, Any]) -> AuthResult:
        user = self.state.current_user
        if user is None:
            raise InvalidCredentials("Sign in before updating your profile")
        result = self.transport.update_profile(user, updates)
        if result.user is not None:
            self._set_user(result.user)
        return result

    def logout(self) -> None:
        self._set_user(None)
