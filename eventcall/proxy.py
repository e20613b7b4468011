"""FastAPI proxy: CSRF-protected dispatch, account handlers and admin reads."""

from __future__ import annotations

import logging
import random
import secrets
import threading
import time
from collections import deque
from collections.abc import Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from functools import partial
from typing import Any

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import __version__
from .config import Settings
from .config import settings as default_settings
from .content import GitHubContentStore
from .csrf import (
    CSRF_CLIENT_HEADER,
    CSRF_EXPIRES_HEADER,
    CSRF_TOKEN_HEADER,
    CSRFError,
    issue_token,
    origin_allowed,
    verify_token,
)
from .dispatch import valid_event_type
from .errors import (
    ConfigurationError,
    EventCallError,
    GitHubAPIError,
    InvalidCredentials,
    RequestFailed,
    ValidationError,
)
from .github import GitHubClient, response_message
from .ratelimit import FetchClient, RateLimiter, RetryConfig
from .rsvp import iter_rsvp_records, process_rsvp_issues
from .schemas import Registration, User
from .scheduler import start_scheduler, stop_scheduler
from .tokens import TokenRotationPolicy
from .users import (
    MAX_PASSWORD_LENGTH,
    USERNAME_PATTERN,
    UserStore,
    normalize_username,
    password_problems,
)

# Use uvicorn's error logger so messages get the level prefix in the default log
# format.
logger = logging.getLogger("uvicorn.error")

PROXY_USER_AGENT = "EventCall-Proxy"
ADMIN_USER_HEADER = "X-Username"
RESET_LIMIT_MESSAGE = "Too many reset requests. Please try again later."
RESET_REQUESTED_MESSAGE = "If an account exists, a reset link will be sent."
REQUIRED_SETTINGS = {
    "github_token": "GITHUB_TOKEN",
    "github_owner": "REPO_OWNER",
    "github_repo": "REPO_NAME",
}


class ProxyError(Exception):
    def __init__(self, status: int, message: str, *, headers: dict[str, str] | None = None, **extra: Any) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.headers = headers or {}
        self.extra = extra


class AttemptLimiter:
    """Sliding-window attempt counter keyed by client IP."""

    def __init__(
        self,
        max_attempts: int,
        window: timedelta,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_attempts = max_attempts
        self.window = window.total_seconds()
        self._clock = clock
        self._lock = threading.Lock()
        self._attempts: dict[str, deque[float]] = {}

    def hit(self, key: str) -> int | None:
        """Record an attempt; return seconds to wait when over the limit."""
        now = self._clock()
        with self._lock:
            attempts = self._attempts.setdefault(key, deque())
            while attempts and now - attempts[0] >= self.window:
                attempts.popleft()
            if len(attempts) >= self.max_attempts:
                return max(1, int(self.window - (now - attempts[0])) + 1)
            attempts.append(now)
            return None


@dataclass
class ResetGrant:
    username: str
    email: str
    expires: float


class ResetTokenStore:
    """Single-use password reset tokens held in memory."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._grants: dict[str, ResetGrant] = {}

    def issue(self, user: User, ttl: timedelta) -> str:
        token = secrets.token_hex(32)
        now = self._clock()
        with self._lock:
            self._purge(now)
            self._grants[token] = ResetGrant(
                user.username, user.email.lower(), now + ttl.total_seconds()
            )
        return token

    def redeem(self, token: str) -> ResetGrant:
        with self._lock:
            grant = self._grants.get(token)
            if grant is None:
                raise ProxyError(400, "Invalid or expired reset token")
            if self._clock() > grant.expires:
                del self._grants[token]
                raise ProxyError(400, "Reset token has expired")
            return grant

    def discard(self, token: str) -> None:
        with self._lock:
            self._grants.pop(token, None)

    def _purge(self, now: float) -> None:
        expired = [token for token, grant in self._grants.items() if now > grant.expires]
        for token in expired:
            del self._grants[token]


class LoginPayload(BaseModel):
    username: str = ""
    password: str = ""


class RegisterPayload(BaseModel):
    username: str = ""
    password: str = ""
    name: str = ""
    email: str = ""
    branch: str = ""
    rank: str = ""


class ChangePasswordPayload(BaseModel):
    username: str = ""
    currentPassword: str = ""
    newPassword: str = ""


class ResetRequestPayload(BaseModel):
    username: str = ""
    email: str = ""


class ResetPasswordPayload(BaseModel):
    token: str = ""
    password: str = ""


class DispatchPayload(BaseModel):
    event_type: Any = None
    client_payload: dict[str, Any] = {}


def require_proxy_settings(settings: Settings) -> None:
    missing = [env for key, env in REQUIRED_SETTINGS.items() if not getattr(settings, key)]
    if missing:
        raise ConfigurationError(
            f"Missing required environment variables: {', '.join(missing)}"
        )
    if not settings.allowed_origin_list:
        logger.warning("ALLOWED_ORIGIN is not set; cross-origin browsers will be refused")
    if not settings.csrf_shared_secret:
        logger.warning("CSRF_SHARED_SECRET is not set; /api/csrf and /api/dispatch are disabled")


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


def _limit(limiter: AttemptLimiter, request: Request, message: str) -> None:
    retry_after = limiter.hit(client_ip(request))
    if retry_after is not None:
        raise ProxyError(
            429, message, headers={"Retry-After": str(retry_after)}, retryAfter=retry_after
        )


def create_app(
    settings: Settings | None = None,
    *,
    http: httpx.Client | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> FastAPI:
    """Build the proxy app; raises ConfigurationError when secrets are missing."""

    settings = settings or default_settings
    require_proxy_settings(settings)
    allowed = settings.allowed_origin_list

    fetcher = FetchClient(
        http or httpx.Client(timeout=settings.request_timeout_seconds),
        limiter=RateLimiter(concurrency=settings.batch_concurrency, sleep=sleep),
        retry=RetryConfig(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            jitter=settings.retry_jitter,
        ),
        sleep=sleep,
    )
    tokens = TokenRotationPolicy(fallback_token=settings.github_token)
    workflow_repo = GitHubClient(
        fetcher,
        owner=settings.github_owner,
        repo=settings.github_repo,
        tokens=tokens,
        api_base=settings.github_api_base,
        user_agent=PROXY_USER_AGENT,
    )
    data_repo = GitHubClient(
        fetcher,
        owner=settings.github_owner,
        repo=settings.data_repo,
        tokens=tokens,
        api_base=settings.github_api_base,
        user_agent=PROXY_USER_AGENT,
    )
    content = GitHubContentStore(
        data_repo, branch=settings.github_branch, batch_concurrency=settings.batch_concurrency
    )
    users = UserStore(content)
    login_limiter = AttemptLimiter(5, timedelta(minutes=15))
    register_limiter = AttemptLimiter(3, timedelta(hours=1))
    password_limiter = AttemptLimiter(5, timedelta(hours=1))
    reset_limiter = AttemptLimiter(3, timedelta(hours=1))
    reset_tokens = ResetTokenStore()

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        if settings.enable_scheduler:
            start_scheduler(
                partial(process_rsvp_issues, content, workflow_repo),
                minutes=settings.rsvp_sync_minutes,
            )
        try:
            yield
        finally:
            stop_scheduler()
            fetcher.close()

    app = FastAPI(title="EventCall Proxy", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.users = users
    app.state.workflow_repo = workflow_repo
    app.state.reset_tokens = reset_tokens
    app.state.limiters = {
        "login": login_limiter,
        "register": register_limiter,
        "password": password_limiter,
        "reset": reset_limiter,
    }
    if allowed:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(allowed),
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=[
                "Content-Type",
                CSRF_CLIENT_HEADER,
                CSRF_TOKEN_HEADER,
                CSRF_EXPIRES_HEADER,
                ADMIN_USER_HEADER,
            ],
        )

    def check_origin(request: Request) -> None:
        if not origin_allowed(
            request.headers.get("origin"), request.headers.get("referer"), allowed
        ):
            raise ProxyError(403, "Origin not allowed")

    def require_admin(request: Request) -> User:
        username = normalize_username(request.headers.get(ADMIN_USER_HEADER))
        if not username:
            raise ProxyError(401, "Unauthorized")
        found = users.get(username) if USERNAME_PATTERN.match(username) else None
        if found is None or found[0].role != "admin":
            raise ProxyError(403, "Forbidden")
        return found[0]

    def find_user_for_reset(username: str, email: str) -> User | None:
        username = normalize_username(username)
        found = users.get(username) if USERNAME_PATTERN.match(username) else None
        # Every lookup pays the same random delay, found or not.
        sleep(random.uniform(0.1, 0.3))
        if found is None or found[0].email.lower() != email.strip().lower():
            return None
        return found[0]

    def notify_reset(user: User, reset_url: str) -> None:
        try:
            response = workflow_repo.request(
                "POST",
                "dispatches",
                context="Dispatch password_reset",
                json={
                    "event_type": "password_reset",
                    "client_payload": {
                        "email": user.email,
                        "name": user.name,
                        "resetUrl": reset_url,
                        "expiresIn": "1 hour",
                    },
                },
            )
        except EventCallError as exc:
            logger.warning("Could not trigger the reset email for %s: %s", user.username, exc)
            return
        if not response.is_success:
            logger.warning(
                "Reset email dispatch for %s failed (%s): %s",
                user.username,
                response.status_code,
                response_message(response),
            )

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError):
        return JSONResponse(
            {"error": exc.message, **exc.extra}, status_code=exc.status, headers=exc.headers
        )

    @app.exception_handler(CSRFError)
    async def csrf_error_handler(request: Request, exc: CSRFError):
        logger.warning("Rejected dispatch from %s: %s", client_ip(request), exc.message)
        return JSONResponse({"error": exc.message}, status_code=exc.status)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse({"error": "Invalid request body"}, status_code=400)

    @app.exception_handler(EventCallError)
    async def eventcall_error_handler(request: Request, exc: EventCallError):
        if isinstance(exc, ValidationError):
            status = 400
        elif isinstance(exc, InvalidCredentials):
            status = 401
        elif isinstance(exc, GitHubAPIError):
            status = exc.status
        elif isinstance(exc, RequestFailed):
            status = 503
        else:
            status = 500
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse({"error": str(exc)}, status_code=status)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.exception(
            "Unhandled error while processing %s %s", request.method, request.url.path
        )
        return JSONResponse({"error": "Internal server error"}, status_code=500)

    @app.get("/health")
    def health():
        return {"ok": True}

    @app.get("/api/csrf")
    def csrf_handshake():
        if not settings.csrf_shared_secret:
            raise ProxyError(500, "CSRF not configured")
        return issue_token(settings.csrf_shared_secret, ttl=settings.csrf_ttl).as_dict()

    @app.post("/api/dispatch", dependencies=[Depends(check_origin)])
    def dispatch(request: Request, payload: DispatchPayload):
        if not settings.csrf_shared_secret:
            raise ProxyError(500, "CSRF not configured")
        verify_token(
            request.headers.get(CSRF_CLIENT_HEADER),
            request.headers.get(CSRF_TOKEN_HEADER),
            request.headers.get(CSRF_EXPIRES_HEADER),
            settings.csrf_shared_secret,
        )
        if not valid_event_type(payload.event_type):
            raise ProxyError(400, "Invalid event_type")
        response = workflow_repo.request(
            "POST",
            "dispatches",
            context=f"Dispatch {payload.event_type}",
            json={"event_type": payload.event_type, "client_payload": payload.client_payload},
        )
        if not response.is_success:
            message = response_message(response)
            logger.error("GitHub dispatch failed (%s): %s", response.status_code, message)
            raise ProxyError(response.status_code, message)
        logger.info("Dispatched %s", payload.event_type)
        return {"success": True}

    @app.post("/api/auth/login", dependencies=[Depends(check_origin)])
    def login(request: Request, payload: LoginPayload):
        _limit(login_limiter, request, "Too many login attempts. Please try again later.")
        username = normalize_username(payload.username)
        if not username or not payload.password:
            raise ProxyError(400, "Username and password are required")
        if not USERNAME_PATTERN.match(username):
            raise ProxyError(400, "Invalid username format")
        if len(payload.password) > MAX_PASSWORD_LENGTH:
            raise ProxyError(400, "Password is too long")
        try:
            user = users.authenticate(username, payload.password)
        except InvalidCredentials:
            logger.info("Failed login for %s from %s", username, client_ip(request))
            raise ProxyError(401, "Invalid credentials") from None
        return {
            "success": True,
            "user": user.public(),
            "userId": user.id,
            "username": user.username,
            "action": "login_user",
            "message": "Login successful",
        }

    @app.post("/api/auth/register", dependencies=[Depends(check_origin)])
    def register(request: Request, payload: RegisterPayload):
        _limit(
            register_limiter, request, "Too many registration attempts. Please try again later."
        )
        if not all((payload.username, payload.password, payload.name, payload.email)):
            raise ProxyError(400, "Username, password, name, and email are required")
        if not USERNAME_PATTERN.match(normalize_username(payload.username)):
            raise ProxyError(400, "Invalid username format")
        problems = password_problems(payload.password)
        if problems:
            raise ProxyError(400, "Password must contain " + ", ".join(problems))
        user = users.register(Registration(**payload.model_dump()))
        logger.info("Registered user %s", user.username)
        return {
            "success": True,
            "user": user.public(),
            "userId": user.id,
            "username": user.username,
            "action": "register_user",
            "message": "Registration successful",
        }

    @app.post("/api/auth/change-password", dependencies=[Depends(check_origin)])
    def change_password(request: Request, payload: ChangePasswordPayload):
        _limit(
            password_limiter, request, "Too many password change attempts. Please try again later."
        )
        if not (payload.username and payload.currentPassword and payload.newPassword):
            raise ProxyError(
                400, "Username, current password, and new password are required"
            )
        problems = password_problems(payload.newPassword)
        if problems:
            raise ProxyError(400, "New password must contain " + ", ".join(problems))
        if users.get(payload.username) is None:
            raise ProxyError(400, "User not found")
        try:
            users.change_password(payload.username, payload.currentPassword, payload.newPassword)
        except InvalidCredentials:
            raise ProxyError(401, "Current password is incorrect") from None
        return {"success": True, "message": "Password updated successfully"}

    @app.post("/api/auth/verify-reset", dependencies=[Depends(check_origin)])
    def verify_reset(request: Request, payload: ResetRequestPayload):
        _limit(reset_limiter, request, RESET_LIMIT_MESSAGE)
        if not (payload.username and payload.email):
            raise ProxyError(400, "Username and email are required")
        user = find_user_for_reset(payload.username, payload.email)
        if user is None:
            logger.info("Reset verification failed for %s", payload.username)
            raise ProxyError(
                400, "Username and email do not match our records", success=False
            )
        token = reset_tokens.issue(user, timedelta(minutes=15))
        logger.info("Reset token issued for %s", user.username)
        return {
            "success": True,
            "verified": True,
            "token": token,
            "message": "Identity verified. You can now reset your password.",
        }

    @app.post("/api/auth/request-reset", dependencies=[Depends(check_origin)])
    def request_reset(request: Request, payload: ResetRequestPayload):
        _limit(reset_limiter, request, RESET_LIMIT_MESSAGE)
        if not (payload.username and payload.email):
            raise ProxyError(400, "Username and email are required")
        user = find_user_for_reset(payload.username, payload.email)
        if user is None:
            logger.info("Reset request failed for %s", payload.username)
        else:
            token = reset_tokens.issue(user, timedelta(hours=1))
            origin = request.headers.get("origin") or (allowed[0] if allowed else "")
            notify_reset(user, f"{origin}?reset={token}")
        return {"success": True, "message": RESET_REQUESTED_MESSAGE}

    @app.post("/api/auth/reset-password", dependencies=[Depends(check_origin)])
    def reset_password(payload: ResetPasswordPayload):
        if not (payload.token and payload.password):
            raise ProxyError(400, "Token and password are required")
        problems = password_problems(payload.password)
        if problems:
            raise ProxyError(400, "Password must contain " + ", ".join(problems))
        grant = reset_tokens.redeem(payload.token)
        users.reset_password(grant.username, payload.password)
        reset_tokens.discard(payload.token)
        logger.info("Password reset for %s", grant.username)
        return {
            "success": True,
            "message": "Password has been reset successfully. You can now log in.",
        }

    @app.get("/api/admin/users", dependencies=[Depends(require_admin)])
    def admin_users():
        return [user.public() for user in users.list_users()]

    @app.get("/api/admin/dashboard-data", dependencies=[Depends(require_admin)])
    def admin_dashboard_data():
        events = list(content.load_json_files("events/").values())
        files = content.load_json_files("rsvps/")
        return {"events": events, "rsvps": [record for _, _, record in iter_rsvp_records(files)]}

    return app
