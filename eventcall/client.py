"""Wiring for the EventCall client components."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

import httpx

from .auth import AuthService, select_auth_transport
from .config import Settings
from .content import GitHubContentStore
from .correlator import AuthResponseCorrelator
from .dispatch import WorkflowDispatchBridge, select_dispatch_transport
from .events import EventRepository
from .github import GitHubClient
from .ratelimit import FetchClient, RateLimiter, RetryConfig
from .rsvp import RSVPSubmissionPipeline, SyncReport, delete_rsvp, process_rsvp_issues
from .schemas import User
from .state import AppState
from .tokens import MemorySessionStore, SessionStore, TokenRotationPolicy
from .users import UserStore
from .workflows import WorkflowProcessor


class EventCallClient:
    """Builds every component once from settings.

    Transports are selected here and never re-evaluated per call. The data
    repository holds the JSON files; issues and dispatches go to the
    workflow repository.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        http: httpx.Client | None = None,
        session_store: SessionStore | None = None,
        state: AppState | None = None,
        on_session_change: Callable[[User | None], None] | None = None,
        on_token_expired: Callable[[], None] | None = None,
        pending_queue: Callable[[dict[str, Any], str], Any] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.state = state or AppState()
        retry = RetryConfig(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            jitter=settings.retry_jitter,
        )
        self.fetcher = FetchClient(
            http or httpx.Client(timeout=settings.request_timeout_seconds),
            limiter=RateLimiter(concurrency=settings.batch_concurrency, sleep=sleep),
            retry=retry,
            sleep=sleep,
        )
        self.tokens = TokenRotationPolicy(
            settings.token_list,
            fallback_token=settings.github_token or None,
            store=session_store or MemorySessionStore(),
            expires_at=settings.token_expiry,
            on_expired=on_token_expired,
            index_key=settings.token_index_key,
        )
        self.data_repo = GitHubClient(
            self.fetcher,
            owner=settings.github_owner,
            repo=settings.data_repo,
            tokens=self.tokens,
            api_base=settings.github_api_base,
        )
        self.workflow_repo = GitHubClient(
            self.fetcher,
            owner=settings.github_owner,
            repo=settings.github_repo,
            tokens=self.tokens,
            api_base=settings.github_api_base,
        )
        self.content = GitHubContentStore(
            self.data_repo,
            branch=settings.github_branch,
            batch_concurrency=settings.batch_concurrency,
        )
        self.bridge = WorkflowDispatchBridge(
            select_dispatch_transport(settings, fetcher=self.fetcher, github=self.workflow_repo)
        )
        self.correlator = AuthResponseCorrelator(
            self.bridge,
            self.workflow_repo,
            timeout=settings.poll_timeout_seconds,
            interval=settings.poll_interval_seconds,
            clock=clock,
            sleep=sleep,
        )
        self.auth = AuthService(
            select_auth_transport(
                settings, bridge=self.bridge, correlator=self.correlator, fetcher=self.fetcher
            ),
            self.state,
            on_session_change=on_session_change,
        )
        self.events = EventRepository(self.content, self.bridge, self.state)
        self.rsvps = RSVPSubmissionPipeline(
            self.content,
            self.bridge,
            self.workflow_repo,
            state=self.state,
            on_failure=pending_queue,
        )
        self.users = UserStore(self.content)

    def workflow_processor(self) -> WorkflowProcessor:
        return WorkflowProcessor(self.content, self.workflow_repo, self.users, self.events)

    def sync_rsvp_issues(self) -> SyncReport:
        return process_rsvp_issues(self.content, self.workflow_repo)

    def delete_rsvp(self, event_id: str, email: str) -> bool:
        removed = delete_rsvp(self.content, event_id, email)
        self.state.remove_rsvp(event_id, email)
        return removed

    def close(self) -> None:
        self.fetcher.close()

    def __enter__(self) -> EventCallClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
