"""Rate-limit aware HTTP fetching with retry, backoff and bounded batches."""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

import httpx
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
)

from .errors import RateLimited, RequestFailed

logger = logging.getLogger(__name__)

DEFAULT_BATCH_CONCURRENCY = 4


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 1.0
    jitter: bool = True


def backoff_delay(retry_number: int, config: RetryConfig, rng: Any = random) -> float:
    """Delay in seconds before retry ``retry_number`` (1-indexed)."""

    delay = config.base_delay * 2 ** (retry_number - 1)
    if config.jitter:
        delay += rng.random() * (config.base_delay / 2)
    return delay


def is_rate_limited(response: httpx.Response) -> bool:
    if response.status_code == 429:
        return True
    return (
        response.status_code == 403
        and response.headers.get("x-ratelimit-remaining") == "0"
    )


def endpoint_key_for(url: str) -> str:
    if "/issues" in url:
        return "github_issues"
    if "/contents/" in url or "/git/trees/" in url or "/git/blobs/" in url:
        return "github_contents"
    if "/dispatches" in url:
        return "github_dispatch"
    return "default"


def fetch_with_retry(
    send: Callable[[], httpx.Response],
    config: RetryConfig,
    context: str,
    *,
    sleep: Callable[[float], None] = time.sleep,
    rng: Any = random,
    on_response: Callable[[httpx.Response], None] | None = None,
) -> httpx.Response:
    """Call ``send`` until it yields a response that is not rate limited.

    Transport failures and rate-limited responses are retried with
    exponential backoff. Any other response, successful or not, is returned
    to the caller unchanged.
    """

    def wait(state: RetryCallState) -> float:
        return backoff_delay(state.attempt_number, config, rng)

    retrying = Retrying(
        stop=stop_after_attempt(max(1, config.max_attempts)),
        wait=wait,
        retry=retry_if_exception_type((httpx.TransportError, RateLimited)),
        sleep=sleep,
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=False,
    )
    response: httpx.Response | None = None
    try:
        for attempt in retrying:
            with attempt:
                response = send()
                if on_response is not None:
                    on_response(response)
                if is_rate_limited(response):
                    raise RateLimited(
                        response.status_code,
                        f"Rate limited (HTTP {response.status_code})",
                    )
    except RetryError as exc:
        cause = exc.last_attempt.exception()
        attempts = exc.last_attempt.attempt_number
        logger.error("%s failed after %s attempts: %s", context, attempts, cause)
        raise RequestFailed(
            f"{context} failed after {attempts} attempts: {cause}",
            context=context,
            attempts=attempts,
            cause=cause,
        ) from cause
    assert response is not None
    return response


@dataclass
class EndpointStats:
    requests: int = 0
    rate_limited: int = 0
    failures: int = 0
    remaining: int | None = None


class RateLimiter:
    """Per-endpoint bookkeeping around :func:`fetch_with_retry`.

    Each endpoint key gets its own concurrency bound and counters. The retry
    algorithm is exactly the one used without a limiter.
    """

    def __init__(
        self,
        *,
        concurrency: int = DEFAULT_BATCH_CONCURRENCY,
        sleep: Callable[[float], None] = time.sleep,
        rng: Any = random,
    ) -> None:
        self._concurrency = concurrency
        self._sleep = sleep
        self._rng = rng
        self._lock = threading.Lock()
        self._semaphores: dict[str, threading.BoundedSemaphore] = {}
        self.stats: dict[str, EndpointStats] = {}

    def _endpoint(self, key: str) -> tuple[threading.BoundedSemaphore, EndpointStats]:
        with self._lock:
            if key not in self._semaphores:
                self._semaphores[key] = threading.BoundedSemaphore(self._concurrency)
                self.stats[key] = EndpointStats()
            return self._semaphores[key], self.stats[key]

    def fetch(
        self,
        send: Callable[[], httpx.Response],
        *,
        endpoint_key: str,
        retry: RetryConfig,
        context: str,
    ) -> httpx.Response:
        semaphore, stats = self._endpoint(endpoint_key)

        def observe(response: httpx.Response) -> None:
            with self._lock:
                stats.requests += 1
                if is_rate_limited(response):
                    stats.rate_limited += 1
                remaining = response.headers.get("x-ratelimit-remaining")
                if remaining is not None and remaining.isdigit():
                    stats.remaining = int(remaining)

        with semaphore:
            try:
                return fetch_with_retry(
                    send,
                    retry,
                    context,
                    sleep=self._sleep,
                    rng=self._rng,
                    on_response=observe,
                )
            except RequestFailed:
                with self._lock:
                    stats.failures += 1
                raise


@dataclass
class BatchRequest:
    method: str
    url: str
    context: str = "Batch request"
    kwargs: dict[str, Any] = field(default_factory=dict)


@dataclass
class BatchResult:
    request: BatchRequest
    response: httpx.Response | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.response is not None and self.response.is_success


class FetchClient:
    """Entry point every GitHub-facing component uses to make requests."""

    def __init__(
        self,
        http: httpx.Client,
        *,
        limiter: RateLimiter | None = None,
        retry: RetryConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Any = random,
    ) -> None:
        self.http = http
        self.limiter = limiter
        self.retry = retry or RetryConfig()
        self._sleep = sleep
        self._rng = rng

    def fetch(
        self,
        method: str,
        url: str,
        *,
        endpoint_key: str | None = None,
        retry: RetryConfig | None = None,
        context: str = "API call",
        **kwargs: Any,
    ) -> httpx.Response:
        retry = retry or self.retry
        endpoint_key = endpoint_key or endpoint_key_for(url)

        def send() -> httpx.Response:
            return self.http.request(method, url, **kwargs)

        if self.limiter is not None:
            return self.limiter.fetch(
                send, endpoint_key=endpoint_key, retry=retry, context=context
            )
        logger.debug("No rate limiter registered, retrying %s directly", context)
        return fetch_with_retry(send, retry, context, sleep=self._sleep, rng=self._rng)

    def batch_fetch(
        self,
        requests: Iterable[BatchRequest],
        *,
        concurrency: int = DEFAULT_BATCH_CONCURRENCY,
    ) -> list[BatchResult]:
        """Run ``requests`` with at most ``concurrency`` in flight.

        Results come back in input order; a failing item never aborts the
        rest of the batch.
        """

        items = list(requests)
        if not items:
            return []

        def run(item: BatchRequest) -> BatchResult:
            try:
                response = self.fetch(
                    item.method, item.url, context=item.context, **item.kwargs
                )
            except Exception as exc:  # collected per item
                logger.warning("%s failed: %s", item.context, exc)
                return BatchResult(request=item, error=exc)
            return BatchResult(request=item, response=response)

        workers = max(1, min(concurrency, len(items)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(run, items))

    def close(self) -> None:
        self.http.close()
