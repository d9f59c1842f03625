"""
Concurrency-bounded, rate-limit-aware executor for text-understanding calls.

A semaphore bounds in-flight calls. Rate-limit failures are retried after a
wait taken from provider hints when present, otherwise from an internal
backoff counter that grows faster for token exhaustion than for plain request
throttling. Every other failure propagates immediately.
"""

import asyncio
import random
import re
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from app.config import settings
from app.errors import RateLimitExhausted, UpstreamRateLimited
from app.observability.metrics import (
    llm_inflight,
    llm_rate_limit_retries_total,
    llm_rate_limit_wait_seconds,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]

TOKEN_BACKOFF_GROWTH = 2.0
RATE_LIMIT_BACKOFF_GROWTH = 1.5

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_reset_window(value: Optional[str]) -> Optional[float]:
    """
    Parse a provider reset hint into seconds.

    Accepts compound durations ("6m0s", "1h2m3.5s", "20ms") and bare
    numbers, which are taken as seconds. Returns None when unparseable.
    """
    if value is None:
        return None
    text = str(value).strip().lower()
    if not text:
        return None

    try:
        return max(float(text), 0.0)
    except ValueError:
        pass

    parts = _DURATION_PART.findall(text)
    if not parts or "".join(n + u for n, u in parts) != text:
        return None
    return sum(float(n) * _UNIT_SECONDS[u] for n, u in parts)


class RateLimitedExecutor:
    """
    Runs coroutine factories under a concurrency bound with rate-limit retries.

    One instance per process (or per test). All timing goes through the
    injected sleep coroutine and random generator so behaviour is
    deterministic under test.
    """

    def __init__(
        self,
        max_concurrency: Optional[int] = None,
        max_attempts: Optional[int] = None,
        base_backoff: Optional[float] = None,
        rate_limit_cap: Optional[float] = None,
        token_cap: Optional[float] = None,
        max_wait: Optional[float] = None,
        jitter_ratio: Optional[float] = None,
        jitter_cap: Optional[float] = None,
        sleep: Optional[SleepFn] = None,
        rng: Optional[random.Random] = None,
    ):
        self.max_concurrency = max_concurrency or settings.LLM_MAX_CONCURRENCY
        self.max_attempts = max_attempts or settings.LLM_MAX_ATTEMPTS
        self.base_backoff = base_backoff if base_backoff is not None else settings.LLM_BASE_BACKOFF_SECONDS
        self.rate_limit_cap = rate_limit_cap if rate_limit_cap is not None else settings.LLM_RATE_LIMIT_BACKOFF_CAP_SECONDS
        self.token_cap = token_cap if token_cap is not None else settings.LLM_TOKEN_BACKOFF_CAP_SECONDS
        self.max_wait = max_wait if max_wait is not None else settings.LLM_MAX_WAIT_SECONDS
        self.jitter_ratio = min(jitter_ratio if jitter_ratio is not None else settings.LLM_JITTER_RATIO, 0.1)
        self.jitter_cap = jitter_cap if jitter_cap is not None else settings.LLM_JITTER_CAP_SECONDS

        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()
        self._semaphore = asyncio.Semaphore(self.max_concurrency)
        self._backoff = self.base_backoff
        self._in_flight = 0

    @property
    def current_backoff(self) -> float:
        """Internal backoff used when the provider gives no hint."""
        return self._backoff

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def compute_wait(self, error: UpstreamRateLimited) -> float:
        """
        Wait before the next attempt, and advance the backoff counter.
        Provider hints win over the internal counter; the result is jittered
        and never exceeds max_wait.
        """
        hinted = error.retry_after
        if hinted is None:
            hinted = parse_reset_window(error.reset_window)

        wait = hinted if hinted is not None else self._backoff

        if error.token_exhausted:
            self._backoff = min(self._backoff * TOKEN_BACKOFF_GROWTH, self.token_cap)
        else:
            self._backoff = min(self._backoff * RATE_LIMIT_BACKOFF_GROWTH, self.rate_limit_cap)

        jitter = wait * self._rng.uniform(-self.jitter_ratio, self.jitter_ratio)
        jitter = max(-self.jitter_cap, min(jitter, self.jitter_cap))

        return max(0.0, min(wait + jitter, self.max_wait))

    def reset_backoff(self) -> None:
        self._backoff = self.base_backoff

    async def run(self, fn: Callable[[], Awaitable[T]], operation: str = "llm_call") -> T:
        """
        Call fn() under the semaphore, retrying rate-limit failures.
        The permit is held across retry waits.
        """
        async with self._semaphore:
            self._in_flight += 1
            llm_inflight.inc()
            try:
                return await self._run_with_retries(fn, operation)
            finally:
                self._in_flight -= 1
                llm_inflight.dec()

    async def _run_with_retries(self, fn: Callable[[], Awaitable[T]], operation: str) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await fn()
            except UpstreamRateLimited as e:
                if not e.retryable:
                    raise
                if attempt >= self.max_attempts:
                    logger.error(
                        "rate_limit_retries_exhausted",
                        operation=operation,
                        attempts=attempt,
                    )
                    raise RateLimitExhausted(
                        f"{operation} still rate limited after {attempt} attempts: {e.message}",
                        attempts=attempt,
                    ) from e

                wait = self.compute_wait(e)
                kind = "tokens" if e.token_exhausted else "requests"
                llm_rate_limit_retries_total.labels(operation=operation, kind=kind).inc()
                llm_rate_limit_wait_seconds.observe(wait)
                logger.warning(
                    "rate_limited_retrying",
                    operation=operation,
                    attempt=attempt,
                    kind=kind,
                    wait_seconds=round(wait, 3),
                    retry_after=e.retry_after,
                    reset_window=e.reset_window,
                )
                await self._sleep(wait)
                continue

            if attempt > 1:
                logger.info("rate_limit_recovered", operation=operation, attempts=attempt)
            self.reset_backoff()
            return result
