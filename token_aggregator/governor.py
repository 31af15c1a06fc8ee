"""Outbound request governor: sliding-window rate limiting plus retry backoff.

Every provider owns one :class:`RequestGovernor`.  A governed call first
waits for a rate-limit slot and then runs the request under
:class:`ExponentialBackoff`::

    data = await governor.call(lambda: fetch_json(url))

Both primitives take injectable ``clock``/``sleep`` callables so tests can
drive them without real waiting.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, TypeVar

import aiohttp

from .http import HTTPError

logger = logging.getLogger(__name__)

T = TypeVar("T")

BASE_DELAY_MS = 1000
MAX_RETRIES = 5

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class RateLimitConfig:
    max_requests: int
    window_ms: int
    backoff_multiplier: float = 2.0
    max_backoff_ms: int = 30_000

    @classmethod
    def from_settings(cls, api) -> "RateLimitConfig":
        return cls(
            max_requests=api.rate_limit,
            window_ms=api.window_ms,
            backoff_multiplier=api.backoff_multiplier,
            max_backoff_ms=api.max_backoff_ms,
        )


def is_retryable(exc: BaseException) -> bool:
    """Return ``True`` for HTTP 429 and transport-level timeouts/resets."""

    if isinstance(exc, HTTPError):
        return exc.status == 429
    if isinstance(exc, aiohttp.ClientResponseError):
        return exc.status == 429
    if isinstance(exc, (asyncio.TimeoutError, ConnectionResetError, aiohttp.ServerDisconnectedError)):
        return True
    if isinstance(exc, aiohttp.ClientOSError):
        return exc.errno in {errno.ECONNRESET, errno.ETIMEDOUT}
    return False


class RateLimiter:
    """Allow at most ``max_requests`` within any trailing ``window_ms``."""

    def __init__(
        self,
        config: RateLimitConfig,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = config
        self._clock = clock
        self._sleep = sleep
        self._requests: Deque[float] = deque()

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def _prune(self, now: float) -> None:
        window = self.config.window_ms
        while self._requests and now - self._requests[0] >= window:
            self._requests.popleft()

    async def acquire_slot(self) -> None:
        """Suspend until one more request fits in the window, then claim it."""

        while True:
            now = self._now_ms()
            self._prune(now)
            if len(self._requests) < self.config.max_requests:
                self._requests.append(now)
                return
            wait_ms = self.config.window_ms - (now - self._requests[0])
            logger.debug("Rate limit reached, waiting %.0fms", wait_ms)
            await self._sleep(max(wait_ms, 0.0) / 1000.0)

    def request_count(self) -> int:
        self._prune(self._now_ms())
        return len(self._requests)


class ExponentialBackoff:
    """Retry retryable failures with ``min(1000 * m**n, max_backoff)`` ms delays."""

    def __init__(
        self,
        config: RateLimitConfig,
        *,
        max_retries: int = MAX_RETRIES,
        classify: Callable[[BaseException], bool] = is_retryable,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = config
        self.max_retries = max_retries
        self._classify = classify
        self._sleep = sleep

    def delay_ms(self, attempt: int) -> float:
        delay = BASE_DELAY_MS * (self.config.backoff_multiplier ** attempt)
        return min(delay, self.config.max_backoff_ms)

    def should_retry(self, exc: BaseException, attempt: int) -> bool:
        return (
            attempt < self.max_retries
            and self.delay_ms(attempt) <= self.config.max_backoff_ms
            and self._classify(exc)
        )

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as exc:
                if not self.should_retry(exc, attempt):
                    raise
                delay = self.delay_ms(attempt)
                logger.warning(
                    "Request failed, retrying in %.0fms (attempt %d): %s",
                    delay,
                    attempt + 1,
                    exc,
                )
                await self._sleep(delay / 1000.0)
                attempt += 1


class RequestGovernor:
    """Rate limiter and backoff composed for a single provider."""

    def __init__(
        self,
        config: RateLimitConfig,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = config
        self.limiter = RateLimiter(config, clock=clock, sleep=sleep)
        self.backoff = ExponentialBackoff(config, sleep=sleep)

    async def acquire_slot(self) -> None:
        await self.limiter.acquire_slot()

    async def execute_with_backoff(self, operation: Callable[[], Awaitable[T]]) -> T:
        return await self.backoff.execute(operation)

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        await self.acquire_slot()
        return await self.execute_with_backoff(operation)

    def request_count(self) -> int:
        return self.limiter.request_count()


__all__ = [
    "BASE_DELAY_MS",
    "MAX_RETRIES",
    "RateLimitConfig",
    "is_retryable",
    "RateLimiter",
    "ExponentialBackoff",
    "RequestGovernor",
]
