"""
Shared client plumbing: token bucket rate limiting and retry with backoff.
Both external clients (places catalog, vibe classifier) are built on these.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

import anthropic
import httpx

from services.ingest.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({429, 500, 503})


class RateLimiter:
    """Token bucket rate limiter.

    Starts full (capacity = requests_per_second) and refills continuously,
    so bursts up to capacity go through immediately and the steady-state
    rate is smoothed rather than counted per fixed window.
    """

    def __init__(self, requests_per_second: float):
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        self.requests_per_second = requests_per_second
        self.capacity = float(requests_per_second)
        self.tokens = float(requests_per_second)
        self.last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a token is available, then consume it. Never rejects."""
        async with self._lock:
            self._refill()
            if self.tokens >= 1:
                self.tokens -= 1
                return

            wait_s = (1 - self.tokens) / self.requests_per_second
            await asyncio.sleep(wait_s)
            self._refill()
            # Sleep granularity can leave us a hair short of a full token
            self.tokens = max(self.tokens - 1, 0.0)

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.requests_per_second)
        self.last_refill = now


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: delay = min(initial * 2^attempt, max)."""
    max_retries: int = 3
    initial_delay_s: float = 1.0
    max_delay_s: float = 10.0
    retryable_status_codes: frozenset[int] = field(default=DEFAULT_RETRYABLE_STATUS_CODES)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.retry_max_retries,
            initial_delay_s=settings.retry_initial_delay_s,
            max_delay_s=settings.retry_max_delay_s,
            retryable_status_codes=frozenset(settings.retry_status_codes),
        )

    def delay_for(self, attempt: int) -> float:
        return min(self.initial_delay_s * (2 ** attempt), self.max_delay_s)


def _status_code(exc: BaseException) -> Optional[int]:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    if isinstance(exc, anthropic.APIStatusError):
        return exc.status_code
    status = getattr(exc, "status_code", None)
    return status if isinstance(status, int) else None


def is_retryable_error(
    exc: BaseException,
    retryable_status_codes: Iterable[int] = DEFAULT_RETRYABLE_STATUS_CODES,
) -> bool:
    """Timeouts and configured HTTP statuses are transient; everything else is terminal."""
    if isinstance(exc, (httpx.TimeoutException, anthropic.APITimeoutError, asyncio.TimeoutError)):
        return True
    status = _status_code(exc)
    if status is None:
        return False
    return status in set(retryable_status_codes)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    is_retryable: Optional[Callable[[BaseException], bool]] = None,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> T:
    """
    Run an async operation with bounded exponential backoff.

    Args:
        operation: Zero-arg callable returning a fresh awaitable per attempt.
        policy: Retry budget and delays.
        is_retryable: Predicate deciding whether a failure is transient.
            Defaults to is_retryable_error with the policy's status codes.
        on_retry: Called with (attempt_number, error) before each backoff sleep.
            Attempt numbers start at 1.

    Raises:
        The operation's exception when it is terminal or the budget is spent.
    """
    if is_retryable is None:
        def is_retryable(exc: BaseException) -> bool:
            return is_retryable_error(exc, policy.retryable_status_codes)

    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            if not is_retryable(exc) or attempt >= policy.max_retries:
                raise

            delay = policy.delay_for(attempt)
            attempt += 1
            if on_retry is not None:
                on_retry(attempt, exc)
            await asyncio.sleep(delay)


def log_retry(label: str, policy: RetryPolicy) -> Callable[[int, BaseException], None]:
    """Build an on_retry observer that logs at WARNING."""
    def _observer(attempt: int, exc: BaseException) -> None:
        logger.warning(
            "Retry %d/%d for %s: %s", attempt, policy.max_retries, label, exc,
        )
    return _observer
