"""Generic retry helper driven by an injectable clock."""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Protocol, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from trustpipe.config import Settings, get_settings
from trustpipe.errors import TransientExternalError

T = TypeVar("T")


class Clock(Protocol):
    def now(self) -> datetime: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall clock backed by asyncio.sleep."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, TransientExternalError)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff policy."""

    max_attempts: int = 3
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 30.0
    is_retryable: Callable[[BaseException], bool] = is_transient

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "RetryPolicy":
        settings = settings or get_settings()
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            factor=settings.retry_backoff_factor,
            max_delay=settings.retry_max_delay_seconds,
        )

    def backoff(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        delay = self.base_delay * (self.factor ** (attempt - 1))
        return min(delay, self.max_delay)


OnRetry = Callable[[int, BaseException, float], None]


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    clock: Clock,
    on_retry: Optional[OnRetry] = None,
) -> T:
    """Run ``operation`` until it succeeds or the policy gives up.

    Non-retryable errors propagate immediately. When attempts run out the
    last error propagates unchanged. ``on_retry(attempt, error, delay)`` is
    called before each backoff sleep, which goes through ``clock``.
    """

    def _before_sleep(retry_state: RetryCallState) -> None:
        if on_retry is not None:
            on_retry(retry_state.attempt_number, retry_state.outcome.exception(), retry_state.next_action.sleep)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(multiplier=policy.base_delay, exp_base=policy.factor, max=policy.max_delay),
        retry=retry_if_exception(policy.is_retryable),
        before_sleep=_before_sleep,
        sleep=clock.sleep,
        reraise=True,
    )
    return await retrying(operation)
