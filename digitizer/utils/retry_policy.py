# User value: This file helps users get reliable digitization results when dependencies fail transiently.
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

T = TypeVar("T")

logger = logging.getLogger("digitizer.retry")


@dataclass(frozen=True)
class RetryPolicy:
    name: str
    max_retries: int
    base_delay_sec: float
    max_delay_sec: float
    jitter_ratio: float = 0.2


REDIS_POLICY = RetryPolicy(
    name="redis",
    max_retries=2,
    base_delay_sec=0.15,
    max_delay_sec=2.0,
    jitter_ratio=0.2,
)


def exponential_backoff_ms(base_delay_ms: int, attempts_made: int) -> int:
    """Delay before the next try after `attempts_made` failed attempts: base, 2*base, 4*base..."""
    return int(base_delay_ms) * (2 ** max(0, int(attempts_made) - 1))


def _compute_delay(policy: RetryPolicy, attempt: int) -> float:
    # attempt starts at 1 for first retry delay
    exponential = policy.base_delay_sec * (2 ** max(0, attempt - 1))
    capped = min(exponential, policy.max_delay_sec)
    if policy.jitter_ratio <= 0:
        return capped
    jitter = capped * policy.jitter_ratio * random.random()
    return capped + jitter


async def run_with_retry(
    *,
    operation: str,
    target: str,
    fn: Callable[[], Awaitable[T]],
    retryable: Iterable[type[BaseException]],
    policy: RetryPolicy,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> T:
    retryable_tuple = tuple(retryable)
    attempt = 0
    while True:
        try:
            return await fn()
        except retryable_tuple as exc:
            if attempt >= policy.max_retries:
                raise
            attempt += 1
            if on_retry:
                on_retry(attempt, exc)
            delay = _compute_delay(policy, attempt)
            logger.warning(
                "retry_scheduled policy=%s operation=%s target=%s attempt=%s/%s delay_sec=%.3f error=%s",
                policy.name,
                operation,
                target,
                attempt,
                policy.max_retries,
                delay,
                exc,
            )
            await asyncio.sleep(delay)
