"""
Retry policy with exponential backoff, driven by the error classifier.

Used uniformly at every external-API call site and every batch-write call:
an error is retried only when classify() marks it retryable and the retry
budget is not exhausted.
"""
import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, TypeVar

from profilesync.sync.errors import classify

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    jitter_ratio: float = 0.1


@dataclass
class RetryStats:
    """Tracks what happened across the attempts of one operation."""
    attempts: int = 0
    total_delay_ms: float = 0.0
    errors: List[str] = field(default_factory=list)
    success: bool = False

    def record_failure(self, error: BaseException, delay_ms: float = 0.0) -> None:
        self.attempts += 1
        self.total_delay_ms += delay_ms
        self.errors.append(f"{type(error).__name__}: {error}")


def should_retry(error: BaseException, attempt: int, max_retries: int) -> bool:
    """True when the error is retryable and fewer than max_retries retries were made."""
    return classify(error).retryable and attempt < max_retries


def compute_delay(
    attempt: int,
    base_delay_ms: int = 1000,
    max_delay_ms: int = 30000,
    jitter_ratio: float = 0.1,
) -> float:
    """
    Backoff before retry number ``attempt`` (0-based), in milliseconds.

    base * 2^attempt plus 0-10% jitter, capped at max_delay_ms.
    """
    exponential = base_delay_ms * (2 ** attempt)
    jitter = random.uniform(0, jitter_ratio) * exponential
    return min(exponential + jitter, max_delay_ms)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    *,
    label: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    stats: Optional[RetryStats] = None,
) -> T:
    """
    Await ``operation()`` and retry it per ``policy``.

    Args:
        operation: Zero-arg coroutine factory; called once per attempt.
        policy: Retry budget and backoff parameters.
        label: Name used in log lines.
        sleep: Awaitable sleep taking seconds (injectable for tests).
        on_retry: Called with (attempt, error, delay_ms) before each backoff.
        stats: Optional RetryStats to fill in.

    Raises:
        The last error once it is not retryable or the budget is spent.
    """
    policy = policy or RetryPolicy()
    stats = stats if stats is not None else RetryStats()
    attempt = 0
    while True:
        try:
            result = await operation()
        except Exception as exc:
            if not should_retry(exc, attempt, policy.max_retries):
                stats.record_failure(exc)
                if attempt:
                    logger.warning("%s failed after %d retries: %s", label, attempt, exc)
                raise
            delay_ms = compute_delay(
                attempt,
                base_delay_ms=policy.base_delay_ms,
                max_delay_ms=policy.max_delay_ms,
                jitter_ratio=policy.jitter_ratio,
            )
            stats.record_failure(exc, delay_ms)
            logger.warning(
                "%s attempt %d failed: %s. Retrying in %.1fs...",
                label, attempt + 1, exc, delay_ms / 1000.0,
            )
            if on_retry:
                on_retry(attempt, exc, delay_ms)
            await sleep(delay_ms / 1000.0)
            attempt += 1
            continue

        stats.attempts += 1
        stats.success = True
        if attempt:
            logger.info("%s succeeded after %d retries", label, attempt)
        return result
