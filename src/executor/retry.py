"""Bounded retry with exponential backoff.

Generic over the operation's result type. The caller decides what counts
as retryable through `should_retry`; the retrier only counts attempts,
sleeps, and logs.

Two kinds of failure are kept apart:
- A failure-shaped *result* (e.g. ProviderResult.success=False) is an
  expected domain outcome and may be retried.
- An *exception* raised by the operation is an unexpected fault and
  propagates immediately, without retry. Cancellation travels this way.

Exhaustion is not an error: the last result is returned as-is.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from src.llm.backends import ErrorKind

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry settings. Delays are in seconds."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 10.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("Retry delays must be non-negative")
        if self.multiplier < 1:
            raise ValueError(f"multiplier must be >= 1, got {self.multiplier}")


@dataclass(frozen=True)
class RetryDecision:
    """Verdict returned by a should_retry callback."""

    retry: bool
    error_kind: Optional[ErrorKind] = None


DEFAULT_RETRY_POLICY = RetryPolicy(max_attempts=3, initial_delay=1.0, multiplier=2.0, max_delay=10.0)


def compute_delay(attempt: int, policy: RetryPolicy) -> float:
    """Delay after `attempt` (1-indexed): min(initial * multiplier^(attempt-1), max)."""
    if attempt < 1:
        raise ValueError(f"attempt is 1-indexed, got {attempt}")
    return min(policy.initial_delay * (policy.multiplier ** (attempt - 1)), policy.max_delay)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    should_retry: Callable[[T], RetryDecision],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    context: Optional[dict] = None,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run `operation` up to `policy.max_attempts` times.

    Args:
        operation: Zero-arg coroutine factory; called once per attempt
        should_retry: Inspects a result; RetryDecision(retry=False) stops
            immediately (success or a non-retryable failure)
        policy: Attempt count and backoff curve
        context: Extra fields for log lines (provider, task summary, ...)
        sleep: Awaitable sleep, injectable for tests

    Returns:
        The first result not marked for retry, or the last result once
        attempts are exhausted.
    """
    label = _format_context(context)
    attempt = 0

    while True:
        attempt += 1
        try:
            result = await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"{label}Unexpected error on attempt {attempt}, not retrying: {e}")
            raise

        decision = should_retry(result)
        if not decision.retry:
            return result

        kind = decision.error_kind.value if decision.error_kind else "unspecified"
        if attempt >= policy.max_attempts:
            logger.warning(
                f"{label}Max retry attempts reached ({attempt}/{policy.max_attempts}), "
                f"last error kind: {kind}"
            )
            return result

        delay = compute_delay(attempt, policy)
        logger.info(
            f"{label}Retrying after backoff: attempt {attempt} -> {attempt + 1}, "
            f"delay={delay:.2f}s, error kind: {kind}"
        )
        await sleep(delay)


def _format_context(context: Optional[dict]) -> str:
    if not context:
        return ""
    return "[" + ", ".join(f"{k}={v}" for k, v in context.items()) + "] "
