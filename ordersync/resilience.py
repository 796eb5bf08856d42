"""
Retry policy shared by the transport client and the pagination crawler.

Provides:
- RetryPolicy: attempts, exponential schedule, jitter, retryable predicate
- retry_with_backoff: runs an async callable under a policy
"""
import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from ordersync.exceptions import TransientNetworkError
from ordersync.observability import get_logger

logger = get_logger(__name__)


def is_transient(error: BaseException) -> bool:
    """Default predicate: only timeouts and connection-level failures."""
    return isinstance(error, TransientNetworkError)


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 10.0  # seconds
    exponential_base: float = 2.0
    jitter: float = 0.5  # random jitter factor
    retryable: Callable[[BaseException], bool] = field(default=is_transient)

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        delay = min(
            self.base_delay * (self.exponential_base ** (attempt - 1)),
            self.max_delay
        )
        return delay + delay * self.jitter * random.random()

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        return attempt < self.max_attempts and self.retryable(error)


async def retry_with_backoff(
    func: Callable[..., Any],
    *args,
    policy: Optional[RetryPolicy] = None,
    pass_attempt: bool = False,
    **kwargs
) -> Any:
    """
    Execute an async function with exponential backoff retry.

    Args:
        func: Async function to execute
        *args: Positional arguments for func
        policy: Retry policy (defaults to RetryPolicy())
        pass_attempt: If True, call func with attempt=<n> so it can scale
            its own behavior (e.g. timeouts) per attempt
        **kwargs: Keyword arguments for func

    Returns:
        Result of func

    Raises:
        The first non-retryable exception, or the last one once attempts
        are exhausted
    """
    policy = policy or RetryPolicy()
    attempt = 1

    while True:
        try:
            if pass_attempt:
                return await func(*args, attempt=attempt, **kwargs)
            return await func(*args, **kwargs)
        except Exception as e:
            if not policy.should_retry(e, attempt):
                if policy.retryable(e) and attempt > 1:
                    logger.error(
                        f"All {policy.max_attempts} retry attempts failed",
                        extra={"error": str(e)}
                    )
                raise

            delay = policy.delay_for(attempt)
            logger.warning(
                f"Attempt {attempt} failed, retrying in {delay:.2f}s",
                extra={"attempt": attempt, "delay": round(delay, 2), "error": str(e)}
            )
            await asyncio.sleep(delay)
            attempt += 1
