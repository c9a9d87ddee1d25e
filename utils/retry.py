"""
Retry helper for transient collaborator failures.

Schedule comes from config.pairing.RetryPolicy.
"""

import time
from typing import Callable, TypeVar

import structlog

from config.pairing import RetryPolicy

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    operation: str = "call",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call fn until it succeeds or the policy's attempts run out.

    Args:
        fn: Zero-argument callable
        policy: Attempts and backoff schedule
        retry_on: Exception types considered transient
        operation: Name used in log events
        sleep: Injected for tests

    Returns:
        Whatever fn returns

    Raises:
        The last exception once attempts are exhausted
    """
    for attempt in range(policy.max_attempts):
        try:
            return fn()
        except retry_on as e:
            if attempt + 1 >= policy.max_attempts:
                logger.error(
                    "retry_exhausted",
                    operation=operation,
                    attempts=attempt + 1,
                    error=str(e),
                    error_type=type(e).__name__
                )
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "retrying_after_error",
                operation=operation,
                attempt=attempt + 1,
                delay_seconds=round(delay, 2),
                error=str(e),
                error_type=type(e).__name__
            )
            sleep(delay)

    # max_attempts >= 1 so the loop always returns or raises
    raise RuntimeError("unreachable")
