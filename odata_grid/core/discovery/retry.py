# odata_grid/core/discovery/retry.py
"""
RETRY - Exponential backoff for callers that want it

The engine itself never retries; a failed query comes back as a failed
QueryResult. Callers that prefer to ride out transient failures wrap their
calls here.

Delay for attempt n (1-based): min(base_delay * backoff_multiplier ** (n - 1), max_delay)
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from odata_grid.core.errors import TransportError
from odata_grid.core.schemas import FailureKind, QueryDescriptor, QueryResult
from odata_grid.core.discovery.executor import execute_query

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def compute_delay(
    attempt: int, base_delay: float, max_delay: float, backoff_multiplier: float
) -> float:
    return min(base_delay * backoff_multiplier ** (attempt - 1), max_delay)


async def retry(
    fn: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 0.1,
    max_delay: float = 5.0,
    backoff_multiplier: float = 2.0,
    retry_on: Tuple[Type[BaseException], ...] = (TransportError,),
) -> T:
    """
    Call `fn` until it succeeds or `max_attempts` is reached.

    Args:
        fn: Zero-argument coroutine function
        max_attempts: Total attempts, including the first
        retry_on: Exception types worth another attempt; anything else propagates

    Raises:
        The last exception once attempts are exhausted
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except retry_on as e:
            if attempt >= max_attempts:
                logger.error(f"Giving up after {attempt} attempts: {e}")
                raise
            delay = compute_delay(attempt, base_delay, max_delay, backoff_multiplier)
            logger.warning(
                f"Attempt {attempt}/{max_attempts} failed: {e}, retrying in {delay}s"
            )
            await asyncio.sleep(delay)


def is_transient(result: QueryResult) -> bool:
    if result.success:
        return False
    if result.error_kind in (FailureKind.TRANSPORT, FailureKind.TIMEOUT):
        return True
    return (
        result.error_kind == FailureKind.REMOTE
        and result.failure is not None
        and result.failure.status_code in RETRYABLE_STATUS_CODES
    )


async def execute_with_retry(
    descriptor: QueryDescriptor,
    client,
    max_attempts: int = 3,
    base_delay: float = 0.1,
    max_delay: float = 5.0,
    backoff_multiplier: float = 2.0,
    timeout: Optional[float] = None,
) -> QueryResult:
    """
    execute_query, re-run while the failure is transient
    (network, timeout, 429, 5xx). Validation and 4xx failures return at once.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    attempt = 0
    while True:
        attempt += 1
        result = await execute_query(descriptor, client, timeout=timeout)
        if not is_transient(result) or attempt >= max_attempts:
            return result

        delay = compute_delay(attempt, base_delay, max_delay, backoff_multiplier)
        logger.warning(
            f"Query for {descriptor.entity_logical_name} failed ({result.error_kind.value}), "
            f"retrying in {delay}s (attempt {attempt}/{max_attempts})"
        )
        await asyncio.sleep(delay)
