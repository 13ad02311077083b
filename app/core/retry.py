"""
Bounded retry with capped exponential backoff for storage operations
"""
import asyncio
import math
from typing import Awaitable, Callable, TypeVar

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings
from app.core.exceptions import StorageError
from app.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Failures worth retrying; anything else is a bug and propagates
RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    SQLAlchemyError,
    RedisError,
    StorageError,
    ConnectionError,
    TimeoutError,
    OSError,
)


def calculate_backoff_seconds(
    attempt: int,
    *,
    base_seconds: float,
    max_backoff_seconds: float,
) -> float:
    """
    Exponential backoff with a hard upper bound: base_seconds * 2**attempt.

    Large attempt numbers return the cap without computing huge powers.
    """
    if attempt < 0:
        attempt = 0

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0.0

    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    # 2**attempt beyond this point always exceeds the cap
    if attempt >= math.ceil(max_backoff_seconds / base_seconds).bit_length():
        return max_backoff_seconds

    return min(base_seconds * (1 << attempt), max_backoff_seconds)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    operation_name: str,
    default: T,
    attempts: int | None = None,
    base_delay_seconds: float | None = None,
    max_delay_seconds: float | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` up to ``attempts`` times; return ``default`` once they are exhausted.

    Only RETRYABLE_ERRORS are retried. Delays follow calculate_backoff_seconds
    (1s, 2s, 4s... with the default settings).
    """
    attempts = attempts or settings.STORAGE_RETRY_ATTEMPTS
    base = settings.STORAGE_RETRY_BASE_DELAY_SECONDS if base_delay_seconds is None else base_delay_seconds
    cap = settings.STORAGE_RETRY_MAX_DELAY_SECONDS if max_delay_seconds is None else max_delay_seconds

    for attempt in range(attempts):
        try:
            return await operation()
        except RETRYABLE_ERRORS as e:
            is_last = attempt == attempts - 1
            logger.warning(
                f"{operation_name} failed",
                extra_data={
                    "operation": operation_name,
                    "attempt": attempt + 1,
                    "max_attempts": attempts,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "giving_up": is_last,
                }
            )
            if is_last:
                break
            await sleep(calculate_backoff_seconds(attempt, base_seconds=base, max_backoff_seconds=cap))

    logger.error(
        f"{operation_name} exhausted retries, returning fallback",
        extra_data={"operation": operation_name, "attempts": attempts}
    )
    return default
