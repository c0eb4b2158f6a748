import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from chainequity.core.errors import RetriesExhaustedError

T = TypeVar("T")


async def with_retries_async(
    operation_to_retry: Callable[[], Awaitable[T]],
    log: logging.Logger,
    max_attempts: int = 5,
    delay: float = 1,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    description: str = "operation",
) -> T:
    """
    Retry an async operation with exponential backoff on transient errors.

    :param operation_to_retry: Zero-argument callable returning a new awaitable.
    :param log: The logger used to report failed attempts.
    :param max_attempts: Maximum number of attempts.
    :param delay: Initial delay between retries (doubled after every failure).
    :param retry_on: Exception types considered transient.
        Anything else propagates immediately.
    :param description: Operation name used in log messages.
    :return: The operation result.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            log.debug("%s: attempt %s", description, attempt)
            return await operation_to_retry()
        except retry_on as e:  # pylint: disable=broad-except
            if attempt == max_attempts:
                log.error("%s failed after %s attempts: %s", description, attempt, e)
                raise RetriesExhaustedError(
                    f"{description} failed after {attempt} attempts: {e}"
                ) from e
            log.warning("%s failed on attempt %s: %s", description, attempt, e)
            await asyncio.sleep(delay * 2 ** (attempt - 1))
    # max_attempts < 1
    raise RetriesExhaustedError(f"{description} was not attempted")
