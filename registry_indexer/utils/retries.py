import logging
import time
from typing import Callable, Tuple, Type, TypeVar

T = TypeVar("T")


def with_retries(
    operation_to_retry: Callable[[], T],
    log: logging.Logger,
    max_attempts: int = 3,
    delay: float = 0.5,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    description: str = "operation",
) -> T:
    """
    Retry an operation with exponential backoff on transient errors.
    Exceptions outside of retry_on propagate immediately.

    :param operation_to_retry: The function/operation to retry.
    :param log: The logger receiving attempt and failure messages.
    :param max_attempts: Maximum number of attempts.
    :param delay: Initial delay in seconds between attempts (doubled each time).
    :param retry_on: Exception types considered transient.
    :param description: Label used in log messages.
    :return: The operation result.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            log.debug("%s attempt: %s", description, attempt)
            return operation_to_retry()
        except retry_on as e:
            log.warning("%s attempt %s/%s failed: %s", description, attempt, max_attempts, e)
            if attempt == max_attempts:
                raise
            time.sleep(delay * 2 ** (attempt - 1))
    raise ValueError("max_attempts must be at least 1")
