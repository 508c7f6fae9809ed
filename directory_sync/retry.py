"""
Retry utilities for handling transient failures.

Each directory or store call is retried individually, so a throttled or
briefly unreachable endpoint never forces a whole sync run to start over.
"""

import time
import logging
from dataclasses import dataclass
from typing import Callable, Any, Dict, Tuple, Type, Optional

logger = logging.getLogger(__name__)


class RetryableError(Exception):
    """Base exception for errors that should trigger retries."""
    pass


class MaxRetriesExceeded(Exception):
    """Raised when maximum retry attempts are exceeded."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    retry_if: Optional[Callable[[Exception], bool]] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None
) -> Any:
    """
    Call a function with retry logic.

    Args:
        func: Function to call
        args: Positional arguments for function
        kwargs: Keyword arguments for function
        max_attempts: Maximum number of attempts
        delay: Initial delay between retries
        backoff: Delay multiplier for exponential backoff
        exceptions: Exception types to catch and retry on
        retry_if: Optional predicate; errors it rejects are re-raised immediately
        on_retry: Optional callback for retry events

    Returns:
        Function result

    Raises:
        MaxRetriesExceeded: If all retry attempts fail
    """
    if kwargs is None:
        kwargs = {}

    last_exception = None
    current_delay = delay

    for attempt in range(max_attempts):
        try:
            result = func(*args, **kwargs)
            if attempt > 0:
                logger.info(f"Operation succeeded on attempt {attempt + 1}")
            return result

        except exceptions as e:
            if retry_if is not None and not retry_if(e):
                raise

            last_exception = e

            if attempt == max_attempts - 1:
                break

            logger.debug(f"Attempt {attempt + 1} failed with {type(e).__name__}: {e}")
            logger.debug(f"Retrying in {current_delay:.1f} seconds...")

            if on_retry:
                try:
                    on_retry(attempt + 1, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")

            time.sleep(current_delay)
            current_delay *= backoff

    raise MaxRetriesExceeded(max_attempts, last_exception)


def is_retryable_error(exception: Exception) -> bool:
    """
    Determine if an exception should trigger a retry.

    Args:
        exception: Exception to check

    Returns:
        True if the exception indicates a transient failure
    """
    if isinstance(exception, (ConnectionError, TimeoutError)):
        return True

    if isinstance(exception, RetryableError):
        return True

    # Throttling and server-side failures
    status_code = getattr(exception, 'status_code', None)
    if isinstance(status_code, int):
        return status_code == 429 or 500 <= status_code < 600

    error_msg = str(exception).lower()
    transient_patterns = [
        'timeout',
        'timed out',
        'connection reset',
        'connection refused',
        'network is unreachable',
        'temporary failure',
        'service unavailable',
        'too many requests'
    ]

    return any(pattern in error_msg for pattern in transient_patterns)


def create_retry_callback(operation_name: str) -> Callable[[int, Exception], None]:
    """
    Create a standard retry callback for logging retry attempts.

    Args:
        operation_name: Name of the operation being retried

    Returns:
        Callback function for retry events
    """
    def on_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} failed on attempt {attempt}, "
                       f"retrying due to {type(exception).__name__}: {exception}")

    return on_retry


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings from the ``error_handling`` configuration section."""

    max_retries: int = 3
    retry_wait_seconds: float = 5.0
    retry_backoff: float = 2.0

    @classmethod
    def from_config(cls, error_config: Optional[Dict[str, Any]]) -> 'RetryPolicy':
        error_config = error_config or {}
        return cls(
            max_retries=int(error_config.get('max_retries', 3)),
            retry_wait_seconds=float(error_config.get('retry_wait_seconds', 5)),
            retry_backoff=float(error_config.get('retry_backoff', 2.0))
        )

    def call(self, operation_name: str, func: Callable, *args, **kwargs) -> Any:
        """
        Run ``func`` retrying transient failures.

        Non-retryable errors propagate unchanged. When retries are exhausted the
        last underlying error is raised, so callers see the real cause.
        """
        try:
            return retry_call(
                func, args, kwargs,
                max_attempts=self.max_retries + 1,  # +1 for initial attempt
                delay=self.retry_wait_seconds,
                backoff=self.retry_backoff,
                retry_if=is_retryable_error,
                on_retry=create_retry_callback(operation_name)
            )
        except MaxRetriesExceeded as e:
            logger.warning(f"{operation_name} gave up after {e.attempts} attempts: {e.last_exception}")
            raise e.last_exception
