"""
Retry helpers for read-only calls that may hit transient failures.

Used for the bulk Moodle user fetch. Mutating web-service calls are never
retried here; a failed create/update/suspend is reported and left for the next run.
"""

import time
import logging
from http.client import HTTPException
from typing import Callable, Any, Optional

logger = logging.getLogger(__name__)

# Web-service error codes that indicate a transient server condition
TRANSIENT_ERRORCODES = ('dbconnectionfailed', 'sitemaintenance', 'servicetemporarilyunavailable')


class MaxRetriesExceeded(Exception):
    """Raised when maximum retry attempts are exceeded."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


def is_retryable_error(exception: Exception) -> bool:
    """
    Determine if an exception indicates a transient failure.

    Args:
        exception: Exception to check

    Returns:
        True for network errors, 429/5xx HTTP statuses and transient Moodle error codes
    """
    if isinstance(exception, (ConnectionError, TimeoutError)):
        return True
    if isinstance(exception.__cause__, (ConnectionError, TimeoutError, HTTPException)):
        return True

    status_code = getattr(exception, 'status_code', None)
    if status_code is not None and (status_code == 429 or 500 <= status_code < 600):
        return True

    errorcode = getattr(exception, 'errorcode', None)
    if errorcode in TRANSIENT_ERRORCODES:
        return True

    error_msg = str(exception).lower()
    for pattern in ('timed out', 'timeout', 'connection reset', 'connection refused',
                    'temporary failure', 'service unavailable'):
        if pattern in error_msg:
            return True

    return False


def retry_call(
    func: Callable,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    retryable: Callable[[Exception], bool] = is_retryable_error,
    on_retry: Optional[Callable[[int, Exception], None]] = None
) -> Any:
    """
    Call a function, retrying on transient errors.

    Args:
        func: Zero-argument callable
        max_attempts: Maximum number of attempts (including the first one)
        delay: Initial delay between attempts in seconds
        backoff: Delay multiplier applied after each retry
        retryable: Predicate deciding whether an exception is worth another attempt
        on_retry: Optional callback invoked with (attempt, exception) before sleeping

    Returns:
        Function result

    Raises:
        MaxRetriesExceeded: If every attempt failed with a retryable error
        Exception: The original exception if it is not retryable
    """
    last_exception = None
    current_delay = delay

    for attempt in range(max_attempts):
        try:
            result = func()
            if attempt > 0:
                logger.info(f"Operation succeeded on attempt {attempt + 1}")
            return result

        except Exception as e:
            if not retryable(e):
                raise
            last_exception = e

            if attempt == max_attempts - 1:
                break

            if on_retry:
                try:
                    on_retry(attempt + 1, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")

            logger.debug(f"Retrying in {current_delay:.1f} seconds...")
            time.sleep(current_delay)
            current_delay *= backoff

    raise MaxRetriesExceeded(max_attempts, last_exception)


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
