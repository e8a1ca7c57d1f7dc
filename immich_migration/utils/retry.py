"""
Retry utility with exponential backoff for read-only API calls.

Only calls that cannot create anything on the server may be wrapped.
"""
import time
import logging
from typing import Callable, TypeVar, Optional, Tuple
from functools import wraps

import requests

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Network failures where the request may not have reached the server
TRANSIENT_ERRORS = (requests.ConnectionError, requests.Timeout)


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: Tuple = TRANSIENT_ERRORS,
    on_retry: Optional[Callable[[Exception, int], None]] = None,
    describe: Optional[Callable[..., str]] = None,
) -> Callable:
    """
    Decorator that retries a read-only call with exponential backoff.

    Args:
        max_retries: Retry attempts after the first call (total = max_retries + 1)
        initial_delay: Seconds to wait before the first retry
        max_delay: Upper bound for the wait between attempts
        exponential_base: Multiplier applied to the delay after each retry
        exceptions: Exception types that trigger a retry; others propagate at once
        on_retry: Optional callback(exception, attempt_number); logs a warning if None
        describe: Builds the label used in log lines from the call's arguments,
            e.g. ``"GET tags"``; defaults to the function name

    Returns:
        Decorated function with the same signature.

    Raises:
        The last exception raised if all attempts fail.

    Example:
        >>> @retry_with_backoff(max_retries=3, describe=lambda method, path, **kw: f"{method} {path}")
        ... def request(method, path, **kwargs):
        ...     return session.request(method, base_url + path, **kwargs)
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            attempts = max_retries + 1
            delay = initial_delay
            attempt = 1

            while True:
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    label = describe(*args, **kwargs) if describe else func.__name__
                    if attempt >= attempts:
                        logger.error(f"❌ {label} failed after {attempts} attempts: {e}")
                        raise

                    if on_retry:
                        on_retry(e, attempt)
                    else:
                        logger.warning(
                            f"{label} failed (attempt {attempt}/{attempts}): {e}. "
                            f"Retrying in {delay:.1f} seconds..."
                        )
                    time.sleep(delay)
                    delay = min(delay * exponential_base, max_delay)
                    attempt += 1

        return wrapper
    return decorator
