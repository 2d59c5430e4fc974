# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

import time
import functools
from typing import Callable, Optional

from infraboot.errors import InfrabootError


class RetryError(InfrabootError):
    def __init__(self, message: str, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


def retry(
    *,
    retries: int,
    delay: float,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    on_retry: Callable[[int, Exception], None] | None = None,
):
    """
    Retry decorator for idempotent operations.

    retries: total number of attempts
    delay: seconds between attempts (no sleep after the last one)
    retry_on: exception types to retry
    on_retry: callback(attempt, exception), called after every failed attempt
    """

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            last_exc = None
            for attempt in range(1, retries + 1):
                try:
                    return fn(*args, **kwargs)
                except retry_on as exc:
                    last_exc = exc
                    if on_retry:
                        on_retry(attempt, exc)
                    if attempt == retries:
                        break
                    time.sleep(delay)
            raise RetryError(
                f"{fn.__name__} failed after {retries} attempts: {last_exc}",
                attempts=retries,
                last_error=last_exc,
            ) from last_exc
        return wrapper
    return decorator
