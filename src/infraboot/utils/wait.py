# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/utils/wait.py

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional, TypeVar

from infraboot.observers.dispatcher import EventBus
from infraboot.observers.events import WaitStarted, WaitSucceeded, WaitTimedOut

log = logging.getLogger("infraboot")

T = TypeVar("T")


class WaitTimeout(TimeoutError):
    def __init__(self, description: str, timeout: float, last_error: Optional[str] = None):
        msg = f"Timed out after {timeout:g}s waiting for {description}"
        if last_error:
            msg += f" (last error: {last_error})"
        super().__init__(msg)
        self.description = description
        self.timeout = timeout
        self.last_error = last_error


def wait_until(
    predicate: Callable[[], T],
    timeout: float,
    interval: float,
    *,
    description: str,
    bus: Optional[EventBus] = None,
    run_ctx: Optional[Dict[str, Any]] = None,
    sleep: Optional[Callable[[float], None]] = None,
    clock: Optional[Callable[[], float]] = None,
) -> T:
    """
    Poll ``predicate`` until it returns a truthy value and return that value.

    Exceptions raised by the predicate count as "not ready yet"; the last one
    is reported in the timeout error. A non-positive timeout performs a
    single check.
    """
    sleep = sleep or time.sleep
    clock = clock or time.monotonic
    emit = bus is not None and run_ctx is not None
    if emit:
        bus.emit(WaitStarted(description=description, timeout_s=timeout, **run_ctx))

    start = clock()
    deadline = start + max(timeout, 0)
    attempt = 0
    last_error: Optional[str] = None

    while True:
        attempt += 1
        try:
            result = predicate()
        except Exception as exc:
            result = None
            last_error = str(exc)
            log.debug("[wait] %s: attempt %d raised %s", description, attempt, exc)

        if result:
            elapsed = clock() - start
            log.debug("[wait] %s ready after %.1fs", description, elapsed)
            if emit:
                bus.emit(WaitSucceeded(description=description, elapsed_s=round(elapsed, 2), **run_ctx))
            return result

        now = clock()
        if now >= deadline:
            break

        log.debug(
            "[wait] %s not ready, waiting %gs... (%.0fs/%gs)",
            description, interval, now - start, timeout,
        )
        sleep(min(interval, max(deadline - now, 0)))

    if emit:
        bus.emit(WaitTimedOut(description=description, timeout_s=timeout, **run_ctx))
    raise WaitTimeout(description, timeout, last_error)


def wait_attempts(
    predicate: Callable[[], T],
    *,
    retries: int,
    delay: float,
    description: str,
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """Attempt-counted variant: ``retries`` checks, ``delay`` seconds apart."""
    sleep = sleep or time.sleep
    last_error: Optional[str] = None
    for attempt in range(1, retries + 1):
        try:
            result = predicate()
        except Exception as exc:
            result = None
            last_error = str(exc)
        if result:
            return result
        if attempt < retries:
            log.info("Waiting for %s... (attempt %d/%d)", description, attempt, retries)
            sleep(delay)
    raise WaitTimeout(description, retries * delay, last_error)
