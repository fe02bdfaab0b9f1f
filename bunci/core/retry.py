"""The single bounded-poll primitive used by every wait in the control plane.

Waits on VM addresses, shell readiness and registry pulls all go through
:func:`retry_with_backoff` so that no wait is unbounded and all of them can be
cancelled.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import TypeVar

from bunci.core.errors import RetryCancelledError, RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_with_backoff(
    operation: Callable[[], T | None],
    max_attempts: int,
    interval: float,
    *,
    description: str = "operation",
    cancel_event: threading.Event | None = None,
    retry_on: tuple[type[BaseException], ...] = (),
    sleep: Callable[[float], None] | None = None,
) -> T:
    """Call *operation* until it returns a truthy value.

    Parameters
    ----------
    operation:
        Zero-argument callable. A falsy return (``None``, ``""``, ``False``)
        means "not yet".
    max_attempts:
        Upper bound on calls; must be at least 1.
    interval:
        Fixed delay between attempts, in seconds.
    description:
        Used in log lines and the exhaustion error.
    cancel_event:
        When set, the wait aborts with :class:`RetryCancelledError`.
    retry_on:
        Exception types that count as "not yet" instead of propagating.
    sleep:
        Override for the delay function (tests pass a no-op).

    Raises
    ------
    RetryExhaustedError
        After *max_attempts* unsuccessful calls.
    RetryCancelledError
        If *cancel_event* is set while waiting.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    last_error: BaseException | None = None
    for attempt in range(1, max_attempts + 1):
        if cancel_event is not None and cancel_event.is_set():
            raise RetryCancelledError(f"{description} cancelled", step=description)
        try:
            result = operation()
        except retry_on as exc:
            last_error = exc
            result = None
        if result:
            if attempt > 1:
                logger.debug("%s succeeded on attempt %d/%d.", description, attempt, max_attempts)
            return result

        if attempt == max_attempts:
            break
        logger.debug(
            "%s not ready (attempt %d/%d), retrying in %.1fs.",
            description, attempt, max_attempts, interval,
        )
        if cancel_event is not None:
            if cancel_event.wait(interval):
                raise RetryCancelledError(f"{description} cancelled", step=description)
        else:
            (sleep or time.sleep)(interval)

    detail = f": {last_error}" if last_error is not None else ""
    raise RetryExhaustedError(
        f"{description} did not succeed after {max_attempts} attempts{detail}",
        step=description,
    )
