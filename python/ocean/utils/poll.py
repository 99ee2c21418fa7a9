"""
ocean/utils/poll.py

A cancellable, attempt-bounded poll primitive for waiting on asynchronous
provider operations (resource becoming Available, instance reaching Running).

`poll_until` calls the probe at most `max_attempts` times. Between attempts it
sleeps `interval` seconds, waking early if `cancel_event` is set, so a caller's
cancellation is honored at every sleep boundary.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional
from typing_extensions import TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


class PollTimeoutError(Exception):
    """The probe did not succeed within the attempt budget.

    Attributes:
        attempts (int): How many probes were made (always equal to the budget).
    """

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class PollCancelledError(Exception):
    """The wait was cancelled through its cancel event."""


async def poll_until(
    probe: Callable[[], Awaitable[Optional[T]]],
    *,
    interval: float,
    max_attempts: int,
    timeout_message: str,
    cancel_event: Optional[asyncio.Event] = None,
) -> T:
    """
    Call `probe` until it returns something other than None.

    Args:
        probe: Async callable; None means "not ready yet".
        interval: Seconds to wait between attempts. No wait follows the last attempt.
        max_attempts: Probe budget; must be at least 1.
        timeout_message: Message of the PollTimeoutError raised on exhaustion.
        cancel_event: When set, the poll stops at the next sleep boundary.

    Returns:
        T: The first non-None probe result.

    Raises:
        PollTimeoutError: After exactly `max_attempts` probes returned None.
        PollCancelledError: If `cancel_event` is set before the probe succeeds.
        ValueError: If max_attempts < 1.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(1, max_attempts + 1):
        if cancel_event is not None and cancel_event.is_set():
            raise PollCancelledError(f"cancelled: {timeout_message}")

        result = await probe()
        if result is not None:
            return result

        logger.debug("poll attempt %d/%d not ready: %s", attempt, max_attempts, timeout_message)
        if attempt == max_attempts:
            break

        if cancel_event is None:
            await asyncio.sleep(interval)
            continue
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue
        raise PollCancelledError(f"cancelled: {timeout_message}")

    raise PollTimeoutError(timeout_message, max_attempts)
