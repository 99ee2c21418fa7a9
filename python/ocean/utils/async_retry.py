"""
ocean/utils/async_retry.py

Decorator that re-runs an async callable a bounded number of times when it raises.
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Tuple, Type
from typing_extensions import ParamSpec, TypeVar

P = ParamSpec("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)


def async_retry(
    retries: int = 3,
    delay: float = 1.0,
    noisy: bool = False,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> Callable[
    [Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]
]:
    """Retry an async function on failure.

    Args:
        retries (int, optional):
            Total attempts, including the first. Values below 1 mean one attempt.
            Defaults to 3.
        delay (float, optional):
            Seconds to sleep between attempts. Defaults to 1.0.
        noisy (bool, optional):
            If True, log a warning per failed attempt and an error when the
            budget is exhausted. Defaults to False.
        retry_on (Tuple[Type[BaseException], ...], optional):
            Exception types that trigger another attempt. Anything else
            propagates immediately. Defaults to (Exception,).

    Returns:
        A decorator producing a wrapped coroutine function with the same signature.
    """
    attempts = max(retries, 1)

    def decorator(
        func: Callable[P, Coroutine[Any, Any, R]]
    ) -> Callable[P, Coroutine[Any, Any, R]]:
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            attempt_number = 1
            while True:
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    if noisy:
                        logger.warning(
                            "Attempt %d/%d of %r failed: %s",
                            attempt_number,
                            attempts,
                            func.__qualname__,
                            exc,
                        )
                    if attempt_number >= attempts:
                        if noisy:
                            logger.error(
                                "All %d attempts of %r failed",
                                attempts,
                                func.__qualname__,
                            )
                        raise
                    attempt_number += 1
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
