import asyncio

import pytest

from ocean.utils.async_retry import async_retry
from ocean.utils.poll import PollCancelledError, PollTimeoutError, poll_until


async def test_returns_first_result():
    calls = []

    async def probe():
        calls.append(1)
        return "ready" if len(calls) == 3 else None

    assert await poll_until(probe, interval=0, max_attempts=5, timeout_message="x") == "ready"
    assert len(calls) == 3


async def test_exhausts_exact_budget():
    calls = []

    async def probe():
        calls.append(1)
        return None

    with pytest.raises(PollTimeoutError) as info:
        await poll_until(probe, interval=0, max_attempts=4, timeout_message="vpc not available")

    assert len(calls) == 4
    assert info.value.attempts == 4
    assert "vpc not available" in str(info.value)


async def test_cancel_event_interrupts_sleep():
    cancel = asyncio.Event()
    calls = []

    async def probe():
        calls.append(1)
        cancel.set()
        return None

    with pytest.raises(PollCancelledError):
        await poll_until(probe, interval=30, max_attempts=10, timeout_message="x", cancel_event=cancel)
    assert len(calls) == 1


async def test_invalid_budget():
    async def probe():
        return True

    with pytest.raises(ValueError):
        await poll_until(probe, interval=0, max_attempts=0, timeout_message="x")


async def test_async_retry_recovers():
    attempts = []

    @async_retry(retries=3, delay=0)
    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise RuntimeError("transient")
        return "ok"

    assert await flaky() == "ok"
    assert len(attempts) == 3


async def test_async_retry_only_retries_listed_errors():
    attempts = []

    @async_retry(retries=3, delay=0, retry_on=(ConnectionError,))
    async def broken():
        attempts.append(1)
        raise KeyError("fatal")

    with pytest.raises(KeyError):
        await broken()
    assert len(attempts) == 1
