import random

import httpx
import pytest

from counsel_intake.config import RetryConfig
from counsel_intake.retry import backoff_delay, is_transient_error, with_retry


def _status_error(code):
    request = httpx.Request("POST", "http://lm.test/v1/chat/completions")
    return httpx.HTTPStatusError("failed", request=request, response=httpx.Response(code, request=request))


def test_transient_classification():
    assert is_transient_error(httpx.ConnectError("refused"))
    assert is_transient_error(httpx.ReadTimeout("slow"))
    assert is_transient_error(_status_error(503))
    assert is_transient_error(_status_error(429))
    assert not is_transient_error(_status_error(400))
    assert not is_transient_error(ValueError("bad"))


def test_backoff_grows_and_is_capped():
    policy = RetryConfig(attempts=5, base_delay_ms=100, multiplier=2.0, max_delay_ms=300, jitter_ms=0)
    assert [backoff_delay(n, policy) for n in (1, 2, 3, 4)] == [0.1, 0.2, 0.3, 0.3]
    jittered = RetryConfig(base_delay_ms=100, jitter_ms=50)
    assert 0.1 <= backoff_delay(1, jittered, random.Random(7)) <= 0.15


@pytest.mark.asyncio
async def test_with_retry_retries_transient_failures():
    calls = []
    sleeps = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise httpx.ConnectError("refused")
        return "ok"

    async def fake_sleep(delay):
        sleeps.append(delay)

    policy = RetryConfig(attempts=3, base_delay_ms=10, max_delay_ms=10, jitter_ms=0)
    assert await with_retry(flaky, policy, sleep=fake_sleep) == "ok"
    assert len(calls) == 3
    assert sleeps == [0.01, 0.01]


@pytest.mark.asyncio
async def test_with_retry_gives_up_after_attempts():
    calls = []

    async def down():
        calls.append(1)
        raise _status_error(502)

    async def no_sleep(delay):
        return None

    with pytest.raises(httpx.HTTPStatusError):
        await with_retry(down, RetryConfig(attempts=2), sleep=no_sleep)
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_with_retry_does_not_retry_permanent_errors():
    calls = []

    async def broken():
        calls.append(1)
        raise ValueError("model not found in /v1/models")

    with pytest.raises(ValueError):
        await with_retry(broken, RetryConfig(attempts=5))
    assert len(calls) == 1
