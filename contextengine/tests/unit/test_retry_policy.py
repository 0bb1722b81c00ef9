from __future__ import annotations

import pytest

from contextengine.core.errors import CompressionError, CompressionTimeoutError
from contextengine.services.resilience import RetryPolicy, retry_async


POLICY = RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1)


async def test_retry_async_retries_transient() -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 3:
            raise CompressionTimeoutError("timeout")
        return "ok"

    assert await retry_async(flaky, policy=POLICY) == "ok"
    assert calls["count"] == 3


async def test_retry_async_does_not_retry_permanent_errors() -> None:
    calls = {"count": 0}

    async def broken() -> str:
        calls["count"] += 1
        raise CompressionError("bad request")

    with pytest.raises(CompressionError):
        await retry_async(broken, policy=POLICY)
    assert calls["count"] == 1


async def test_retry_async_honours_custom_predicate() -> None:
    calls = {"count": 0}

    async def broken() -> str:
        calls["count"] += 1
        raise ValueError("nope")

    with pytest.raises(ValueError):
        await retry_async(broken, policy=POLICY, retryable=lambda exc: isinstance(exc, ValueError))
    assert calls["count"] == 3
