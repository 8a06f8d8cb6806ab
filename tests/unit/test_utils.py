"""Unit tests for retry helpers."""

from unittest.mock import AsyncMock

import pytest

from gmail_mirror.utils import backoff_delay, retry_on_failure, utcnow


class TestBackoff:
    def test_delay_is_bounded(self) -> None:
        for attempt in range(10):
            wait = backoff_delay(attempt, 1.0, 2.0, 30.0)
            assert 0 <= wait <= min(30.0, 2.0**attempt)

    def test_zero_delay(self) -> None:
        assert backoff_delay(3, 0.0, 2.0, 30.0) == 0.0


class TestRetryOnFailure:
    """Test suite for retry_on_failure."""

    @pytest.mark.asyncio
    async def test_returns_first_success(self) -> None:
        func = AsyncMock(side_effect=[ConnectionError("reset"), "ok"])
        sleep = AsyncMock()

        result = await retry_on_failure(func, max_retries=3, sleep=sleep)

        assert result == "ok"
        assert func.await_count == 2
        sleep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self) -> None:
        func = AsyncMock(side_effect=ConnectionError("reset"))
        sleep = AsyncMock()

        with pytest.raises(ConnectionError):
            await retry_on_failure(func, max_retries=2, sleep=sleep)

        assert func.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_error_raises_immediately(self) -> None:
        func = AsyncMock(side_effect=ValueError("bad request"))
        sleep = AsyncMock()

        with pytest.raises(ValueError):
            await retry_on_failure(func, should_retry=lambda exc: isinstance(exc, ConnectionError), sleep=sleep)

        assert func.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_on_retry_hook_sees_each_failure(self) -> None:
        func = AsyncMock(side_effect=[TimeoutError(), TimeoutError(), 7])
        seen: list[type] = []

        async def on_retry(exc: Exception, wait: float) -> None:
            seen.append(type(exc))

        assert await retry_on_failure(func, on_retry=on_retry, sleep=AsyncMock()) == 7
        assert seen == [TimeoutError, TimeoutError]


def test_utcnow_is_naive() -> None:
    assert utcnow().tzinfo is None
