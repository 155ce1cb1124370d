"""Unit tests for retry with exponential backoff."""
import pytest

from src.utils.retry import with_retry


class FakeSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class TestWithRetry:
    """Test the retry decorator."""

    @pytest.mark.asyncio
    async def test_success_first_try(self):
        sleep = FakeSleep()

        @with_retry(max_retries=3, sleep=sleep)
        async def fetch():
            return "ok"

        assert await fetch() == "ok"
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_retries_with_exponential_backoff(self):
        sleep = FakeSleep()
        calls = []

        @with_retry(max_retries=3, base_delay=1.0, max_delay=3.0, sleep=sleep)
        async def fetch():
            calls.append(1)
            if len(calls) < 4:
                raise ConnectionError("rpc down")
            return "ok"

        assert await fetch() == "ok"
        assert len(calls) == 4
        assert sleep.delays == [1.0, 2.0, 3.0]

    @pytest.mark.asyncio
    async def test_exhaustion_reraises_last_error(self):
        sleep = FakeSleep()

        @with_retry(max_retries=2, base_delay=0.5, sleep=sleep)
        async def fetch():
            raise TimeoutError("slow")

        with pytest.raises(TimeoutError):
            await fetch()
        assert sleep.delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_non_retryable_error_propagates_immediately(self):
        sleep = FakeSleep()
        calls = []

        @with_retry(max_retries=3, sleep=sleep)
        async def fetch():
            calls.append(1)
            raise ValueError("bad pair")

        with pytest.raises(ValueError):
            await fetch()
        assert len(calls) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_preserves_function_name(self):
        @with_retry()
        async def get_market_data():
            return None

        assert get_market_data.__name__ == "get_market_data"
