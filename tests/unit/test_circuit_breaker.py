"""Unit tests for CircuitBreaker."""
import asyncio
import time

import pytest

from memoryengine.utils import CircuitBreaker, CircuitOpenError, CircuitState


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FlakyProvider:
    """Async callable that fails until told otherwise."""

    def __init__(self):
        self.calls = 0
        self.failing = True

    async def __call__(self, text: str) -> str:
        self.calls += 1
        if self.failing:
            raise ConnectionError("provider down")
        return text.upper()


async def _fail_times(breaker: CircuitBreaker, provider: FlakyProvider, n: int) -> None:
    for _ in range(n):
        with pytest.raises(ConnectionError):
            await breaker.call(provider, "x")


class TestCircuitBreaker:

    @pytest.mark.asyncio
    async def test_success_passes_through(self):
        provider = FlakyProvider()
        provider.failing = False
        breaker = CircuitBreaker("test")

        assert await breaker.call(provider, "hello") == "HELLO"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_opens_after_threshold_and_fails_fast(self):
        """After five consecutive failures the sixth call never reaches the provider."""
        provider = FlakyProvider()
        breaker = CircuitBreaker("test", failure_threshold=5, cooldown_seconds=60)

        await _fail_times(breaker, provider, 5)
        assert breaker.state == CircuitState.OPEN
        assert provider.calls == 5

        start = time.perf_counter()
        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(provider, "x")
        elapsed = time.perf_counter() - start

        assert elapsed < 0.05
        assert provider.calls == 5
        assert exc_info.value.retry_in > 0
        assert breaker.rejected == 1

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        provider = FlakyProvider()
        breaker = CircuitBreaker("test", failure_threshold=3)

        await _fail_times(breaker, provider, 2)
        provider.failing = False
        await breaker.call(provider, "x")
        provider.failing = True
        await _fail_times(breaker, provider, 2)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats()["consecutive_failures"] == 2

    @pytest.mark.asyncio
    async def test_half_open_trial_closes_on_success(self):
        clock = FakeClock()
        provider = FlakyProvider()
        breaker = CircuitBreaker("test", failure_threshold=2, cooldown_seconds=30, clock=clock)

        await _fail_times(breaker, provider, 2)
        assert breaker.state == CircuitState.OPEN

        clock.advance(31)
        assert breaker.state == CircuitState.HALF_OPEN

        provider.failing = False
        assert await breaker.call(provider, "ok") == "OK"
        assert breaker.state == CircuitState.CLOSED
        assert provider.calls == 3

    @pytest.mark.asyncio
    async def test_half_open_trial_failure_reopens(self):
        clock = FakeClock()
        provider = FlakyProvider()
        breaker = CircuitBreaker("test", failure_threshold=2, cooldown_seconds=30, clock=clock)

        await _fail_times(breaker, provider, 2)
        clock.advance(30)
        await _fail_times(breaker, provider, 1)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await breaker.call(provider, "x")
        assert provider.calls == 3

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self):
        async def slow():
            await asyncio.sleep(1)

        breaker = CircuitBreaker("test", failure_threshold=1)
        with pytest.raises(asyncio.TimeoutError):
            await breaker.call(slow, timeout=0.01)
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_reset(self):
        provider = FlakyProvider()
        breaker = CircuitBreaker("test", failure_threshold=1)
        await _fail_times(breaker, provider, 1)

        breaker.reset()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats()["consecutive_failures"] == 0
