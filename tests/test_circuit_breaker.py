"""Tests for the per-source circuit breaker."""

import pytest

from termtune.exceptions import JobCancelled, PermanentFetchError, TransientFetchError
from termtune.utils.circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitState


async def fail_with(breaker: CircuitBreaker, error: Exception) -> None:
    with pytest.raises(type(error)):
        async with breaker:
            raise error


async def succeed(breaker: CircuitBreaker) -> None:
    async with breaker:
        pass


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_opens_after_consecutive_failures(self):
        breaker = CircuitBreaker("host", failure_threshold=3, recovery_timeout=60)

        for _ in range(3):
            await fail_with(breaker, TransientFetchError("down"))

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await succeed(breaker)

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        breaker = CircuitBreaker("host", failure_threshold=2, recovery_timeout=60)

        await fail_with(breaker, TransientFetchError("down"))
        await succeed(breaker)
        await fail_with(breaker, TransientFetchError("down"))

        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_permanent_and_cancelled_do_not_count(self):
        breaker = CircuitBreaker("host", failure_threshold=1, recovery_timeout=60)

        await fail_with(breaker, PermanentFetchError("missing"))
        await fail_with(breaker, JobCancelled("stop"))

        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_recovers_through_half_open(self):
        breaker = CircuitBreaker(
            "host", failure_threshold=1, recovery_timeout=0, success_threshold=2
        )
        await fail_with(breaker, TransientFetchError("down"))
        assert breaker.state == CircuitState.OPEN

        await succeed(breaker)
        assert breaker.state == CircuitState.HALF_OPEN
        await succeed(breaker)

        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_failed_trial_reopens(self):
        breaker = CircuitBreaker("host", failure_threshold=1, recovery_timeout=0)
        await fail_with(breaker, TransientFetchError("down"))

        await fail_with(breaker, OSError("still down"))

        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_stays_open_until_recovery_timeout(self, clock):
        breaker = CircuitBreaker("host", failure_threshold=1, recovery_timeout=30, clock=clock)
        await fail_with(breaker, TransientFetchError("down"))

        clock.advance(29)
        with pytest.raises(CircuitOpenError):
            await succeed(breaker)

        clock.advance(1)
        await succeed(breaker)
        assert breaker.state == CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_half_open_limits_trial_fetches(self, clock):
        breaker = CircuitBreaker(
            "host", failure_threshold=1, recovery_timeout=10, success_threshold=1, clock=clock
        )
        await fail_with(breaker, TransientFetchError("down"))
        clock.advance(10)

        async with breaker:
            with pytest.raises(CircuitOpenError):
                await succeed(breaker)

        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_failure_count(self):
        breaker = CircuitBreaker("host", failure_threshold=5)

        await fail_with(breaker, TransientFetchError("down"))
        await fail_with(breaker, OSError("down"))

        assert breaker.failure_count == 2

    def test_open_error_is_transient(self):
        assert issubclass(CircuitOpenError, TransientFetchError)
