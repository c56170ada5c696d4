"""Tests for the tenacity-backed retry engine.

Sleeps are recorded instead of awaited so delay sequences can be asserted
exactly and the suite never waits in real time.
"""

import asyncio

import pytest

from prelay.adapters.retry_tenacity import TenacityRetryAdapter, execute_with_retry
from prelay.core.config import RetryPolicy
from prelay.core.exceptions import (
    APIError,
    AuthenticationError,
    RateLimitedError,
    TransientNetworkError,
    ValidationError,
)


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class FlakyOperation:
    """Fails with the given errors in order, then returns `result`."""

    def __init__(self, errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self, *args, **kwargs):
        self.calls += 1
        self.args = args
        self.kwargs = kwargs
        if self.errors:
            raise self.errors.pop(0)
        return self.result


@pytest.fixture
def sleeps():
    return SleepRecorder()


def make_adapter(sleeps, **policy):
    policy.setdefault("jitter", False)
    return TenacityRetryAdapter(policy=RetryPolicy(**policy), sleep=sleeps)


class TestAttempts:
    @pytest.mark.asyncio
    async def test_success_on_first_attempt_does_not_sleep(self, sleeps):
        op = FlakyOperation([])
        result = await make_adapter(sleeps).execute(op, "pred_1", flag=True)

        assert result == "ok"
        assert op.calls == 1
        assert op.args == ("pred_1",)
        assert op.kwargs == {"flag": True}
        assert sleeps.delays == []

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self, sleeps):
        op = FlakyOperation([TransientNetworkError("reset"), TransientNetworkError("reset")])
        result = await make_adapter(sleeps, max_attempts=3).execute(op)

        assert result == "ok"
        assert op.calls == 3

    @pytest.mark.asyncio
    async def test_always_failing_operation_is_invoked_exactly_max_attempts(self, sleeps):
        errors = [TransientNetworkError(f"boom {i}") for i in range(10)]
        op = FlakyOperation(errors)

        with pytest.raises(TransientNetworkError) as excinfo:
            await make_adapter(sleeps, max_attempts=4).execute(op)

        assert op.calls == 4
        # the last error surfaces unchanged
        assert excinfo.value.message == "boom 3"
        assert len(sleeps.delays) == 3

    @pytest.mark.asyncio
    async def test_predicate_rejecting_error_means_single_invocation(self, sleeps):
        op = FlakyOperation([TransientNetworkError("nope")])
        adapter = make_adapter(sleeps, max_attempts=5)

        with pytest.raises(TransientNetworkError):
            await adapter.execute(op, retry_if=lambda exc: False)

        assert op.calls == 1
        assert sleeps.delays == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [AuthenticationError(), ValidationError("bad config"), APIError(400, "bad_request", "invalid input")],
    )
    async def test_non_retryable_errors_surface_immediately(self, sleeps, error):
        op = FlakyOperation([error])

        with pytest.raises(type(error)):
            await make_adapter(sleeps, max_attempts=5).execute(op)

        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_cancellation_is_never_retried(self, sleeps):
        op = FlakyOperation([asyncio.CancelledError()])

        with pytest.raises(asyncio.CancelledError):
            await make_adapter(sleeps, max_attempts=5).execute(op, retry_if=lambda exc: True)

        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_call_time_override_of_max_attempts(self, sleeps):
        op = FlakyOperation([TransientNetworkError("x")] * 10)

        with pytest.raises(TransientNetworkError):
            await make_adapter(sleeps, max_attempts=5).execute(op, max_attempts=2)

        assert op.calls == 2


class TestDelays:
    @pytest.mark.asyncio
    async def test_exponential_delays_are_capped(self, sleeps):
        op = FlakyOperation([TransientNetworkError("x")] * 10)
        adapter = make_adapter(sleeps, max_attempts=6, min_delay=1.0, max_delay=10.0, backoff_factor=2.0)

        with pytest.raises(TransientNetworkError):
            await adapter.execute(op)

        assert sleeps.delays == [1.0, 2.0, 4.0, 8.0, 10.0]

    @pytest.mark.asyncio
    async def test_jitter_is_added_after_the_cap(self, sleeps):
        op = FlakyOperation([TransientNetworkError("x")] * 3)
        adapter = TenacityRetryAdapter(
            policy=RetryPolicy(max_attempts=3, min_delay=1.0, max_delay=1.5, jitter=True),
            sleep=sleeps,
            rng=lambda: 0.5,
        )

        with pytest.raises(TransientNetworkError):
            await adapter.execute(op)

        # base delays 1.0 and min(1.5, 2.0), each plus 0.5 * min_delay
        assert sleeps.delays == [1.5, 2.0]

    @pytest.mark.asyncio
    async def test_rate_limit_retry_after_stretches_the_wait(self, sleeps):
        op = FlakyOperation([RateLimitedError(retry_after=5.0)])
        result = await make_adapter(sleeps, max_attempts=3, min_delay=1.0).execute(op)

        assert result == "ok"
        assert sleeps.delays == [5.0]

    @pytest.mark.asyncio
    async def test_short_retry_after_keeps_the_backoff_delay(self, sleeps):
        op = FlakyOperation([RateLimitedError(retry_after=0.1)])
        await make_adapter(sleeps, max_attempts=3, min_delay=2.0).execute(op)

        assert sleeps.delays == [2.0]


class TestOnRetry:
    @pytest.mark.asyncio
    async def test_on_retry_receives_error_and_zero_based_attempt_index(self, sleeps):
        seen = []
        errors = [TransientNetworkError("a"), TransientNetworkError("b")]
        op = FlakyOperation(list(errors))

        await make_adapter(sleeps, max_attempts=3).execute(
            op, on_retry=lambda exc, attempt: seen.append((exc.message, attempt))
        )

        assert seen == [("a", 0), ("b", 1)]

    @pytest.mark.asyncio
    async def test_async_on_retry_is_awaited(self, sleeps):
        seen = []

        async def on_retry(exc, attempt):
            seen.append(attempt)

        op = FlakyOperation([TransientNetworkError("a")])
        await make_adapter(sleeps).execute(op, on_retry=on_retry)

        assert seen == [0]

    @pytest.mark.asyncio
    async def test_on_retry_not_called_for_final_failure(self, sleeps):
        seen = []
        op = FlakyOperation([TransientNetworkError("x")] * 5)

        with pytest.raises(TransientNetworkError):
            await make_adapter(sleeps, max_attempts=2).execute(
                op, on_retry=lambda exc, attempt: seen.append(attempt)
            )

        assert seen == [0]


@pytest.mark.asyncio
async def test_execute_with_retry_one_off_helper(sleeps):
    op = FlakyOperation([TransientNetworkError("x")])
    result = await execute_with_retry(op, "arg", sleep=sleeps, jitter=False, min_delay=0.5)

    assert result == "ok"
    assert op.args == ("arg",)
    assert sleeps.delays == [0.5]
