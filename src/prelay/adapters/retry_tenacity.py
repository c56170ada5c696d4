import asyncio
import inspect
import random
from typing import Any, Awaitable, Callable, Optional

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from prelay.core.config import RetryPolicy
from prelay.core.exceptions import RateLimitedError, is_retryable
from prelay.core.settings import logger
from prelay.core.utils.backoff import compute_backoff_delay

RetryPredicate = Callable[[BaseException], bool]
OnRetry = Callable[[BaseException, int], Any]

_POLICY_OVERRIDES = ("max_attempts", "min_delay", "max_delay", "backoff_factor", "jitter")


class BackoffWait(wait_base):
    """Capped exponential backoff with optional jitter in `[0, min_delay)`.

    A `RateLimitedError` carrying `retry_after` stretches that wait to the
    server-suggested delay.
    """

    def __init__(self, policy: RetryPolicy, rng: Optional[Callable[[], float]] = None) -> None:
        self.policy = policy
        self.rng = rng

    def __call__(self, retry_state: RetryCallState) -> float:
        delay = compute_backoff_delay(
            retry_state.attempt_number - 1,
            min_delay=self.policy.min_delay,
            max_delay=self.policy.max_delay,
            factor=self.policy.backoff_factor,
            jitter=self.policy.min_delay if self.policy.jitter else 0.0,
            rng=self.rng,
        )
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RateLimitedError) and exc.retry_after:
            delay = max(delay, float(exc.retry_after))
        return delay


class TenacityRetryAdapter:
    """Tenacity-based retry adapter implementing RetryPort.

    Call-time kwargs can override the default policy (`policy`, or any of
    max_attempts, min_delay, max_delay, backoff_factor, jitter) as well as
    `retry_if` and `on_retry`. The last error is re-raised unchanged so
    callers can still branch on its type.

    `sleep` and `rng` are injectable so tests can run without real waits.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        retry_if: RetryPredicate = is_retryable,
        on_retry: Optional[OnRetry] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[Callable[[], float]] = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.retry_if = retry_if
        self.on_retry = on_retry
        self.sleep = sleep
        self.rng = rng or random.random

    def _resolve_policy(self, kwargs: dict) -> RetryPolicy:
        policy = kwargs.pop("policy", None) or self.policy
        updates = {name: kwargs.pop(name) for name in _POLICY_OVERRIDES if name in kwargs}
        if updates:
            policy = RetryPolicy(**{**policy.model_dump(), **updates})
        return policy

    async def execute(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        policy = self._resolve_policy(kwargs)
        retry_if: RetryPredicate = kwargs.pop("retry_if", self.retry_if)
        on_retry: Optional[OnRetry] = kwargs.pop("on_retry", self.on_retry)
        name = getattr(func, "__name__", repr(func))

        def should_retry(exc: BaseException) -> bool:
            # Cancellation is never a transient failure
            if isinstance(exc, asyncio.CancelledError):
                return False
            return retry_if(exc)

        async def before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception()
            attempt_index = retry_state.attempt_number - 1
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                f"[retry] {name} failed attempt={attempt_index + 1}/{policy.max_attempts} "
                f"retry_in={delay:.3f}s error={exc!r}"
            )
            if on_retry is not None:
                result = on_retry(exc, attempt_index)
                if inspect.isawaitable(result):
                    await result

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=BackoffWait(policy, self.rng),
            retry=retry_if_exception(should_retry),
            before_sleep=before_sleep,
            sleep=self.sleep,
            reraise=True,
        )
        async for attempt in retrying:  # pragma: no cover - control flow instrumentation
            with attempt:
                return await func(*args, **kwargs)


async def execute_with_retry(
    operation: Callable[..., Awaitable[Any]], *args, **kwargs
) -> Any:
    """One-off retry with a default adapter; accepts the same overrides as `execute`."""
    sleep = kwargs.pop("sleep", asyncio.sleep)
    rng = kwargs.pop("rng", None)
    return await TenacityRetryAdapter(sleep=sleep, rng=rng).execute(operation, *args, **kwargs)
