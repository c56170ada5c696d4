from typing import Protocol, Any, Awaitable, Callable

class RetryPort(Protocol):
    """Abstract retry interface for async operations.

    Implementations provide bounded exponential backoff for transient failures.
    The contract keeps the core decoupled from a specific library (tenacity/backoff).
    """
    async def execute(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:  # pragma: no cover - protocol
        """Execute an async callable with retry semantics.

        Args:
            func: Async callable returning a result.
            *args/**kwargs: Passed to the callable.
            Supported kw overrides (optional): policy, max_attempts, min_delay,
            max_delay, backoff_factor, jitter, retry_if, on_retry.
        Returns:
            Result of the successful invocation.
        Raises:
            The last exception, unchanged, once attempts are exhausted or
            `retry_if` rejects it.
        """
        ...
