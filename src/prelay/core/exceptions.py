import asyncio
import platform
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import aiohttp


class RelayError(Exception):
    """Base exception for relay errors.

    Attributes:
        message: Human-readable error description
        context: Structured diagnostic values (status codes, ids, ...)
    """
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def report(self) -> str:
        """Detailed text report including context and traceback (if raised)."""
        lines = [f"Error: {self.message}"]
        if self.context:
            lines.append("Context:")
            for key, value in self.context.items():
                lines.append(f"  {key}: {value!r}")
        if self.__traceback__ is not None:
            lines.append("")
            lines.append("Stack trace:")
            lines.extend(
                line.rstrip("\n") for line in traceback.format_tb(self.__traceback__)
            )
        return "\n".join(lines)


class TransientNetworkError(RelayError):
    """Timeout, connection reset or 5xx-class failure talking to a remote service.

    Attributes:
        url: Target URL (if known)
        status: Upstream HTTP status (None for network-level failures)
    """
    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None):
        self.url = url
        self.status = status
        super().__init__(message, {"url": url, "status": status})


class RateLimitedError(RelayError):
    """Raised when the remote service signals rate limiting (HTTP 429).

    Attributes:
        retry_after: Server-suggested delay in seconds
        remaining_requests: Remaining request budget (if reported)
        reset_time: When the budget resets (if reported)
    """
    def __init__(
        self,
        retry_after: float,
        remaining_requests: Optional[int] = None,
        reset_time: Optional[datetime] = None,
    ):
        self.retry_after = retry_after
        self.remaining_requests = remaining_requests
        self.reset_time = reset_time
        super().__init__(
            f"Rate limit exceeded. Retry after {retry_after} seconds.",
            {
                "retry_after": retry_after,
                "remaining_requests": remaining_requests,
                "reset_time": reset_time.isoformat() if reset_time else None,
            },
        )


class AuthenticationError(RelayError):
    def __init__(self, details: Optional[str] = None):
        message = "Invalid or missing API token"
        if details:
            message += f": {details}"
        super().__init__(message, {"details": details})


class NotFoundError(RelayError):
    def __init__(self, resource: str, details: Optional[str] = None):
        self.resource = resource
        message = f"Resource not found: {resource}"
        if details:
            message += f" ({details})"
        super().__init__(message, {"resource": resource, "details": details})


class APIError(RelayError):
    """Non-success response from the remote job API.

    Attributes:
        status: HTTP status code
        code: Error code reported by the service (or the status reason)
        response: Parsed response body, if any
    """
    def __init__(self, status: int, code: str, message: str, response: Any = None):
        self.status = status
        self.code = code
        self.response = response
        super().__init__(
            f"API error ({status}): {message}",
            {"status": status, "code": code, "response": response},
        )


class ValidationError(RelayError):
    """Invalid caller-supplied configuration. Never retried.

    Attributes:
        errors: Individual validation messages
        field: Offending field, when a single field is at fault
    """
    def __init__(self, message: str, errors: Optional[List[str]] = None, field: Optional[str] = None):
        self.errors = errors or [message]
        self.field = field
        super().__init__(message, {"errors": self.errors, "field": field})


RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
DEFAULT_RETRY_AFTER = 60.0


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    for key, value in headers.items():
        if key.lower() == name.lower():
            return value
    return None


def _parse_float(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def error_for_status(
    status: int,
    url: str,
    reason: Optional[str] = None,
    headers: Optional[Mapping[str, str]] = None,
    body: Any = None,
) -> Optional[RelayError]:
    """Map an HTTP response onto the error taxonomy (None for success)."""
    if status < 400:
        return None
    headers = headers or {}
    if status == 401:
        return AuthenticationError(reason)
    if status == 404:
        return NotFoundError(url)
    if status == 429:
        retry_after = _parse_float(_header(headers, "Retry-After"))
        remaining = _parse_float(_header(headers, "X-RateLimit-Remaining"))
        return RateLimitedError(
            retry_after if retry_after is not None else DEFAULT_RETRY_AFTER,
            remaining_requests=int(remaining) if remaining is not None else None,
        )
    code = reason or "unknown_error"
    message = reason or "Request failed"
    if isinstance(body, dict):
        message = body.get("detail") or body.get("error") or message
        code = body.get("code") or code
    return APIError(status, str(code), str(message), body)


def is_retryable(exc: BaseException) -> bool:
    """Default retry classification.

    Retryable: network/timeout failures, 5xx and 408 responses, rate limiting.
    Not retryable: authentication, validation, not-found and anything unknown.
    """
    if isinstance(exc, (RateLimitedError, TransientNetworkError)):
        return True
    if isinstance(exc, (AuthenticationError, NotFoundError, ValidationError)):
        return False
    if isinstance(exc, APIError):
        return exc.status in RETRYABLE_STATUS_CODES or exc.status >= 500
    if isinstance(exc, (asyncio.TimeoutError, aiohttp.ClientConnectionError)):
        return True
    return False


def create_error_report(exc: BaseException) -> Dict[str, Any]:
    """Structured error report suitable for logging or API responses."""
    report: Dict[str, Any] = {
        "name": type(exc).__name__,
        "message": exc.message if isinstance(exc, RelayError) else str(exc),
        "environment": {
            "python_version": sys.version.split()[0],
            "platform": sys.platform,
            "machine": platform.machine(),
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if isinstance(exc, RelayError):
        report["context"] = exc.context
    return report
