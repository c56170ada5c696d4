# prelay/core/interfaces/http_client.py
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, Protocol


class EventStreamPort(Protocol):
    """An opened, long-lived streaming response yielding decoded text lines."""

    def __aiter__(self) -> AsyncIterator[str]:  # pragma: no cover - protocol
        ...

    async def close(self) -> None:  # pragma: no cover - protocol
        ...


class HttpClientPort(ABC):
    @abstractmethod
    async def __aenter__(self) -> "HttpClientPort":
        """Async context manager entry method"""
        pass

    @abstractmethod
    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit method"""
        pass

    @abstractmethod
    async def get(
        self, url: str, timeout: float | None = None, headers: Dict[str, str] | None = None
    ) -> Any:
        """Make a GET request and return the decoded JSON body.

        Non-success statuses raise the matching error from
        `prelay.core.exceptions`. The timeout is optional; adapters may use an
        internal default when timeout is None.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the HTTP client session"""
        pass

    @abstractmethod
    async def post(
        self,
        url: str,
        json: Any = None,
        timeout: float | None = None,
        headers: Dict[str, str] | None = None,
        data: bytes | str | None = None,
    ) -> Dict[str, Any]:
        """Make a POST request. Returns a dict with keys: 'status' (int),
        'reason' (str), 'headers' (dict) and 'body' (parsed JSON or raw text).

        Either `json` (serialized by the adapter) or `data` (sent verbatim) is
        used as the body. Status codes are not raised so the caller can
        inspect them.
        """
        pass

    @abstractmethod
    async def open_stream(
        self, url: str, headers: Dict[str, str] | None = None
    ) -> EventStreamPort:
        """Open a streaming GET (e.g. text/event-stream) and return once the
        response headers arrived with a success status."""
        pass
