# prelay/adapters/aiohttp_client_adapter.py
import asyncio
import aiohttp
from typing import Any, AsyncIterator, Dict, Optional

from prelay.core.interfaces.http_client import HttpClientPort
from prelay.core.exceptions import (
    APIError,
    AuthenticationError,
    NotFoundError,
    RateLimitedError,
    TransientNetworkError,
    error_for_status,
)
from prelay.core.settings import logger


class AioHttpEventStream:
    """Streaming response wrapper yielding decoded lines without line endings."""

    def __init__(self, response: aiohttp.ClientResponse, url: str):
        self._response = response
        self._url = url

    async def __aiter__(self) -> AsyncIterator[str]:
        try:
            async for raw in self._response.content:
                yield raw.decode("utf-8", errors="replace").rstrip("\r\n")
        except asyncio.TimeoutError as exc:
            raise TransientNetworkError(f"Stream read timed out: {self._url}", url=self._url) from exc
        except aiohttp.ClientError as exc:
            raise TransientNetworkError(f"Stream broken: {exc}", url=self._url) from exc

    async def close(self) -> None:
        if not self._response.closed:
            self._response.close()


class AioHttpClientAdapter(HttpClientPort):
    def __init__(self, default_headers: Optional[Dict[str, str]] = None):
        self._session: Optional[aiohttp.ClientSession] = None
        self._default_headers = default_headers or {}
        # Per-field defaults used when callers do not pass a timeout
        self._default_total: float = 10.0
        self._default_sock_read: float = 10.0
        self._default_sock_connect: float = 5.0
        self._default_client_timeout = aiohttp.ClientTimeout(
            total=self._default_total,
            sock_read=self._default_sock_read,
            sock_connect=self._default_sock_connect,
        )

    async def __aenter__(self):
        """Async context manager entry"""
        self._session = aiohttp.ClientSession(headers=self._default_headers)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit"""
        await self.close()
        return False

    def _timeout(self, timeout: float | None) -> aiohttp.ClientTimeout:
        if timeout is None:
            return self._default_client_timeout
        # Keep adapter-level sock_connect but apply provided total
        return aiohttp.ClientTimeout(
            total=timeout,
            sock_connect=min(self._default_sock_connect, timeout),
        )

    def _require_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("HTTP client not initialized. Use 'async with' context manager.")
        return self._session

    async def _raise_for_status(self, response: aiohttp.ClientResponse, url: str) -> None:
        """Translate non-success statuses into the relay error taxonomy."""
        if response.status < 400:
            return

        details: Any = None
        if response.status not in (401, 404, 429):
            try:
                details = await response.json(content_type=None)
            except (aiohttp.ContentTypeError, ValueError):
                details = None

        error = error_for_status(
            response.status, url, reason=response.reason, headers=response.headers, body=details
        )
        if isinstance(error, AuthenticationError):
            logger.warning("Authentication failed when requesting remote service. URL: %s", url)
        elif isinstance(error, RateLimitedError):
            logger.warning(
                "Rate limited by remote service. URL: %s, retry_after=%s", url, error.retry_after
            )
        elif not isinstance(error, NotFoundError):
            logger.error(
                "HTTP error when requesting remote service. URL: %s, Status: %s, Error: %s",
                url,
                response.status,
                error.message,
            )
        raise error

    async def get(
        self, url: str, timeout: float | None = None, headers: Dict[str, str] | None = None
    ) -> Any:
        session = self._require_session()
        try:
            async with session.get(url, timeout=self._timeout(timeout), headers=headers) as response:
                await self._raise_for_status(response, url)
                try:
                    return await response.json()
                except aiohttp.ContentTypeError:
                    response_text = await response.text()
                    logger.error(
                        "Invalid JSON response from remote service. URL: %s, Content: %s",
                        url,
                        response_text[:500],
                    )
                    raise APIError(
                        502,
                        "invalid_response",
                        f"The response from the remote service was not valid JSON: '{response_text[:100]}'",
                    )

        except asyncio.TimeoutError as exc:
            logger.error("Timeout when requesting remote service. URL: %s", url)
            raise TransientNetworkError("The request to the remote service timed out.", url=url) from exc

        except aiohttp.ClientError as client_error:
            logger.error(
                "Connection error when requesting remote service. URL: %s, Error: %s",
                url,
                str(client_error),
            )
            raise TransientNetworkError(
                f"There was a connection error with the remote service: {client_error}", url=url
            ) from client_error

    async def close(self) -> None:
        """Close the session"""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def post(
        self,
        url: str,
        json: Any = None,
        timeout: float | None = None,
        headers: Dict[str, str] | None = None,
        data: bytes | str | None = None,
    ) -> Dict[str, Any]:
        session = self._require_session()
        kwargs: Dict[str, Any] = {"data": data} if data is not None else {"json": json}
        try:
            async with session.post(
                url, timeout=self._timeout(timeout), headers=headers, **kwargs
            ) as response:
                # Status is returned, not raised, so the caller can inspect it
                try:
                    body = await response.json()
                except (aiohttp.ContentTypeError, ValueError):
                    body = await response.text()

                return {
                    "status": response.status,
                    "reason": response.reason or "",
                    "headers": dict(response.headers),
                    "body": body,
                }

        except asyncio.TimeoutError as exc:
            logger.error("Timeout when POSTing to remote service. URL: %s", url)
            raise TransientNetworkError("The request to the remote service timed out.", url=url) from exc
        except aiohttp.ClientError as client_err:
            logger.error("Connection error when POSTing to remote service. URL: %s, Error: %s", url, str(client_err))
            raise TransientNetworkError(
                f"There was a connection error with the remote service: {client_err}", url=url
            ) from client_err

    async def open_stream(
        self, url: str, headers: Dict[str, str] | None = None
    ) -> AioHttpEventStream:
        session = self._require_session()
        stream_headers = {"Accept": "text/event-stream", **(headers or {})}
        # No total/read timeout: the stream is long-lived and kept alive by the peer
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self._default_sock_connect, sock_read=None)
        try:
            response = await session.get(url, headers=stream_headers, timeout=timeout)
        except asyncio.TimeoutError as exc:
            logger.error("Timeout when opening stream. URL: %s", url)
            raise TransientNetworkError("Opening the event stream timed out.", url=url) from exc
        except aiohttp.ClientError as client_err:
            logger.error("Connection error when opening stream. URL: %s, Error: %s", url, str(client_err))
            raise TransientNetworkError(
                f"Could not open event stream: {client_err}", url=url
            ) from client_err

        try:
            await self._raise_for_status(response, url)
        except Exception:
            response.close()
            raise
        return AioHttpEventStream(response, url)
