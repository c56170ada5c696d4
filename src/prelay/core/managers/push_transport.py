"""PushTransport: long-lived push connections with resource subscriptions.

Each logical connection owns:
- an upstream event stream opened through `HttpClientPort.open_stream`
- a supervisor task reading that stream and reconnecting it in a loop
- a keep-alive task queueing `keep-alive` frames while the connection is open
- a bounded outbox of frames consumed by the SSE endpoint
- the set of resource URIs it subscribed to

The connection id stays stable across reconnects, so subscriptions and the
outbox survive a dropped upstream stream.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, FrozenSet, List, Optional, Set

from prelay.core.config import TransportConfig
from prelay.core.exceptions import TransientNetworkError
from prelay.core.interfaces.http_client import EventStreamPort, HttpClientPort
from prelay.core.interfaces.observers import TransportObserver
from prelay.core.models.messages import (
    JsonRpcNotification,
    create_session_closed_notification,
    parse_message,
)
from prelay.core.models.push import (
    FRAME_KEEP_ALIVE,
    FRAME_MESSAGE,
    FRAME_NOTIFICATION,
    ConnectionInfo,
    ConnectionState,
    PushFrame,
)
from prelay.core.settings import logger
from prelay.core.utils.backoff import compute_backoff_delay

_DATA_PREFIX = "data:"


class _Connection:
    def __init__(self, connection_id: str, outbox_size: int) -> None:
        self.id = connection_id
        self.state = ConnectionState.connecting
        self.reconnect_attempts = 0
        self.subscriptions: Set[str] = set()
        self.outbox: asyncio.Queue = asyncio.Queue(maxsize=outbox_size)
        self.finished = False
        self.stream: Optional[EventStreamPort] = None
        self.supervisor: Optional[asyncio.Task] = None
        self.keep_alive: Optional[asyncio.Task] = None

    def info(self) -> ConnectionInfo:
        return ConnectionInfo(
            id=self.id,
            state=self.state,
            reconnect_attempts=self.reconnect_attempts,
            subscriptions=frozenset(self.subscriptions),
        )


class PushTransport:
    def __init__(
        self,
        http_client: HttpClientPort,
        config: Optional[TransportConfig] = None,
        observers: Optional[List[TransportObserver]] = None,
        stream_headers: Optional[Dict[str, str]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._http = http_client
        self.config = config or TransportConfig()
        self._observers: List[TransportObserver] = list(observers or [])
        self._stream_headers = stream_headers
        self._sleep = sleep
        self._connections: Dict[str, _Connection] = {}
        self._auto_reconnect = True

    def add_observer(self, observer: TransportObserver) -> None:
        self._observers.append(observer)

    # ---------------- Read-only views -----------------
    def get_connection(self, connection_id: str) -> Optional[ConnectionInfo]:
        conn = self._connections.get(connection_id)
        return conn.info() if conn else None

    def connections(self) -> List[ConnectionInfo]:
        return [conn.info() for conn in self._connections.values()]

    def subscriptions(self, connection_id: str) -> FrozenSet[str]:
        conn = self._connections.get(connection_id)
        return frozenset(conn.subscriptions) if conn else frozenset()

    # ---------------- Lifecycle -----------------
    async def connect(self) -> str:
        """Open a new logical connection and return its id.

        The first open is awaited here; if it fails the connection stays
        registered and the supervisor goes straight to reconnecting.

        Raises:
            TransientNetworkError: `disconnect()` ran while the stream was opening.
        """
        self._auto_reconnect = True
        conn = _Connection(str(uuid.uuid4()), self.config.outbox_size)
        self._connections[conn.id] = conn
        logger.info(f"[push:connect] connecting connection_id={conn.id} url={self.config.stream_url}")

        first_error: Optional[Exception] = None
        try:
            await self._open(conn)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(f"[push:connect] first open failed connection_id={conn.id} error={exc!r}")
            conn.state = ConnectionState.closed
            first_error = exc

        if self._connections.get(conn.id) is not conn or not self._auto_reconnect:
            # disconnect() ran while the stream was opening
            self._connections.pop(conn.id, None)
            await self._close(conn)
            logger.info(f"[push:connect] transport disconnected while connecting connection_id={conn.id}")
            raise TransientNetworkError("Transport disconnected while connecting", url=self.config.stream_url)

        conn.supervisor = asyncio.create_task(
            self._supervise(conn, first_error), name=f"push:{conn.id}"
        )
        return conn.id

    async def disconnect(self, reason: str = "server shutdown") -> None:
        """Close every connection. Safe to call repeatedly."""
        self._auto_reconnect = False
        conns = list(self._connections.values())
        self._connections.clear()
        if not conns:
            return

        closing = create_session_closed_notification(reason).to_wire()
        for conn in conns:
            if conn.state == ConnectionState.open:
                self._enqueue(conn, PushFrame(event=FRAME_NOTIFICATION, data=closing))
        for conn in conns:
            await self._close(conn)

        logger.info(f"[push:disconnect] closed {len(conns)} connection(s) reason={reason}")
        await self._notify_disconnected()

    async def close_connection(self, connection_id: str) -> bool:
        """Close one connection, e.g. when its SSE consumer went away."""
        conn = self._connections.pop(connection_id, None)
        if conn is None:
            return False
        await self._close(conn)
        logger.info(f"[push:close] connection closed connection_id={connection_id}")
        if not self._connections:
            await self._notify_disconnected()
        return True

    async def _open(self, conn: _Connection) -> None:
        conn.state = ConnectionState.connecting
        conn.stream = await self._http.open_stream(self.config.stream_url, headers=self._stream_headers)
        conn.state = ConnectionState.open
        conn.reconnect_attempts = 0
        conn.keep_alive = asyncio.create_task(self._keep_alive(conn), name=f"keep-alive:{conn.id}")
        logger.info(f"[push:open] connection open connection_id={conn.id}")
        await self._notify_connected(conn.id)

    async def _close(self, conn: _Connection) -> None:
        current = asyncio.current_task()
        tasks = [t for t in (conn.supervisor, conn.keep_alive) if t is not None and t is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._close_stream(conn)
        conn.state = ConnectionState.closed
        conn.subscriptions.clear()
        self._finish_outbox(conn)

    async def _close_stream(self, conn: _Connection) -> None:
        stream, conn.stream = conn.stream, None
        if stream is None:
            return
        try:
            await stream.close()
        except Exception as exc:
            logger.debug(f"[push:close] error closing stream connection_id={conn.id} error={exc!r}")

    # ---------------- Supervisor -----------------
    async def _supervise(self, conn: _Connection, error: Optional[Exception]) -> None:
        """Read the stream, reconnecting with capped backoff when it drops."""
        while True:
            if error is None:
                error = await self._read(conn)

            if conn.keep_alive is not None:
                conn.keep_alive.cancel()
                conn.keep_alive = None
            await self._close_stream(conn)
            conn.state = ConnectionState.closed

            if not self._auto_reconnect or self._connections.get(conn.id) is not conn:
                return

            conn.reconnect_attempts += 1
            if conn.reconnect_attempts > self.config.max_reconnect_attempts:
                await self._give_up(conn, error)
                return

            delay = compute_backoff_delay(
                conn.reconnect_attempts,
                min_delay=self.config.reconnect_base_delay,
                max_delay=self.config.reconnect_max_delay,
            )
            logger.info(
                f"[push:reconnect] connection_id={conn.id} attempt={conn.reconnect_attempts}/"
                f"{self.config.max_reconnect_attempts} retry_in={delay:.3f}s"
            )
            await self._sleep(delay)
            if not self._auto_reconnect:
                return

            try:
                await self._open(conn)
                error = None
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(f"[push:reconnect] reopen failed connection_id={conn.id} error={exc!r}")
                error = exc

    async def _read(self, conn: _Connection) -> Exception:
        stream = conn.stream
        try:
            async for line in stream:
                await self._handle_line(conn, line)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(f"[push:stream] stream error connection_id={conn.id} error={exc!r}")
            return exc
        logger.info(f"[push:stream] stream ended connection_id={conn.id}")
        return TransientNetworkError("Event stream ended", url=self.config.stream_url)

    async def _handle_line(self, conn: _Connection, line: str) -> None:
        if not line.startswith(_DATA_PREFIX):
            return
        raw = line[len(_DATA_PREFIX):].strip()
        if not raw:
            return
        try:
            message = parse_message(json.loads(raw))
        except ValueError as exc:
            # Malformed messages never close the connection
            logger.warning(f"[push:parse] dropping unparsable message connection_id={conn.id} error={exc}")
            return
        await self._notify_message(conn.id, message)

    async def _give_up(self, conn: _Connection, error: Exception) -> None:
        logger.error(
            f"[push:reconnect] giving up after {conn.reconnect_attempts - 1} attempt(s) "
            f"connection_id={conn.id} error={error!r}"
        )
        self._connections.pop(conn.id, None)
        conn.subscriptions.clear()
        self._finish_outbox(conn)
        await self._notify_error(conn.id, error)
        if not self._connections:
            await self._notify_disconnected()

    async def _keep_alive(self, conn: _Connection) -> None:
        interval = self.config.keep_alive_interval
        while conn.state == ConnectionState.open:
            await self._sleep(interval)
            if conn.state != ConnectionState.open:
                return
            self._enqueue(
                conn,
                PushFrame(
                    event=FRAME_KEEP_ALIVE,
                    data={"type": "keep-alive", "timestamp": datetime.now(timezone.utc).isoformat()},
                ),
            )

    # ---------------- Subscriptions -----------------
    def subscribe(self, connection_id: str, uri: str) -> bool:
        conn = self._connections.get(connection_id)
        if conn is None:
            logger.debug(f"[push:subscribe] unknown connection_id={connection_id}")
            return False
        conn.subscriptions.add(uri)
        logger.debug(f"[push:subscribe] connection_id={connection_id} uri={uri}")
        return True

    def unsubscribe(self, connection_id: str, uri: str) -> bool:
        conn = self._connections.get(connection_id)
        if conn is None:
            return False
        conn.subscriptions.discard(uri)
        logger.debug(f"[push:unsubscribe] connection_id={connection_id} uri={uri}")
        return True

    # ---------------- Outbound -----------------
    def send(self, message: Any) -> int:
        """Broadcast a raw message frame to every open connection."""
        data = message.to_wire() if hasattr(message, "to_wire") else dict(message)
        delivered = 0
        for conn in list(self._connections.values()):
            if conn.state == ConnectionState.open and self._enqueue(
                conn, PushFrame(event=FRAME_MESSAGE, data=data)
            ):
                delivered += 1
        return delivered

    def notify(self, notification: JsonRpcNotification) -> int:
        """Route a notification to open connections subscribed to its resource.

        Returns the number of connections it was queued for.
        """
        uri = notification.resource_uri()
        if uri is None:
            logger.warning(f"[push:notify] notification without resource uri method={notification.method}")
            return 0
        data = notification.to_wire()
        delivered = 0
        for conn in list(self._connections.values()):
            if conn.state != ConnectionState.open or uri not in conn.subscriptions:
                continue
            if self._enqueue(conn, PushFrame(event=FRAME_NOTIFICATION, data=data)):
                delivered += 1
        logger.debug(f"[push:notify] method={notification.method} uri={uri} delivered={delivered}")
        return delivered

    def _enqueue(self, conn: _Connection, frame: PushFrame) -> bool:
        if conn.finished:
            return False
        try:
            conn.outbox.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning(f"[push:outbox] outbox full, dropping {frame.event} frame connection_id={conn.id}")
            return False
        return True

    def _finish_outbox(self, conn: _Connection) -> None:
        if conn.finished:
            return
        conn.finished = True
        try:
            conn.outbox.put_nowait(None)
        except asyncio.QueueFull:
            # frames() notices `finished` once the backlog is consumed
            pass

    def frames(self, connection_id: str) -> AsyncIterator[PushFrame]:
        """Async iterator over outbound frames of a connection until it is closed.

        The connection is resolved immediately, so an iterator obtained before
        a disconnect still yields the final frames.
        """
        return self._iter_frames(self._connections.get(connection_id))

    async def _iter_frames(self, conn: Optional[_Connection]) -> AsyncIterator[PushFrame]:
        if conn is None:
            return
        while True:
            if conn.finished and conn.outbox.empty():
                return
            frame = await conn.outbox.get()
            if frame is None:
                return
            yield frame

    def drain(self, connection_id: str) -> List[PushFrame]:
        """Pop every buffered frame of a connection without waiting."""
        conn = self._connections.get(connection_id)
        if conn is None:
            return []
        frames: List[PushFrame] = []
        while not conn.outbox.empty():
            frame = conn.outbox.get_nowait()
            if frame is not None:
                frames.append(frame)
        return frames

    # ---------------- Observer dispatch -----------------
    async def _notify_connected(self, connection_id: str) -> None:
        for observer in self._observers:
            try:
                await observer.on_connected(connection_id)
            except Exception as exc:
                logger.error(f"[observer:error] on_connected failed observer={type(observer).__name__} error={exc}")

    async def _notify_message(self, connection_id: str, message: Any) -> None:
        for observer in self._observers:
            try:
                await observer.on_message(connection_id, message)
            except Exception as exc:
                logger.error(f"[observer:error] on_message failed observer={type(observer).__name__} error={exc}")

    async def _notify_error(self, connection_id: str, error: Exception) -> None:
        for observer in self._observers:
            try:
                await observer.on_error(connection_id, error)
            except Exception as exc:
                logger.error(f"[observer:error] on_error failed observer={type(observer).__name__} error={exc}")

    async def _notify_disconnected(self) -> None:
        for observer in self._observers:
            try:
                await observer.on_disconnected()
            except Exception as exc:
                logger.error(
                    f"[observer:error] on_disconnected failed observer={type(observer).__name__} error={exc}"
                )
