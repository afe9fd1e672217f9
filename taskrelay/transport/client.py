"""
Transport Client — the single persistent link to the controller.

States:
  DISCONNECTED → CONNECTING → CONNECTED → DISCONNECTED (→ reconnect scheduled)

Behavioral Contract:
- At most one live connection; connect() is a no-op unless disconnected
- A successful connection resets the attempt counter and starts a heartbeat
- Every disconnect schedules a reconnect with delay
  min(base * 1.5 ** (attempt - 1), ceiling) until max attempts is reached;
  after that only an explicit connect() tries again
- send() never buffers: it returns False when there is no live connection
- Inbound payloads that are not JSON objects are logged and dropped
- Lifecycle changes are emitted as TransportEvents to a single sink
"""

import asyncio
import json
import logging
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Optional, Protocol, Union

import websockets
from websockets.exceptions import WebSocketException

from taskrelay.models.connection import ConnectionState, ConnectionStatus
from taskrelay.models.messages import ping

logger = logging.getLogger(__name__)

CONNECT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)
LINK_ERRORS = (OSError, WebSocketException)


class Connection(Protocol):
    """What the client needs from an open connection."""

    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[Union[str, bytes]]: ...


Connector = Callable[[str], Awaitable[Connection]]
Sleeper = Callable[[float], Awaitable[None]]


async def websocket_connector(url: str) -> Connection:
    """Default connector: a WebSocket connection via `websockets`."""
    return await websockets.connect(url, open_timeout=10)


def backoff_delay(attempt: int, base: float, ceiling: float) -> float:
    """Delay before reconnect attempt `attempt` (1-based)."""
    return min(base * 1.5 ** (attempt - 1), ceiling)


class TransportEventKind(str, Enum):
    CONNECTED = "connected"
    MESSAGE = "message"
    DISCONNECTED = "disconnected"


class TransportEvent:
    """A lifecycle change or inbound record from the controller link."""

    def __init__(
        self,
        kind: TransportEventKind,
        payload: Optional[dict] = None,
        error: Optional[str] = None,
    ):
        self.kind = kind
        self.payload = payload
        self.error = error

    def __repr__(self) -> str:
        return f"TransportEvent({self.kind.value}, payload={self.payload!r}, error={self.error!r})"


class ControllerClient:
    """Owns the connection, heartbeat and reconnect schedule."""

    def __init__(
        self,
        emit: Callable[[TransportEvent], None],
        url: Optional[str] = None,
        connector: Optional[Connector] = None,
        heartbeat_interval: float = 20.0,
        base_delay: float = 2.0,
        max_delay: float = 30.0,
        max_attempts: int = 50,
        sleep: Optional[Sleeper] = None,
    ):
        self._emit = emit
        self._connector = connector or websocket_connector
        self.heartbeat_interval = heartbeat_interval
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self._sleep = sleep or asyncio.sleep

        self.status = ConnectionStatus(url=url)
        self._conn: Optional[Connection] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def connected(self) -> bool:
        return self.status.state == ConnectionState.CONNECTED

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    async def connect(self, url: Optional[str] = None) -> None:
        """Open the link. No-op while connected or connecting."""
        if self.status.state != ConnectionState.DISCONNECTED:
            return
        self._cancel_reconnect()
        self._closed = False
        await self._open(url or self.status.url)

    async def send(self, message: Union[dict, str]) -> bool:
        """Write one record. Returns False instead of queueing when offline."""
        conn = self._conn
        if conn is None or not self.connected:
            logger.debug("Cannot send: not connected to controller")
            return False
        payload = message if isinstance(message, str) else json.dumps(message, default=str)
        try:
            await conn.send(payload)
        except LINK_ERRORS as e:
            logger.warning("Send failed: %s", e)
            return False
        return True

    async def disconnect(self) -> None:
        """Drop the current link. The usual reconnect schedule follows."""
        conn = self._conn
        if conn is None:
            return
        try:
            await conn.close()
        except LINK_ERRORS as e:
            logger.debug("Error while closing connection: %s", e)
        await self._handle_disconnect(conn, None)

    async def close(self) -> None:
        """Shut down for good: no heartbeat, no reader, no reconnects."""
        self._closed = True
        self._cancel_reconnect()
        conn = self._conn
        self._conn = None
        for task in (self._heartbeat_task, self._reader_task):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
        self._heartbeat_task = None
        self._reader_task = None
        if conn is not None:
            try:
                await conn.close()
            except LINK_ERRORS as e:
                logger.debug("Error while closing connection: %s", e)
        self.status.state = ConnectionState.DISCONNECTED

    # --- State machine internals ---

    async def _open(self, url: Optional[str]) -> None:
        if not url:
            raise ValueError("No controller URL configured")
        self.status.url = url
        self.status.state = ConnectionState.CONNECTING
        logger.info("Connecting to %s", url)

        try:
            conn = await self._connector(url)
        except CONNECT_ERRORS as e:
            logger.warning("Connection to %s failed: %s", url, e)
            self.status.state = ConnectionState.DISCONNECTED
            self.status.last_error = str(e) or e.__class__.__name__
            self._emit(TransportEvent(
                TransportEventKind.DISCONNECTED, error=self.status.last_error
            ))
            self._schedule_reconnect()
            return

        if self._closed:
            await conn.close()
            self.status.state = ConnectionState.DISCONNECTED
            return

        self._conn = conn
        self.status.state = ConnectionState.CONNECTED
        self.status.attempts = 0
        self.status.last_error = None
        logger.info("Connected to %s", url)

        self._heartbeat_task = asyncio.create_task(self._heartbeat(conn))
        self._reader_task = asyncio.create_task(self._read(conn))
        self._emit(TransportEvent(TransportEventKind.CONNECTED))

    async def _read(self, conn: Connection) -> None:
        error: Optional[str] = None
        try:
            async for raw in conn:
                self._dispatch_raw(raw)
        except LINK_ERRORS as e:
            error = str(e) or e.__class__.__name__
            logger.warning("Connection dropped: %s", error)
        finally:
            await self._handle_disconnect(conn, error)

    def _dispatch_raw(self, raw: Union[str, bytes]) -> None:
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            payload = json.loads(raw)
        except (ValueError, RecursionError) as e:
            logger.warning("Dropping malformed message: %s", e)
            return
        if not isinstance(payload, dict):
            logger.warning("Dropping non-object message: %r", payload)
            return
        self._emit(TransportEvent(TransportEventKind.MESSAGE, payload=payload))

    async def _heartbeat(self, conn: Connection) -> None:
        while self._conn is conn:
            await asyncio.sleep(self.heartbeat_interval)
            if self._conn is conn:
                await self.send(ping())

    async def _handle_disconnect(self, conn: Connection, error: Optional[str]) -> None:
        if conn is not self._conn:
            return
        self._conn = None
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
        self.status.state = ConnectionState.DISCONNECTED
        self.status.last_error = error
        logger.info("Disconnected from controller")
        self._emit(TransportEvent(TransportEventKind.DISCONNECTED, error=error))
        if not self._closed:
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self.status.attempts >= self.max_attempts:
            logger.warning(
                "Max reconnect attempts (%d) reached; call connect() to retry",
                self.max_attempts,
            )
            return
        self.status.attempts += 1
        delay = backoff_delay(self.status.attempts, self.base_delay, self.max_delay)
        logger.info("Reconnecting in %.1fs (attempt %d)", delay, self.status.attempts)
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await self._sleep(delay)
        if self._closed or self.status.state != ConnectionState.DISCONNECTED:
            return
        await self._open(self.status.url)

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._reconnect_task = None
