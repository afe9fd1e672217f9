"""Shared fakes for the controller link."""

import asyncio
import json

import pytest

_CLOSED = object()


class FakeConnection:
    """In-memory connection: feed() inbound frames, read `sent` outbound."""

    def __init__(self):
        self.sent = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    def feed(self, raw) -> None:
        self._inbox.put_nowait(raw)

    def drop(self) -> None:
        self._inbox.put_nowait(_CLOSED)

    def sent_of_type(self, msg_type: str) -> list:
        return [m for m in self.sent if m.get("type") == msg_type]

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionResetError("connection closed")
        self.sent.append(json.loads(message))

    async def close(self) -> None:
        self.closed = True
        self._inbox.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class FakeConnector:
    """Hands out FakeConnections, or refuses while `fail` is set."""

    def __init__(self):
        self.fail = False
        self.calls = []
        self.connections = []

    @property
    def last(self) -> FakeConnection:
        return self.connections[-1]

    async def __call__(self, url: str):
        self.calls.append(url)
        if self.fail:
            raise ConnectionRefusedError("refused")
        conn = FakeConnection()
        self.connections.append(conn)
        return conn


class FakeSleep:
    """Records requested delays and yields once instead of waiting."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def fake_sleep():
    return FakeSleep()
