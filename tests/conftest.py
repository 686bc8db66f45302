"""
Shared fixtures: an in-memory websocket and a connector that hands them out.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable

import pytest
import websockets

from intent_runtime.encoding import decode, encode


class FakeSocket:
    """Stands in for a websockets client connection."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self._incoming: asyncio.Queue[Any] = asyncio.Queue()

    async def send(self, data: bytes) -> None:
        self.sent.append(decode(data))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.close_code is None:
            self.close_code = code
            self.close_reason = reason
            self._incoming.put_nowait(None)

    def feed(self, payload: dict[str, Any]) -> None:
        self._incoming.put_nowait(encode(payload))

    def feed_raw(self, data: Any) -> None:
        self._incoming.put_nowait(data)

    def drop(self, code: int = 1006) -> None:
        """Simulate the server closing the socket."""
        self.close_code = code
        self._incoming.put_nowait(None)

    def fail(self) -> None:
        """Simulate the transport dying without a close frame."""
        self.close_code = 1006
        self._incoming.put_nowait(websockets.ConnectionClosedError(None, None))

    def ops(self) -> list[int]:
        return [frame["op"] for frame in self.sent]

    def __aiter__(self) -> FakeSocket:
        return self

    async def __anext__(self) -> Any:
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


class FakeConnector:
    """Connector that records calls and returns a fresh FakeSocket each time."""

    def __init__(self) -> None:
        self.urls: list[str] = []
        self.sockets: list[FakeSocket] = []
        self.failures = 0

    async def __call__(self, url: str) -> FakeSocket:
        self.urls.append(url)
        if self.failures:
            self.failures -= 1
            raise OSError("Connection refused")
        ws = FakeSocket()
        self.sockets.append(ws)
        return ws

    @property
    def latest(self) -> FakeSocket:
        return self.sockets[-1]


def ready_frame(interval_ms: int = 5000) -> dict[str, Any]:
    return {
        "op": 3,
        "d": {
            "user": {
                "id": "100",
                "username": "testbot",
                "display_name": "Test Bot",
                "avatar_url": None,
                "created_at": "2025-01-01T00:00:00Z",
            },
            "servers": [
                {
                    "id": "200",
                    "name": "General",
                    "icon_url": None,
                    "owner_id": "1",
                    "member_count": 3,
                }
            ],
            "heartbeat_interval_ms": interval_ms,
        },
    }


def message_data(**overrides: Any) -> dict[str, Any]:
    data = {
        "id": "300",
        "channel_id": "400",
        "author": {
            "id": "1",
            "username": "alice",
            "display_name": "Alice",
            "created_at": "2025-01-01T00:00:00Z",
        },
        "content": "hello",
        "created_at": "2025-01-02T00:00:00Z",
    }
    data.update(overrides)
    return data


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it holds or ``timeout`` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()
