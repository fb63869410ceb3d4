"""
Shared fakes for the websocket vendors.

FakeSocket stands in for a websockets client connection; FakeConnector is
passed to providers/sessions as their connector and hands the socket out.
Both must be created inside the running event loop.
"""
from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Optional, Union

import pytest
import websockets

_CLOSED = object()


class FakeSocket:
    """In-memory websocket.

    Args:
        on_send: Called as on_send(socket, message) after every send, so a
                 test can script the vendor's replies.
    """

    def __init__(self, on_send: Optional[Callable[["FakeSocket", Any], None]] = None) -> None:
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.sent: list[Union[str, bytes]] = []
        self.closed = False
        self.close_calls = 0
        self.fail_send: Optional[BaseException] = None
        self._on_send = on_send

    def feed(self, *messages: Any) -> None:
        for m in messages:
            if isinstance(m, (dict, list)):
                m = json.dumps(m)
            self.inbound.put_nowait(m)

    def sent_json(self) -> list[dict]:
        return [json.loads(m) for m in self.sent if isinstance(m, str)]

    async def send(self, message: Union[str, bytes]) -> None:
        if self.fail_send is not None:
            raise self.fail_send
        if self.closed:
            raise websockets.ConnectionClosedOK(None, None)
        self.sent.append(message)
        if self._on_send is not None:
            self._on_send(self, message)

    async def recv(self) -> Union[str, bytes]:
        if self.closed:
            raise websockets.ConnectionClosedOK(None, None)
        item = await self.inbound.get()
        if item is _CLOSED:
            raise websockets.ConnectionClosedOK(None, None)
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.close_calls += 1
        if not self.closed:
            self.closed = True
            self.inbound.put_nowait(_CLOSED)


class FakeConnector:
    """Connector returning a prepared FakeSocket and recording the call."""

    def __init__(self, socket: FakeSocket) -> None:
        self.socket = socket
        self.calls: list[dict[str, Any]] = []

    async def __call__(self, url: str, *, headers=None, ssl_ctx=None, open_timeout=None) -> FakeSocket:
        self.calls.append({"url": url, "headers": dict(headers or {}), "open_timeout": open_timeout})
        return self.socket

    @property
    def url(self) -> str:
        return self.calls[-1]["url"]

    @property
    def headers(self) -> dict[str, str]:
        return self.calls[-1]["headers"]


async def collect(stream) -> list:
    return [item async for item in stream]


async def agen(items, delay: float = 0.0):
    for item in items:
        if delay:
            await asyncio.sleep(delay)
        else:
            await asyncio.sleep(0)
        yield item


@pytest.fixture
def fakes():
    """Namespace with the fake classes and helpers for tests."""

    class _Fakes:
        Socket = FakeSocket
        Connector = FakeConnector

    _Fakes.collect = staticmethod(collect)
    _Fakes.agen = staticmethod(agen)
    return _Fakes
