from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI


log = logging.getLogger(__name__)


class TransportClosed(Exception):
    """The peer (or our own close) ended the stream."""


class StreamTransport(Protocol):
    async def recv(self) -> str | bytes: ...

    async def send(self, data: str) -> None: ...

    async def close(self) -> None: ...


TransportFactory = Callable[[str], Awaitable[StreamTransport]]

# Errors worth another connect attempt.
CONNECT_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    TimeoutError,
    asyncio.TimeoutError,
    InvalidHandshake,
)


class WebSocketTransport:
    def __init__(self, ws: websockets.ClientConnection) -> None:
        self._ws = ws

    async def recv(self) -> str | bytes:
        try:
            return await self._ws.recv()
        except ConnectionClosed as e:
            raise TransportClosed(str(e)) from e

    async def send(self, data: str) -> None:
        try:
            await self._ws.send(data)
        except ConnectionClosed as e:
            raise TransportClosed(str(e)) from e

    async def close(self) -> None:
        await self._ws.close()


def websocket_factory(
    *,
    open_timeout: float = 10.0,
    close_timeout: float = 5.0,
    ping_interval: float = 20.0,
) -> TransportFactory:
    async def connect(uri: str) -> StreamTransport:
        try:
            ws = await websockets.connect(
                uri,
                open_timeout=open_timeout,
                close_timeout=close_timeout,
                ping_interval=ping_interval,
                ping_timeout=ping_interval,
            )
        except InvalidURI as e:
            raise ValueError(f"invalid stream URI: {uri}") from e
        log.debug("websocket connected uri=%s", uri)
        return WebSocketTransport(ws)

    return connect
