"""Operator-side client for issuing commands through the relay."""

from __future__ import annotations

import asyncio
import logging
from types import TracebackType
from typing import Optional, Type

import aiohttp

from . import protocol
from .protocol import Message

LOGGER = logging.getLogger(__name__)


class OperatorClient:
    """Async context manager wrapping one operator WebSocket connection.

    Example::

        async with OperatorClient("ws://localhost:8080") as client:
            await client.send(protocol.move(Direction.FORWARD, 50))
            reply = await client.receive()
    """

    def __init__(
        self,
        url: str,
        *,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.url = url
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    async def __aenter__(self) -> "OperatorClient":
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        await self.close()

    @property
    def closed(self) -> bool:
        return self._ws is None or self._ws.closed

    async def connect(self) -> None:
        """Open the WebSocket.

        Raises:
            aiohttp.ClientError: If the relay cannot be reached.
        """

        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        try:
            self._ws = await self._session.ws_connect(self.url)
        except Exception:
            await self._close_session()
            raise
        LOGGER.debug("Operator connected to %s", self.url)

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        await self._close_session()

    async def send(self, message: Message) -> None:
        await self.send_text(protocol.encode(message))

    async def send_text(self, text: str) -> None:
        """Send a raw text frame, bypassing the encoder."""

        await self._require_ws().send_str(text)

    async def receive_text(self, timeout: float = 5.0) -> str:
        """Return the next text frame.

        Raises:
            asyncio.TimeoutError: If nothing arrives within ``timeout``.
            ConnectionError: If the relay closed the connection.
        """

        ws = self._require_ws()
        async with asyncio.timeout(timeout):
            while True:
                message = await ws.receive()
                if message.type == aiohttp.WSMsgType.TEXT:
                    return message.data
                if message.type in (
                    aiohttp.WSMsgType.CLOSE,
                    aiohttp.WSMsgType.CLOSING,
                    aiohttp.WSMsgType.CLOSED,
                ):
                    raise ConnectionError("relay closed the connection")
                if message.type == aiohttp.WSMsgType.ERROR:
                    raise ws.exception() or ConnectionError("WebSocket read error")

    async def receive(self, timeout: float = 5.0) -> Message:
        """Return the next frame decoded as a command or response."""

        return protocol.decode(await self.receive_text(timeout))

    def _require_ws(self) -> aiohttp.ClientWebSocketResponse:
        if self._ws is None:
            raise RuntimeError("OperatorClient is not connected")
        return self._ws

    async def _close_session(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
