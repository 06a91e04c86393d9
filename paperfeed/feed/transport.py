"""
WebSocket transport for the provider feed.

The transport only moves frames: it sends JSON objects and yields raw text
messages. Parsing is done by MessageNormalizer, lifecycle by FeedConnection.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Mapping, Protocol

import aiohttp
import orjson

from paperfeed.feed.errors import SocketError

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """An open WebSocket."""

    async def send(self, frame: Mapping[str, Any]) -> None: ...

    def messages(self) -> AsyncIterator[str]: ...

    async def close(self) -> None: ...


class TransportFactory(Protocol):
    async def __call__(
        self, url: str, headers: Mapping[str, str], timeout_s: float
    ) -> Transport: ...


class AiohttpTransport:
    """Transport backed by aiohttp.ClientWebSocketResponse."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        ws: aiohttp.ClientWebSocketResponse,
        url: str,
    ) -> None:
        self._session = session
        self._ws = ws
        self._url = url

    @classmethod
    async def open(
        cls, url: str, headers: Mapping[str, str], timeout_s: float
    ) -> AiohttpTransport:
        """
        Open a WebSocket to ``url``.

        Raises:
            SocketError: If the handshake fails
        """
        session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout_s))
        try:
            logger.info(f"[transport] Connecting to {url}")
            ws = await session.ws_connect(url, headers=dict(headers))
        except aiohttp.ClientError as e:
            await session.close()
            raise SocketError(
                f"WebSocket handshake failed: {e}",
                url=url,
                component="AiohttpTransport",
            ) from e
        except BaseException:
            await session.close()
            raise
        return cls(session, ws, url)

    @property
    def closed(self) -> bool:
        return self._ws.closed

    async def send(self, frame: Mapping[str, Any]) -> None:
        if self._ws.closed:
            raise SocketError("WebSocket is closed", url=self._url, component="AiohttpTransport")
        try:
            await self._ws.send_str(orjson.dumps(dict(frame)).decode())
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise SocketError(
                f"Send failed: {e}", url=self._url, component="AiohttpTransport"
            ) from e

    async def messages(self) -> AsyncIterator[str]:
        """Yield text frames until the server closes the socket."""
        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                yield msg.data
            elif msg.type == aiohttp.WSMsgType.BINARY:
                logger.debug("[transport] Received binary message (ignored)")
            elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                logger.info("[transport] Server closed connection")
                break
            elif msg.type == aiohttp.WSMsgType.ERROR:
                raise SocketError(
                    f"WebSocket error: {self._ws.exception()}",
                    url=self._url,
                    component="AiohttpTransport",
                )

    async def close(self) -> None:
        if not self._ws.closed:
            await self._ws.close()
        if not self._session.closed:
            await self._session.close()


async def open_aiohttp_transport(
    url: str, headers: Mapping[str, str], timeout_s: float
) -> Transport:
    """Default TransportFactory."""
    return await AiohttpTransport.open(url, headers, timeout_s)

