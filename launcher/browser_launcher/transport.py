"""WebSocket transport carrying protocol messages to a browser."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from .errors import TransportConnectError

LOGGER = logging.getLogger(__name__)

MessageHandler = Callable[[str], None]
CloseHandler = Callable[[], None]
T = TypeVar("T")

# Protocol payloads (screenshots, traces) can be far larger than the library default.
MAX_MESSAGE_SIZE = 256 * 1024 * 1024


class WebSocketTransport:
    """Bidirectional text channel: ``send``, ``on_message``, ``on_close``.

    Messages that arrive before ``on_message`` is assigned are buffered and
    delivered as soon as a handler is set.
    """

    def __init__(self, connection: ClientConnection, *, logger: logging.Logger | None = None) -> None:
        self._connection = connection
        self._logger = logger or LOGGER
        self._on_message: MessageHandler | None = None
        self.on_close: CloseHandler | None = None
        self._backlog: list[str] = []
        self._closed = False
        self._reader = asyncio.create_task(self._read_loop(), name="websocket-transport-reader")

    @classmethod
    async def open(
        cls, url: str, *, open_timeout: float | None = 30.0, logger: logging.Logger | None = None
    ) -> "WebSocketTransport":
        """Connect to *url*; failures surface as :class:`TransportConnectError`."""

        try:
            connection = await connect(
                url,
                max_size=MAX_MESSAGE_SIZE,
                ping_interval=None,
                open_timeout=open_timeout,
            )
        except (OSError, InvalidHandshake, InvalidURI, TimeoutError) as exc:
            raise TransportConnectError(url, str(exc) or type(exc).__name__) from exc
        return cls(connection, logger=logger)

    @property
    def on_message(self) -> MessageHandler | None:
        return self._on_message

    @on_message.setter
    def on_message(self, handler: MessageHandler | None) -> None:
        self._on_message = handler
        if handler is None:
            return
        backlog, self._backlog = self._backlog, []
        for message in backlog:
            handler(message)

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message: str) -> None:
        await self._connection.send(message)

    async def close(self) -> None:
        with contextlib.suppress(ConnectionClosed):
            await self._connection.close()
        with contextlib.suppress(asyncio.CancelledError):
            await self._reader

    async def _read_loop(self) -> None:
        try:
            async for data in self._connection:
                text = data.decode() if isinstance(data, bytes) else data
                if self._on_message is None:
                    self._backlog.append(text)
                    continue
                try:
                    self._on_message(text)
                except Exception:
                    self._logger.exception("Protocol message handler failed")
        except ConnectionClosed as exc:
            self._logger.debug("Transport closed: %s", exc)
        finally:
            self._closed = True
            if self.on_close is not None:
                self.on_close()


async def connect_to_websocket(
    url: str,
    handler: Callable[[WebSocketTransport], Awaitable[T]],
    *,
    logger: logging.Logger | None = None,
) -> T:
    """Open a transport to *url* and hand it to *handler*.

    The transport is closed again if *handler* fails.
    """

    transport = await WebSocketTransport.open(url, logger=logger)
    try:
        return await handler(transport)
    except BaseException:
        await transport.close()
        raise


__all__ = ["CloseHandler", "MessageHandler", "WebSocketTransport", "connect_to_websocket"]
