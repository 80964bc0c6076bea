"""Minimal JSON message client for browser automation protocols."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

from .bootstrap import CLOSE_MESSAGE_ID, CloseDelegate
from .errors import ConfigurationError, ProtocolError
from .transport import WebSocketTransport

LOGGER = logging.getLogger(__name__)

EventListener = Callable[[dict[str, Any]], None]


class ProtocolConnection:
    """Correlate ``{"id", "method", "params"}`` requests with their responses.

    Messages without an id are events and go to the registered listeners.
    Responses carrying the reserved close id are ignored.
    """

    def __init__(
        self,
        transport: WebSocketTransport,
        *,
        slow_mo: float | None = None,
        close_delegate: CloseDelegate | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._transport = transport
        self._slow_mo = slow_mo
        self._close_delegate = close_delegate
        self._logger = logger or LOGGER
        self._last_id = 0
        self._callbacks: dict[int, tuple[str, asyncio.Future[Any]]] = {}
        self._listeners: list[EventListener] = []
        self._closed = asyncio.get_running_loop().create_future()
        self.first_page: asyncio.Future[dict[str, Any]] | None = None
        transport.on_close = self._on_close
        transport.on_message = self._dispatch

    @property
    def closed(self) -> bool:
        return self._closed.done()

    async def wait_closed(self) -> None:
        await asyncio.shield(self._closed)

    async def send(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """Issue *method* and return its ``result`` payload."""

        if self._closed.done():
            raise ProtocolError(method, "Target closed")
        self._last_id += 1
        message_id = self._last_id
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._callbacks[message_id] = (method, future)
        if self._slow_mo:
            await asyncio.sleep(self._slow_mo / 1000)
        try:
            await self._transport.send(json.dumps({"id": message_id, "method": method, "params": params or {}}))
        except Exception:
            self._callbacks.pop(message_id, None)
            raise
        return await future

    def on_event(self, listener: EventListener) -> Callable[[], None]:
        """Register *listener* for events; returns a function removing it."""

        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def expect_event(self, method: str) -> asyncio.Future[dict[str, Any]]:
        """Return a future resolved with the params of the next *method* event."""

        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()

        def _listener(message: dict[str, Any]) -> None:
            if message.get("method") == method and not future.done():
                future.set_result(message.get("params") or {})

        remove = self.on_event(_listener)
        future.add_done_callback(lambda _: remove())
        return future

    async def close(self) -> None:
        """Close the connection, or the whole browser when launched locally."""

        if self._close_delegate is not None:
            await self._close_delegate()
            return
        await self._transport.close()

    def _dispatch(self, raw: str) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            self._logger.warning("Dropping malformed protocol message: %.200s", raw)
            return
        message_id = message.get("id")
        if message_id == CLOSE_MESSAGE_ID:
            return
        if message_id is None:
            for listener in list(self._listeners):
                listener(message)
            return
        callback = self._callbacks.pop(message_id, None)
        if callback is None:
            self._logger.debug("Response for unknown request id %s", message_id)
            return
        method, future = callback
        if future.done():
            return
        if "error" in message:
            future.set_exception(ProtocolError(method, message["error"]))
        else:
            future.set_result(message.get("result"))

    def _on_close(self) -> None:
        callbacks, self._callbacks = self._callbacks, {}
        for method, future in callbacks.values():
            if not future.done():
                future.set_exception(ProtocolError(method, "Target closed"))
        if self.first_page is not None and not self.first_page.done():
            self.first_page.set_exception(ProtocolError("first page", "Target closed"))
        if not self._closed.done():
            self._closed.set_result(None)


class JsonProtocolAdapter:
    """Adapter producing :class:`ProtocolConnection` clients.

    Persistent launches need *first_page_event*, the event the engine emits
    when the default context opens its first page.
    """

    def __init__(self, *, first_page_event: str | None = None, logger: logging.Logger | None = None) -> None:
        self._first_page_event = first_page_event
        self._logger = logger or LOGGER

    @property
    def supports_persistent(self) -> bool:
        return self._first_page_event is not None

    async def connect(
        self,
        transport: WebSocketTransport,
        *,
        persistent: bool,
        slow_mo: float | None,
        close_delegate: CloseDelegate | None,
    ) -> ProtocolConnection:
        connection = ProtocolConnection(
            transport, slow_mo=slow_mo, close_delegate=close_delegate, logger=self._logger
        )
        if persistent:
            if self._first_page_event is None:
                raise ConfigurationError("Persistent launches require a first_page_event")
            connection.first_page = connection.expect_event(self._first_page_event)
        return connection

    def first_page(self, client: ProtocolConnection) -> asyncio.Future[dict[str, Any]]:
        if client.first_page is None:
            raise ConfigurationError("Connection was not opened for a persistent launch")
        return client.first_page

    def default_context(self, client: ProtocolConnection) -> ProtocolConnection:
        return client


__all__ = ["EventListener", "JsonProtocolAdapter", "ProtocolConnection"]
