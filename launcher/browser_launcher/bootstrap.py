"""Turning a reported endpoint into a connected protocol client."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

from .errors import GracefulCloseFailure, LaunchTimeoutError
from .transport import WebSocketTransport, connect_to_websocket

LOGGER = logging.getLogger(__name__)

# Reserved request id; protocol clients drop responses carrying it.
CLOSE_MESSAGE_ID = -9999
CLOSE_METHOD = "Browser.close"

CloseDelegate = Callable[[], Awaitable[object]]


@runtime_checkable
class ProtocolAdapter(Protocol):
    """Engine-specific factory turning a transport into a client object."""

    async def connect(
        self,
        transport: WebSocketTransport,
        *,
        persistent: bool,
        slow_mo: float | None,
        close_delegate: CloseDelegate | None,
    ) -> Any:
        """Return a client bound to *transport*.

        When *close_delegate* is given, the client's own ``close`` must call it
        instead of merely dropping the connection.
        """

    def first_page(self, client: Any) -> Awaitable[object]:
        """Resolve once the default context has opened its first page."""

    def default_context(self, client: Any) -> Any:
        """Return the default browsing context of a persistent launch."""


async def wait_with_timeout(awaitable: Awaitable[Any], resource: str, timeout_ms: int) -> Any:
    """Await *awaitable* for at most *timeout_ms* (``0`` means no bound)."""

    if not timeout_ms:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000)
    except TimeoutError as exc:
        raise LaunchTimeoutError(
            f"Waiting for {resource} failed: timeout {timeout_ms} ms exceeded",
            timeout_ms=timeout_ms,
            resource=resource,
        ) from exc


async def bootstrap(
    endpoint: str,
    adapter: ProtocolAdapter,
    *,
    persistent: bool = False,
    slow_mo: float | None = None,
    close_delegate: CloseDelegate | None = None,
    timeout_ms: int = 0,
    logger: logging.Logger | None = None,
) -> Any:
    """Connect to *endpoint* and return the adapter's client.

    Connection failures are raised immediately; nothing here retries.
    """

    logger = logger or LOGGER

    async def _attach(transport: WebSocketTransport) -> Any:
        client = await adapter.connect(
            transport,
            persistent=persistent,
            slow_mo=slow_mo,
            close_delegate=close_delegate,
        )
        logger.debug("Connected protocol client to %s", endpoint)
        if persistent:
            await wait_with_timeout(adapter.first_page(client), "first page", timeout_ms)
        return client

    return await connect_to_websocket(endpoint, _attach, logger=logger)


async def send_close_message(endpoint: str) -> None:
    """Ask the browser behind *endpoint* to shut down on its own.

    Uses a fresh connection; the reserved id keeps the message invisible to
    any client already attached to the same endpoint.
    """

    message = {"method": CLOSE_METHOD, "params": {}, "id": CLOSE_MESSAGE_ID}
    try:
        transport = await WebSocketTransport.open(endpoint)
        try:
            await transport.send(json.dumps(message))
        finally:
            await transport.close()
    except Exception as exc:
        raise GracefulCloseFailure(f"Could not request {CLOSE_METHOD} via {endpoint}: {exc}") from exc


__all__ = [
    "CLOSE_MESSAGE_ID",
    "CLOSE_METHOD",
    "CloseDelegate",
    "ProtocolAdapter",
    "bootstrap",
    "send_close_message",
    "wait_with_timeout",
]
