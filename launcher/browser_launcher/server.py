"""The handle owning a launched browser process and its endpoint."""

from __future__ import annotations

import asyncio
import logging
from asyncio import subprocess as aio_subprocess
from collections.abc import Callable

from .engines import Engine
from .models import ProcessExit, ServerState
from .processes import ProcessSupervisor
from .readiness import wait_for_endpoint

LOGGER = logging.getLogger(__name__)

CloseListener = Callable[[ProcessExit], None]


class BrowserServer:
    """A running browser reachable through a protocol endpoint.

    Lifecycle: ``SPAWNED`` -> ``READY`` -> ``CLOSING`` -> ``CLOSED``. The
    endpoint is only exposed while ``READY`` or ``CLOSING``; a process exit in
    any state moves the server to ``CLOSED`` and notifies close listeners once.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        engine: Engine,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._supervisor = supervisor
        self._engine = engine
        self._logger = logger or LOGGER
        self._state = ServerState.SPAWNED
        self._endpoint: str | None = None
        self._exit: ProcessExit | None = None
        self._close_listeners: list[CloseListener] = []
        self._abort: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        supervisor.add_exit_listener(self._on_process_exit)

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def ws_endpoint(self) -> str | None:
        if self._state in (ServerState.READY, ServerState.CLOSING):
            return self._endpoint
        return None

    @property
    def process(self) -> aio_subprocess.Process | None:
        return self._supervisor.process

    @property
    def pid(self) -> int | None:
        return self._supervisor.pid

    @property
    def exit(self) -> ProcessExit | None:
        return self._exit

    def add_close_listener(self, listener: CloseListener) -> None:
        """Call *listener* with the exit status once the process is gone."""

        if self._exit is not None:
            listener(self._exit)
            return
        self._close_listeners.append(listener)

    async def wait_until_ready(self, timeout_ms: int) -> str:
        """Wait for the readiness line and move to ``READY``."""

        supervisor = self._supervisor
        endpoint = await wait_for_endpoint(
            supervisor.stream(self._engine.readiness_stream),
            self._engine.readiness_pattern,
            exited=supervisor.exited,
            timeout_ms=timeout_ms,
            name=self._engine.display_name,
            abort=self._abort,
            diagnostics=supervisor.captured_output,
        )
        if self._state is ServerState.SPAWNED:
            self._endpoint = endpoint
            self._state = ServerState.READY
            self._logger.info("%s listening on %s", self._engine.display_name, endpoint)
        return endpoint

    async def close(self) -> ProcessExit:
        """Close gracefully, falling back to kill; safe to call repeatedly."""

        self._begin_closing()
        return await self._supervisor.close()

    async def kill(self) -> ProcessExit:
        """Terminate the process without the graceful step."""

        self._begin_closing()
        return await self._supervisor.kill()

    async def wait_for_close(self) -> ProcessExit:
        return await self._supervisor.wait()

    def _begin_closing(self) -> None:
        if self._state in (ServerState.SPAWNED, ServerState.READY):
            self._state = ServerState.CLOSING
        if not self._abort.done():
            self._abort.set_result(None)

    def _on_process_exit(self, outcome: ProcessExit) -> None:
        self._exit = outcome
        self._state = ServerState.CLOSED
        self._endpoint = None
        listeners, self._close_listeners = self._close_listeners, []
        for listener in listeners:
            try:
                listener(outcome)
            except Exception:
                self._logger.exception("Close listener for %s failed", self._engine.display_name)


__all__ = ["BrowserServer", "CloseListener"]
