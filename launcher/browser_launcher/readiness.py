"""Waiting for a launched browser to announce its protocol endpoint."""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable

from .errors import LaunchAbortedError, LaunchTimeoutError, ProcessExitedPrematurelyError
from .models import ProcessExit
from .processes import StreamBroadcaster, cancel_tasks

_OUTPUT_FLUSH_SECONDS = 0.5


async def _match_line(queue: asyncio.Queue[str | None], pattern: re.Pattern[str]) -> str | None:
    while (line := await queue.get()) is not None:
        match = pattern.match(line)
        if match:
            return match.group(1)
    return None


async def wait_for_endpoint(
    broadcaster: StreamBroadcaster,
    pattern: re.Pattern[str],
    *,
    exited: Awaitable[ProcessExit],
    timeout_ms: int,
    name: str,
    abort: Awaitable[object] | None = None,
    diagnostics: Callable[[], list[str]] | None = None,
) -> str:
    """Return the first capture group of *pattern* seen on *broadcaster*.

    Races the line scan against process exit, *timeout_ms* (``0`` waits
    forever) and the optional *abort* awaitable. The subscription and every
    helper task are gone by the time this returns or raises.
    """

    queue = broadcaster.subscribe(replay=True)
    matcher = asyncio.ensure_future(_match_line(queue, pattern))
    exit_watch = asyncio.ensure_future(asyncio.shield(exited))
    abort_watch = asyncio.ensure_future(asyncio.shield(abort)) if abort is not None else None
    pending: set[asyncio.Future[object]] = {matcher, exit_watch}
    if abort_watch is not None:
        pending.add(abort_watch)

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_ms / 1000 if timeout_ms else None
    try:
        while True:
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            done, pending = await asyncio.wait(
                pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
            if not done:
                raise LaunchTimeoutError(
                    f"Timed out after {timeout_ms} ms while trying to connect to {name}!",
                    timeout_ms=timeout_ms,
                    resource=f"{name} endpoint",
                )
            if matcher in done:
                endpoint = matcher.result()
                if endpoint is not None:
                    return endpoint
                # Stream closed without the line; the exit branch settles it.
            if abort_watch is not None and abort_watch in done:
                raise LaunchAbortedError(f"{name} was closed before it reported its endpoint")
            if exit_watch in done:
                outcome = exit_watch.result()
                await broadcaster.wait_finished(_OUTPUT_FLUSH_SECONDS)
                output = diagnostics() if diagnostics is not None else broadcaster.history()
                message = f"{name} exited before reporting its endpoint ({outcome.describe()})"
                if output:
                    message += "\n" + "\n".join(output)
                raise ProcessExitedPrematurelyError(message, exit=outcome, output=output)
    finally:
        broadcaster.unsubscribe(queue)
        await cancel_tasks(
            [task for task in (matcher, exit_watch, abort_watch) if task is not None and not task.done()]
        )


__all__ = ["wait_for_endpoint"]
