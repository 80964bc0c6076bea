"""Spawning, supervising and reaping browser processes."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shutil
import signal
import sys
from asyncio import subprocess as aio_subprocess
from collections import deque
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from pathlib import Path
from typing import Any, TextIO

from .errors import KillDeliveryError, LaunchError
from .models import ProcessExit

LOGGER = logging.getLogger(__name__)

GracefulClose = Callable[[], Awaitable[None]]
ExitListener = Callable[[ProcessExit], None]

# Browsers occasionally print very long lines (minified stack traces).
_STREAM_LIMIT = 1024 * 1024
_DRAIN_GRACE_SECONDS = 1.0


class StreamBroadcaster:
    """Pump one child pipe and fan every line out to independent subscribers.

    The pump always keeps reading so the pipe never fills up, logs each line at
    DEBUG and keeps a bounded history. Subscribers get their own unbounded
    queue; ``None`` marks the end of the stream.
    """

    def __init__(
        self,
        stream: asyncio.StreamReader | None,
        prefix: str,
        *,
        history: int = 200,
        logger: logging.Logger | None = None,
    ) -> None:
        self._stream = stream
        self._prefix = prefix
        self._logger = logger or LOGGER
        self._history: deque[str] = deque(maxlen=history)
        self._subscribers: list[asyncio.Queue[str | None]] = []
        self._finished = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._pump(), name=f"{self._prefix}-pump")

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    def history(self) -> list[str]:
        return list(self._history)

    def subscribe(self, *, replay: bool = True) -> asyncio.Queue[str | None]:
        """Return a queue receiving every line from now on.

        With *replay* the queue is pre-filled with the retained history, so a
        subscriber attached after spawn does not miss early output.
        """

        queue: asyncio.Queue[str | None] = asyncio.Queue()
        if replay:
            for line in self._history:
                queue.put_nowait(line)
        if self._finished.is_set():
            queue.put_nowait(None)
        else:
            self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[str | None]) -> None:
        with contextlib.suppress(ValueError):
            self._subscribers.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def wait_finished(self, timeout: float | None = None) -> bool:
        """Wait until the stream reached EOF; return ``False`` on timeout."""

        try:
            await asyncio.wait_for(self._finished.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    async def stop(self) -> None:
        if self._task is not None:
            await cancel_tasks([self._task])

    async def _pump(self) -> None:
        try:
            if self._stream is None:
                return
            oversized = False
            while True:
                try:
                    raw = await self._stream.readuntil(b"\n")
                except asyncio.IncompleteReadError as exc:
                    # EOF; a trailing line without newline is still delivered.
                    if exc.partial and not oversized:
                        self._publish(exc.partial)
                    break
                except asyncio.LimitOverrunError as exc:
                    # Discard the scanned part and skip up to the next newline.
                    await self._stream.readexactly(exc.consumed)
                    oversized = True
                    continue
                if oversized:
                    oversized = False
                    self._logger.debug("%s: line exceeded buffer limit; dropped", self._prefix)
                    continue
                self._publish(raw)
        finally:
            self._finished.set()
            for queue in self._subscribers:
                queue.put_nowait(None)
            self._subscribers.clear()

    def _publish(self, raw: bytes) -> None:
        line = raw.decode(errors="replace").rstrip("\r\n")
        self._logger.debug("%s: %s", self._prefix, line)
        self._history.append(line)
        for queue in list(self._subscribers):
            queue.put_nowait(line)


async def forward_lines(queue: asyncio.Queue[str | None], sink: TextIO) -> None:
    """Copy lines from a broadcaster subscription to *sink* until EOF."""

    while (line := await queue.get()) is not None:
        sink.write(f"{line}\n")
        sink.flush()


async def cancel_tasks(tasks: Iterable[asyncio.Task[Any]]) -> None:
    """Cancel and await completion of background tasks."""

    tasks = list(tasks)
    for task in tasks:
        task.cancel()
    for task in tasks:
        with contextlib.suppress(asyncio.CancelledError):
            await task


class _SignalRouter:
    """Route parent-process signals to every live supervisor.

    One loop-level handler per signal, installed on first registration and
    removed when the last supervisor goes away. On delivery every registered
    supervisor is closed, the previous handler is restored and the signal is
    raised again so the parent still terminates.
    """

    def __init__(self) -> None:
        self._listeners: dict[signal.Signals, set["ProcessSupervisor"]] = {}
        self._previous: dict[signal.Signals, Any] = {}
        self._loops: dict[signal.Signals, asyncio.AbstractEventLoop] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def installed(self, sig: signal.Signals) -> bool:
        return sig in self._listeners

    def register(self, sig: signal.Signals, supervisor: "ProcessSupervisor") -> bool:
        loop = asyncio.get_running_loop()
        if sig in self._listeners and self._loops.get(sig) is not loop:
            self._uninstall(sig)
        listeners = self._listeners.get(sig)
        if listeners is None:
            previous = signal.getsignal(sig)
            try:
                loop.add_signal_handler(sig, self._dispatch, sig)
            except (NotImplementedError, RuntimeError, ValueError) as exc:
                LOGGER.debug("Cannot forward %s to browser processes: %s", sig.name, exc)
                return False
            listeners = self._listeners[sig] = set()
            self._previous[sig] = previous
            self._loops[sig] = loop
        listeners.add(supervisor)
        return True

    def unregister(self, supervisor: "ProcessSupervisor") -> None:
        for sig in list(self._listeners):
            listeners = self._listeners[sig]
            listeners.discard(supervisor)
            if not listeners:
                self._uninstall(sig)

    def _uninstall(self, sig: signal.Signals) -> None:
        self._listeners.pop(sig, None)
        loop = self._loops.pop(sig, None)
        previous = self._previous.pop(sig, None)
        if loop is None or loop.is_closed():
            return
        with contextlib.suppress(RuntimeError, ValueError):
            loop.remove_signal_handler(sig)
            if previous is not None:
                signal.signal(sig, previous)

    def _dispatch(self, sig: signal.Signals) -> None:
        supervisors = list(self._listeners.get(sig, ()))
        loop = self._loops.get(sig)
        self._uninstall(sig)
        if loop is None:
            return
        LOGGER.info("Received %s; closing %d browser process(es)", sig.name, len(supervisors))
        task = loop.create_task(self._shutdown_and_reraise(sig, supervisors))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _shutdown_and_reraise(
        self, sig: signal.Signals, supervisors: list["ProcessSupervisor"]
    ) -> None:
        results = await asyncio.gather(*(s.close() for s in supervisors), return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                LOGGER.warning("Failed to close browser process on %s: %s", sig.name, result)
        signal.raise_signal(sig)


SIGNAL_ROUTER = _SignalRouter()


class ProcessSupervisor:
    """Own one browser process, its output pipes and its temporary profile."""

    def __init__(
        self,
        *,
        executable_path: str,
        args: Sequence[str],
        env: Mapping[str, str] | None = None,
        name: str = "browser",
        handle_sigint: bool = True,
        handle_sigterm: bool = True,
        handle_sighup: bool = True,
        dumpio: bool = False,
        dumpio_sink: TextIO | None = None,
        temp_dir: Path | None = None,
        graceful_close: GracefulClose | None = None,
        graceful_close_timeout: float = 5.0,
        kill_timeout: float = 5.0,
        history_lines: int = 200,
        logger: logging.Logger | None = None,
    ) -> None:
        self._executable_path = executable_path
        self._args = list(args)
        self._env = dict(env) if env is not None else None
        self._name = name
        self._signals = [
            sig
            for sig, enabled in (
                (signal.SIGINT, handle_sigint),
                (signal.SIGTERM, handle_sigterm),
                (getattr(signal, "SIGHUP", None), handle_sighup),
            )
            if sig is not None and enabled
        ]
        self._dumpio = dumpio
        self._dumpio_sink = dumpio_sink
        self._temp_dir = temp_dir
        self._graceful_close = graceful_close
        self._graceful_close_timeout = graceful_close_timeout
        self._kill_timeout = kill_timeout
        self._history_lines = history_lines
        self._logger = logger or LOGGER

        self._process: aio_subprocess.Process | None = None
        self._stdout: StreamBroadcaster | None = None
        self._stderr: StreamBroadcaster | None = None
        self._forwarders: list[asyncio.Task[None]] = []
        self._exited: asyncio.Future[ProcessExit] | None = None
        self._watcher: asyncio.Task[None] | None = None
        self._exit_listeners: list[ExitListener] = []
        self._shutdown_task: asyncio.Task[ProcessExit] | None = None
        self._kill_requested = asyncio.Event()

    @property
    def name(self) -> str:
        return self._name

    @property
    def process(self) -> aio_subprocess.Process | None:
        return self._process

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process is not None else None

    @property
    def exited(self) -> asyncio.Future[ProcessExit]:
        if self._exited is None:
            raise RuntimeError("Process has not been spawned")
        return self._exited

    @property
    def temp_dir(self) -> Path | None:
        return self._temp_dir

    def stream(self, name: str) -> StreamBroadcaster:
        broadcaster = self._stdout if name == "stdout" else self._stderr
        if broadcaster is None:
            raise RuntimeError("Process has not been spawned")
        return broadcaster

    def captured_output(self) -> list[str]:
        lines: list[str] = []
        for broadcaster in (self._stdout, self._stderr):
            if broadcaster is not None:
                lines.extend(broadcaster.history())
        return lines

    def set_graceful_close(self, action: GracefulClose | None) -> None:
        self._graceful_close = action

    def add_exit_listener(self, listener: ExitListener) -> None:
        if self._exited is not None and self._exited.done():
            listener(self._exited.result())
            return
        self._exit_listeners.append(listener)

    async def spawn(self) -> aio_subprocess.Process:
        """Start the process and the background readers."""

        if self._process is not None:
            raise RuntimeError("Process already spawned")
        kwargs: dict[str, Any] = {}
        if sys.platform != "win32":
            # Own process group so the whole tree can be killed at once.
            kwargs["start_new_session"] = True
        self._logger.debug("Starting %s: %s %s", self._name, self._executable_path, self._args)
        try:
            process = await aio_subprocess.create_subprocess_exec(
                self._executable_path,
                *self._args,
                stdin=aio_subprocess.DEVNULL,
                stdout=aio_subprocess.PIPE,
                stderr=aio_subprocess.PIPE,
                env=self._env,
                limit=_STREAM_LIMIT,
                **kwargs,
            )
        except OSError as exc:
            await self._remove_temp_dir()
            raise LaunchError(
                f"Failed to launch {self._name} ({self._executable_path}): {exc}"
            ) from exc

        self._process = process
        self._exited = asyncio.get_running_loop().create_future()
        self._stdout = StreamBroadcaster(
            process.stdout, f"{self._name}-stdout", history=self._history_lines, logger=self._logger
        )
        self._stderr = StreamBroadcaster(
            process.stderr, f"{self._name}-stderr", history=self._history_lines, logger=self._logger
        )
        for broadcaster in (self._stdout, self._stderr):
            broadcaster.start()
            if self._dumpio:
                self._forwarders.append(
                    asyncio.create_task(
                        forward_lines(broadcaster.subscribe(), self._dumpio_sink or sys.stderr),
                        name=f"{self._name}-dumpio",
                    )
                )
        self._watcher = asyncio.create_task(self._watch_exit(), name=f"{self._name}-exit-watch")
        for sig in self._signals:
            SIGNAL_ROUTER.register(sig, self)
        self._logger.info("Started %s (pid %s)", self._name, process.pid)
        return process

    async def wait(self) -> ProcessExit:
        """Wait for the process to exit and its resources to be released."""

        if self._watcher is None:
            raise RuntimeError("Process has not been spawned")
        await asyncio.shield(self._watcher)
        return self.exited.result()

    async def close(self) -> ProcessExit:
        """Graceful close, then kill; shared by every caller."""

        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._shutdown(graceful=True))
        return await asyncio.shield(self._shutdown_task)

    async def kill(self) -> ProcessExit:
        """Skip the graceful step (or cut a running one short) and kill."""

        self._kill_requested.set()
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._shutdown(graceful=False))
        return await asyncio.shield(self._shutdown_task)

    async def _shutdown(self, *, graceful: bool) -> ProcessExit:
        if self._process is None:
            await self._remove_temp_dir()
            return ProcessExit(exit_code=None)
        if graceful and self._graceful_close is not None and not self.exited.done():
            await self._attempt_graceful_close(self._graceful_close)
        if not self.exited.done():
            await self._kill_process()
        return await self.wait()

    async def _attempt_graceful_close(self, action: GracefulClose) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._graceful_close_timeout
        attempt = asyncio.ensure_future(action())
        kill_requested = asyncio.ensure_future(self._kill_requested.wait())
        try:
            done, _ = await asyncio.wait(
                {attempt, kill_requested, self.exited},
                timeout=self._graceful_close_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if attempt in done and not attempt.cancelled():
                exc = attempt.exception()
                if exc is not None:
                    self._logger.warning("Graceful close of %s failed: %s", self._name, exc)
                    return
                remaining = deadline - loop.time()
                if remaining > 0:
                    await asyncio.wait(
                        {kill_requested, self.exited},
                        timeout=remaining,
                        return_when=asyncio.FIRST_COMPLETED,
                    )
            elif not done:
                self._logger.warning(
                    "Graceful close of %s did not finish within %.1fs",
                    self._name,
                    self._graceful_close_timeout,
                )
            if not self.exited.done():
                self._logger.debug("%s still running after graceful close; killing", self._name)
        finally:
            await cancel_tasks([task for task in (attempt, kill_requested) if not task.done()])

    async def _kill_process(self) -> None:
        process = self._process
        assert process is not None
        if sys.platform == "win32":
            await self._taskkill(process.pid)
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        except PermissionError as exc:
            raise KillDeliveryError(f"Cannot kill {self._name} (pid {process.pid}): {exc}") from exc
        try:
            await asyncio.wait_for(asyncio.shield(self.exited), timeout=self._kill_timeout)
            return
        except TimeoutError:
            self._logger.warning(
                "%s (pid %s) did not exit after SIGKILL; killing process group", self._name, process.pid
            )
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError as exc:
            raise KillDeliveryError(
                f"Cannot kill process group of {self._name} (pid {process.pid}): {exc}"
            ) from exc

    async def _taskkill(self, pid: int) -> None:
        killer = await aio_subprocess.create_subprocess_exec(
            "taskkill",
            "/pid",
            str(pid),
            "/T",
            "/F",
            stdout=aio_subprocess.DEVNULL,
            stderr=aio_subprocess.DEVNULL,
        )
        await killer.wait()

    async def _watch_exit(self) -> None:
        assert self._process is not None and self._exited is not None
        returncode = await self._process.wait()
        outcome = ProcessExit.from_returncode(returncode)
        self._logger.info("%s (pid %s) exited with %s", self._name, self._process.pid, outcome.describe())
        SIGNAL_ROUTER.unregister(self)
        self._exited.set_result(outcome)
        listeners, self._exit_listeners = self._exit_listeners, []
        for listener in listeners:
            try:
                listener(outcome)
            except Exception:
                self._logger.exception("Exit listener for %s failed", self._name)
        await self._release_streams()
        await self._remove_temp_dir()

    async def _release_streams(self) -> None:
        broadcasters = [b for b in (self._stdout, self._stderr) if b is not None]
        for broadcaster in broadcasters:
            if not await broadcaster.wait_finished(_DRAIN_GRACE_SECONDS):
                # A surviving grandchild still holds the pipe open.
                await broadcaster.stop()
        if self._forwarders:
            await asyncio.wait(self._forwarders, timeout=_DRAIN_GRACE_SECONDS)
            await cancel_tasks([task for task in self._forwarders if not task.done()])

    async def _remove_temp_dir(self) -> None:
        path, self._temp_dir = self._temp_dir, None
        if path is None:
            return
        await asyncio.to_thread(_remove_tree, path, self._logger)


def _remove_tree(path: Path, logger: logging.Logger) -> None:
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Failed to remove temporary profile %s: %s", path, exc)


__all__ = [
    "ExitListener",
    "GracefulClose",
    "ProcessSupervisor",
    "SIGNAL_ROUTER",
    "StreamBroadcaster",
    "cancel_tasks",
    "forward_lines",
]
