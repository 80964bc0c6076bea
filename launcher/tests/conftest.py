from __future__ import annotations

import dataclasses
import os
import sys
import textwrap
from pathlib import Path
from typing import Any

import pytest

from browser_launcher.config import LauncherSettings
from browser_launcher.engines import FIREFOX, Engine

FAKE_ENGINE: Engine = dataclasses.replace(FIREFOX, name="fakefox", display_name="FakeFox")

FAKE_BROWSER_SOURCE = textwrap.dedent(
    """
    import asyncio
    import json
    import os
    import sys
    import time

    MODE = os.environ.get("FAKE_BROWSER_MODE", "ready")

    if os.environ.get("FAKE_BROWSER_ARGV_FILE"):
        with open(os.environ["FAKE_BROWSER_ARGV_FILE"], "w") as fh:
            json.dump(sys.argv[1:], fh)
    if os.environ.get("FAKE_BROWSER_PID_FILE"):
        with open(os.environ["FAKE_BROWSER_PID_FILE"], "w") as fh:
            fh.write(str(os.getpid()))

    if MODE == "crash":
        print("booting fake browser", flush=True)
        print("fake browser: cannot open display", file=sys.stderr, flush=True)
        sys.exit(1)

    if MODE == "silent":
        while True:
            time.sleep(1)


    async def main():
        from websockets.asyncio.server import serve

        stop = asyncio.get_running_loop().create_future()

        async def handler(ws):
            if MODE == "persistent":
                await ws.send(json.dumps({"method": "Fake.pageCreated", "params": {"url": "about:blank"}}))
            async for raw in ws:
                message = json.loads(raw)
                if message.get("method") == "Browser.close":
                    if MODE != "ignore-close" and not stop.done():
                        stop.set_result(None)
                    continue
                if message.get("method") == "Fake.fail":
                    await ws.send(json.dumps({"id": message["id"], "error": {"message": "boom"}}))
                    continue
                await ws.send(json.dumps({"id": message["id"], "result": {"echo": message.get("params")}}))

        async with serve(handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            if MODE == "delay":
                await asyncio.sleep(0.2)
            print("fake browser starting", flush=True)
            print(f"Juggler listening on ws://127.0.0.1:{port}/fake", flush=True)
            await stop


    asyncio.run(main())
    """
)


@pytest.fixture
def fake_engine() -> Engine:
    return FAKE_ENGINE


@pytest.fixture
def spawned(monkeypatch: pytest.MonkeyPatch) -> list[tuple[tuple[str, ...], Any]]:
    """Record ``(argv, process)`` for every subprocess the supervisor starts."""

    from browser_launcher import processes

    records: list[tuple[tuple[str, ...], Any]] = []
    original = processes.aio_subprocess.create_subprocess_exec

    async def _recording(*args: Any, **kwargs: Any) -> Any:
        process = await original(*args, **kwargs)
        records.append((args, process))
        return process

    monkeypatch.setattr(processes.aio_subprocess, "create_subprocess_exec", _recording)
    return records


@pytest.fixture
def fake_browser(tmp_path: Path) -> Path:
    """Executable that mimics a browser printing a Juggler readiness line."""

    script = tmp_path / "fake_browser.py"
    script.write_text(FAKE_BROWSER_SOURCE, encoding="utf-8")
    wrapper = tmp_path / "fake-browser"
    wrapper.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{script}" "$@"\n', encoding="utf-8")
    wrapper.chmod(0o755)
    return wrapper


@pytest.fixture
def settings(tmp_path: Path) -> LauncherSettings:
    return LauncherSettings(
        download_path=tmp_path / "downloads",
        graceful_close_timeout_seconds=1.0,
        kill_timeout_seconds=2.0,
        revisions={"firefox": "1029", "chromium": "740847", "fakefox": "1"},
    )


@pytest.fixture
def fake_options(fake_browser: Path, tmp_path: Path):
    """Build launch options pointing at the fake browser in a given mode."""

    def _build(mode: str = "ready", **extra: Any) -> dict[str, Any]:
        env = dict(os.environ)
        env["FAKE_BROWSER_MODE"] = mode
        env["FAKE_BROWSER_ARGV_FILE"] = str(tmp_path / "argv.json")
        env["FAKE_BROWSER_PID_FILE"] = str(tmp_path / "pid")
        options: dict[str, Any] = {
            "executable_path": str(fake_browser),
            "env": env,
            "handle_sigint": False,
            "handle_sigterm": False,
            "handle_sighup": False,
            "timeout": 10000,
        }
        options.update(extra)
        return options

    return _build
