from __future__ import annotations

import asyncio
import json
import os
import sys
from pathlib import Path

import pytest

from browser_launcher import processes
from browser_launcher.browser_type import BrowserType
from browser_launcher.errors import (
    ConfigurationError,
    LaunchAbortedError,
    LaunchTimeoutError,
    MissingRevisionError,
    ProcessExitedPrematurelyError,
)
from browser_launcher.models import LaunchMode, LaunchOptions, ProcessExit, ServerState
from browser_launcher.processes import ProcessSupervisor
from browser_launcher.protocol import JsonProtocolAdapter, ProtocolConnection
from browser_launcher.server import BrowserServer

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="fake browser is a POSIX shell wrapper")


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def browser_type(settings, fake_engine) -> BrowserType:
    return BrowserType(
        fake_engine,
        settings=settings,
        platform="linux",
        adapter=JsonProtocolAdapter(first_page_event="Fake.pageCreated"),
    )


def _launched_argv(tmp_path: Path) -> list[str]:
    return json.loads((tmp_path / "argv.json").read_text())


def _launched_pid(tmp_path: Path) -> int:
    return int((tmp_path / "pid").read_text())


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


class _NoSpawn:
    async def __call__(self, *args, **kwargs):
        raise AssertionError("no process may be spawned")


@pytest.mark.anyio
async def test_launch_server_reports_endpoint_and_closes(browser_type, fake_options, tmp_path) -> None:
    server = await browser_type.launch_server(fake_options("delay"))
    closes: list[ProcessExit] = []
    server.add_close_listener(closes.append)

    assert server.state is ServerState.READY
    assert server.ws_endpoint is not None
    assert server.ws_endpoint.startswith("ws://127.0.0.1:")
    assert server.process.returncode is None
    argv = _launched_argv(tmp_path)
    profile = Path(argv[argv.index("-profile") + 1])
    assert profile.is_dir()
    assert profile.name.startswith("browser_launcher_firefox_profile-")

    outcome = await server.close()

    assert outcome == ProcessExit(exit_code=0)
    assert server.state is ServerState.CLOSED
    assert server.ws_endpoint is None
    assert server.process.returncode is not None
    assert not profile.exists()
    assert await server.close() == outcome
    assert closes == [outcome]


@pytest.mark.anyio
async def test_launch_server_passes_managed_arguments(browser_type, fake_options, tmp_path) -> None:
    server = await browser_type.launch_server(fake_options(), port=0, args=["-safe-mode"])
    try:
        argv = _launched_argv(tmp_path)
    finally:
        await server.close()

    assert argv[:2] == ["-no-remote", "-headless"]
    assert argv[argv.index("-juggler") + 1] == "0"
    assert argv[-2:] == ["-safe-mode", "about:blank"]


@pytest.mark.anyio
async def test_launch_timeout_kills_process_and_profile(browser_type, fake_options, spawned) -> None:
    with pytest.raises(LaunchTimeoutError) as excinfo:
        await browser_type.launch_server(fake_options("silent", timeout=500))

    assert "Timed out after 500 ms while trying to connect to FakeFox!" in str(excinfo.value)
    [(argv, process)] = spawned
    assert process.returncode is not None
    assert not _pid_alive(process.pid)
    assert not Path(argv[argv.index("-profile") + 1]).exists()


@pytest.mark.anyio
async def test_crash_reports_premature_exit_with_output(browser_type, fake_options) -> None:
    with pytest.raises(ProcessExitedPrematurelyError) as excinfo:
        await browser_type.launch_server(fake_options("crash", timeout=30000))

    assert excinfo.value.exit == ProcessExit(exit_code=1)
    assert "fake browser: cannot open display" in excinfo.value.output
    assert not isinstance(excinfo.value, LaunchTimeoutError)


@pytest.mark.anyio
async def test_kill_skips_graceful_close(browser_type, fake_options) -> None:
    server = await browser_type.launch_server(fake_options())

    outcome = await server.kill()

    assert outcome.signal == "SIGKILL"
    assert server.state is ServerState.CLOSED


@pytest.mark.anyio
async def test_ignored_close_request_falls_back_to_kill(browser_type, fake_options) -> None:
    server = await browser_type.launch_server(fake_options("ignore-close"))

    outcome = await asyncio.wait_for(server.close(), timeout=10)

    assert outcome.signal == "SIGKILL"
    assert server.state is ServerState.CLOSED


@pytest.mark.anyio
async def test_profile_argument_rejected_before_spawn(browser_type, fake_options, monkeypatch) -> None:
    monkeypatch.setattr(processes.aio_subprocess, "create_subprocess_exec", _NoSpawn())

    with pytest.raises(ConfigurationError, match="Pass userDataDir parameter instead of specifying -profile"):
        await browser_type.launch(fake_options(args=["-profile", "/tmp/x"]))


@pytest.mark.anyio
async def test_missing_revision_fails_before_spawn(browser_type, monkeypatch) -> None:
    monkeypatch.setattr(processes.aio_subprocess, "create_subprocess_exec", _NoSpawn())

    with pytest.raises(MissingRevisionError, match='Run "python -m browser_launcher install fakefox"'):
        await browser_type.launch_server(handle_sigint=False)


@pytest.mark.anyio
async def test_launch_rejects_server_only_options(browser_type, fake_options) -> None:
    with pytest.raises(ConfigurationError, match="launchPersistentContext"):
        await browser_type.launch(fake_options(user_data_dir="/tmp/profile"))
    with pytest.raises(ConfigurationError, match="port"):
        await browser_type.launch(fake_options(port=1234))
    with pytest.raises(ConfigurationError):
        await browser_type.launch(fake_options(), unknownOption=True)


@pytest.mark.anyio
async def test_launch_returns_client_whose_close_reaps_browser(browser_type, fake_options, tmp_path) -> None:
    client = await browser_type.launch(fake_options(), slowMo=1)

    assert isinstance(client, ProtocolConnection)
    assert await client.send("Fake.echo", {"a": 1}) == {"echo": {"a": 1}}
    pid = _launched_pid(tmp_path)

    await client.close()

    assert not _pid_alive(pid)


@pytest.mark.anyio
async def test_persistent_context_keeps_caller_profile(browser_type, fake_options, tmp_path) -> None:
    profile = tmp_path / "persistent-profile"

    context = await browser_type.launch_persistent_context(profile, fake_options("persistent"))
    argv = _launched_argv(tmp_path)
    await context.close()

    assert argv[argv.index("-profile") + 1] == str(profile)
    assert "about:blank" in argv
    assert profile.is_dir()
    assert not _pid_alive(_launched_pid(tmp_path))


@pytest.mark.anyio
async def test_persistent_context_requires_capable_adapter(settings, fake_engine, fake_options, tmp_path) -> None:
    browser_type = BrowserType(fake_engine, settings=settings, platform="linux")

    with pytest.raises(ConfigurationError, match="first page"):
        await browser_type.launch_persistent_context(tmp_path / "p", fake_options())


@pytest.mark.anyio
async def test_connect_attaches_without_owning_the_browser(browser_type, fake_options) -> None:
    server = await browser_type.launch_server(fake_options())
    try:
        client = await browser_type.connect(server.ws_endpoint)
        assert await client.send("Fake.echo") == {"echo": {}}
        await client.close()
        await client.wait_closed()

        assert server.state is ServerState.READY
        assert server.process.returncode is None
    finally:
        await server.close()


@pytest.mark.anyio
async def test_close_while_waiting_for_readiness_aborts(fake_engine, fake_options) -> None:
    options = LaunchOptions.coerce(fake_options("silent"), {})
    supervisor = ProcessSupervisor(
        executable_path=options.executable_path,
        args=[],
        env=options.env,
        name=fake_engine.name,
        handle_sigint=False,
        handle_sigterm=False,
        handle_sighup=False,
    )
    await supervisor.spawn()
    server = BrowserServer(supervisor, fake_engine)
    waiting = asyncio.ensure_future(server.wait_until_ready(0))
    await asyncio.sleep(0.1)

    outcome = await server.close()

    with pytest.raises(LaunchAbortedError):
        await waiting
    assert outcome.signal == "SIGKILL"
    assert server.state is ServerState.CLOSED
    assert server.ws_endpoint is None


def test_mode_enum_values_are_stable() -> None:
    assert [mode.value for mode in LaunchMode] == ["local", "server", "persistent"]


@pytest.mark.anyio
async def test_dumpio_forwards_output_while_readiness_is_detected(browser_type, fake_options, capsys) -> None:
    server = await browser_type.launch_server(fake_options(dumpio=True))
    endpoint = server.ws_endpoint
    try:
        assert server.state is ServerState.READY
    finally:
        await server.close()

    err = capsys.readouterr().err
    assert "fake browser starting\n" in err
    assert f"Juggler listening on {endpoint}\n" in err
