"""Per-engine entry point: launch, launch a server, or connect."""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import tempfile
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from .arguments import build_arguments, check_arguments
from .bootstrap import ProtocolAdapter, bootstrap, send_close_message
from .config import LauncherSettings, load_settings
from .engines import Engine, get_engine
from .errors import ConfigurationError, LaunchError, MissingRevisionError
from .models import LaunchMode, LaunchOptions, RevisionInfo
from .processes import ProcessSupervisor
from .protocol import JsonProtocolAdapter
from .revisions import ArchiveDownloader, ProgressCallback, RevisionResolver
from .server import BrowserServer
from .transport import connect_to_websocket

LOGGER = logging.getLogger(__name__)

OptionsArg = LaunchOptions | Mapping[str, Any] | None


class BrowserType:
    """Launch and connect to one browser engine at a pinned revision."""

    def __init__(
        self,
        engine: Engine | str,
        *,
        adapter: ProtocolAdapter | None = None,
        settings: LauncherSettings | None = None,
        revision: str | None = None,
        download_path: Path | str | None = None,
        download_host: str | None = None,
        platform: str | None = None,
        downloader: ArchiveDownloader | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._engine = get_engine(engine) if isinstance(engine, str) else engine
        self._settings = settings or load_settings()
        self._adapter: ProtocolAdapter = adapter or JsonProtocolAdapter()
        self._revision = revision or self._settings.revision_for(self._engine.name)
        self._download_path = Path(download_path or self._settings.download_path)
        self._download_host = download_host or self._settings.download_host
        self._platform = platform
        self._downloader = downloader
        self._logger = logger or LOGGER
        self._resolver: RevisionResolver | None = None

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def revision(self) -> str:
        return self._revision

    def name(self) -> str:
        return self._engine.name

    @property
    def resolver(self) -> RevisionResolver:
        if self._resolver is None:
            self._resolver = RevisionResolver(
                self._engine,
                download_path=self._download_path,
                host=self._download_host,
                platform=self._platform,
                downloader=self._downloader,
                logger=self._logger,
            )
        return self._resolver

    def revision_info(self) -> RevisionInfo:
        return self.resolver.resolve(self._revision)

    def executable_path(self) -> str:
        """Path of the pinned revision's executable, downloaded or not."""

        return str(self.revision_info().executable_path)

    async def download_browser_if_needed(
        self, on_progress: ProgressCallback | None = None
    ) -> RevisionInfo:
        return await self.resolver.ensure_local(self.revision_info(), on_progress)

    async def launch(self, options: OptionsArg = None, **overrides: Any) -> Any:
        """Launch a browser owned by this process and return a connected client.

        Closing the client closes the browser and waits for the process to exit.
        """

        opts = LaunchOptions.coerce(options, overrides)
        if opts.user_data_dir is not None:
            raise ConfigurationError(
                "userDataDir option is not supported in `browserType.launch`. "
                "Use `browserType.launchPersistentContext` instead"
            )
        if opts.port is not None:
            raise ConfigurationError("The port option is only supported by `browserType.launchServer`")
        server = await self._launch_server(opts, LaunchMode.LOCAL)
        return await self._bootstrap(server, opts, persistent=False)

    async def launch_server(self, options: OptionsArg = None, **overrides: Any) -> BrowserServer:
        """Launch a browser and return the server handle for remote clients."""

        opts = LaunchOptions.coerce(options, overrides)
        if opts.user_data_dir is not None:
            raise ConfigurationError(
                "userDataDir option is not supported in `browserType.launchServer`. "
                "Use `browserType.launchPersistentContext` instead"
            )
        return await self._launch_server(opts, LaunchMode.SERVER, port=opts.port or 0)

    async def launch_persistent_context(
        self, user_data_dir: str | Path, options: OptionsArg = None, **overrides: Any
    ) -> Any:
        """Launch with a caller-owned profile and return its default context."""

        opts = LaunchOptions.coerce(options, overrides)
        if opts.user_data_dir is not None:
            raise ConfigurationError("Pass userDataDir as the first argument only")
        if opts.port is not None:
            raise ConfigurationError("The port option is only supported by `browserType.launchServer`")
        if not getattr(self._adapter, "supports_persistent", True):
            raise ConfigurationError(
                f"{type(self._adapter).__name__} cannot wait for the first page of a persistent context"
            )
        server = await self._launch_server(opts, LaunchMode.PERSISTENT, user_data_dir=Path(user_data_dir))
        client = await self._bootstrap(server, opts, persistent=True)
        return self._adapter.default_context(client)

    async def connect(self, ws_endpoint: str, *, slow_mo: float | None = None) -> Any:
        """Attach to an already running browser server."""

        async def _attach(transport: Any) -> Any:
            return await self._adapter.connect(
                transport, persistent=False, slow_mo=slow_mo, close_delegate=None
            )

        return await connect_to_websocket(ws_endpoint, _attach, logger=self._logger)

    def _resolve_executable(self, options: LaunchOptions) -> str:
        if options.executable_path:
            return options.executable_path
        info = self.revision_info()
        if not self.resolver.is_local(info):
            raise MissingRevisionError(
                f"{self._engine.display_name} revision is not downloaded. "
                f'Run "python -m browser_launcher install {self._engine.name}"'
            )
        return str(info.executable_path)

    def _timeout_ms(self, options: LaunchOptions) -> int:
        if options.timeout is None:
            return self._settings.default_timeout_ms
        return options.timeout

    async def _launch_server(
        self,
        options: LaunchOptions,
        mode: LaunchMode,
        *,
        user_data_dir: Path | None = None,
        port: int = 0,
    ) -> BrowserServer:
        engine = self._engine
        check_arguments(engine, options, mode)
        executable = self._resolve_executable(options)
        timeout_ms = self._timeout_ms(options)
        env = engine.prepare_env(dict(os.environ if options.env is None else options.env), executable)

        temp_dir: Path | None = None
        if user_data_dir is None:
            temp_dir = Path(await asyncio.to_thread(tempfile.mkdtemp, prefix=engine.temp_profile_prefix))
            user_data_dir = temp_dir
        else:
            await asyncio.to_thread(user_data_dir.mkdir, parents=True, exist_ok=True)

        supervisor = ProcessSupervisor(
            executable_path=executable,
            args=build_arguments(engine, options, mode, str(user_data_dir), port),
            env=env,
            name=engine.name,
            handle_sigint=options.handle_sigint,
            handle_sigterm=options.handle_sigterm,
            handle_sighup=options.handle_sighup,
            dumpio=options.dumpio,
            temp_dir=temp_dir,
            graceful_close_timeout=self._settings.graceful_close_timeout_seconds,
            kill_timeout=self._settings.kill_timeout_seconds,
            history_lines=self._settings.output_history_lines,
            logger=self._logger,
        )
        await supervisor.spawn()
        server = BrowserServer(supervisor, engine, logger=self._logger)
        try:
            endpoint = await server.wait_until_ready(timeout_ms)
        except BaseException:
            await self._reap(server)
            raise
        supervisor.set_graceful_close(functools.partial(send_close_message, endpoint))
        return server

    async def _bootstrap(self, server: BrowserServer, options: LaunchOptions, *, persistent: bool) -> Any:
        endpoint = server.ws_endpoint
        if endpoint is None:
            await self._reap(server)
            raise LaunchError(f"{self._engine.display_name} exited before it could be connected")
        try:
            return await bootstrap(
                endpoint,
                self._adapter,
                persistent=persistent,
                slow_mo=options.slow_mo,
                close_delegate=server.close,
                timeout_ms=self._timeout_ms(options),
                logger=self._logger,
            )
        except BaseException:
            await self._reap(server)
            raise

    async def _reap(self, server: BrowserServer) -> None:
        try:
            await server.kill()
        except Exception as exc:
            self._logger.warning("Failed to kill partially launched %s: %s", self._engine.display_name, exc)


__all__ = ["BrowserType"]
