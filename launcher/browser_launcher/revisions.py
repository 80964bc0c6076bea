"""Resolution, download and caching of pinned browser revisions."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import platform as _platform
import shutil
import sys
import zipfile
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path

import httpx

from .engines import Engine
from .errors import MissingRevisionError, UnsupportedPlatformError
from .models import RevisionInfo

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


def current_platform() -> str:
    """Return the platform tag used in download URLs and cache folders."""

    if sys.platform == "darwin":
        return "mac"
    if sys.platform.startswith("linux"):
        return "linux"
    if sys.platform == "win32":
        return "win64" if _platform.machine().endswith("64") else "win32"
    return sys.platform


class ArchiveDownloader:
    """Fetch a zip archive over HTTP and unpack it into a folder."""

    def __init__(
        self,
        *,
        timeout: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._timeout = timeout
        self._client = http_client

    @contextlib.asynccontextmanager
    async def _session(self):
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=True) as client:
            yield client

    async def exists(self, url: str) -> bool:
        """Return ``True`` when *url* answers a HEAD request with 200."""

        async with self._session() as client:
            response = await client.head(url)
        return response.status_code == 200

    async def download(
        self, url: str, folder: Path, on_progress: ProgressCallback | None = None
    ) -> None:
        """Download *url* and extract it into *folder*."""

        await asyncio.to_thread(folder.parent.mkdir, parents=True, exist_ok=True)
        archive = folder.with_name(f"{folder.name}.zip.part")
        try:
            async with self._session() as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    total = int(response.headers.get("content-length") or 0)
                    received = 0
                    fh = await asyncio.to_thread(archive.open, "wb")
                    try:
                        async for chunk in response.aiter_bytes():
                            await asyncio.to_thread(fh.write, chunk)
                            received += len(chunk)
                            if on_progress is not None:
                                on_progress(received, total)
                    finally:
                        await asyncio.to_thread(fh.close)
            try:
                await asyncio.to_thread(_extract_zip, archive, folder)
            except Exception:
                await asyncio.to_thread(shutil.rmtree, folder, True)
                raise
        finally:
            await asyncio.to_thread(_unlink_missing_ok, archive)


def _unlink_missing_ok(path: Path) -> None:
    path.unlink(missing_ok=True)


def _extract_zip(archive: Path, folder: Path) -> None:
    with zipfile.ZipFile(archive) as bundle:
        for member in bundle.infolist():
            target = Path(bundle.extract(member, folder))
            # zipfile drops permission bits; restore them so binaries stay executable.
            mode = (member.external_attr >> 16) & 0o777
            if mode and not member.is_dir():
                target.chmod(mode)


class RevisionResolver:
    """Map revisions of one engine to download URLs and cached executables."""

    def __init__(
        self,
        engine: Engine,
        *,
        download_path: Path | str,
        host: str | None = None,
        platform: str | None = None,
        downloader: ArchiveDownloader | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._engine = engine
        self._platform = platform or current_platform()
        if self._platform not in engine.platforms:
            raise UnsupportedPlatformError(self._platform)
        self._root = Path(download_path) / engine.local_folder
        self._host = (host or engine.default_download_host).rstrip("/")
        self._downloader = downloader or ArchiveDownloader()
        self._logger = logger or LOGGER
        self._resolved: dict[str, RevisionInfo] = {}
        self._lock = asyncio.Lock()

    @property
    def platform(self) -> str:
        return self._platform

    @property
    def root(self) -> Path:
        return self._root

    def resolve(self, revision: str) -> RevisionInfo:
        """Return the :class:`RevisionInfo` for *revision* on this platform."""

        info = self._resolved.get(revision)
        if info is not None:
            return info
        folder = self._root / f"{self._platform}-{revision}"
        executable = folder.joinpath(*self._engine.executable_paths[self._platform].split("/"))
        info = RevisionInfo(
            revision=revision,
            platform=self._platform,
            folder_path=folder,
            executable_path=executable,
            download_url=self._engine.download_urls[self._platform].format(
                host=self._host, revision=revision
            ),
            local=executable.exists(),
        )
        self._resolved[revision] = info
        return info

    def is_local(self, info: RevisionInfo) -> bool:
        return info.executable_path.exists()

    async def ensure_local(
        self, info: RevisionInfo, on_progress: ProgressCallback | None = None
    ) -> RevisionInfo:
        """Download *info* unless its executable is already cached."""

        async with self._lock:
            if self.is_local(info):
                if not info.local:
                    info = replace(info, local=True)
                    self._resolved[info.revision] = info
                return info
            self._logger.info(
                "Downloading %s r%s from %s", self._engine.display_name, info.revision, info.download_url
            )
            await self._downloader.download(info.download_url, info.folder_path, on_progress)
            if not self.is_local(info):
                raise MissingRevisionError(
                    f"{self._engine.display_name} archive for r{info.revision} did not contain "
                    f"{info.executable_path}"
                )
            info = replace(info, local=True)
            self._resolved[info.revision] = info
            return info

    async def can_download(self, revision: str) -> bool:
        return await self._downloader.exists(self.resolve(revision).download_url)

    def local_revisions(self) -> list[str]:
        """List cached revisions for the current platform."""

        if not self._root.is_dir():
            return []
        prefix = f"{self._platform}-"
        return sorted(
            entry.name[len(prefix):]
            for entry in self._root.iterdir()
            if entry.is_dir() and entry.name.startswith(prefix)
        )

    async def remove(self, revision: str) -> None:
        """Delete a cached revision from disk."""

        info = self.resolve(revision)
        if not info.folder_path.exists():
            raise MissingRevisionError(
                f"{self._engine.display_name} r{revision} is not downloaded"
            )
        await asyncio.to_thread(shutil.rmtree, info.folder_path)
        self._resolved.pop(revision, None)


__all__ = ["ArchiveDownloader", "ProgressCallback", "RevisionResolver", "current_platform"]
