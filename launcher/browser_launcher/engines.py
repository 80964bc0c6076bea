"""Per-engine capability records.

Each supported browser engine is described by one :class:`Engine` value; the
launcher never branches on the engine name, it only consults these fields.
"""

from __future__ import annotations

import os
import re
import sys
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Literal

from .errors import ConfigurationError
from .models import LaunchOptions

StreamName = Literal["stdout", "stderr"]


def _inherit_env(env: dict[str, str], executable_path: str) -> dict[str, str]:
    return env


@dataclass(slots=True, frozen=True)
class Engine:
    """Capabilities that differ between browser engines."""

    name: str
    display_name: str
    readiness_pattern: re.Pattern[str]
    readiness_stream: StreamName
    supports_devtools: bool
    default_download_host: str
    # Raw arguments starting with one of these prefixes are rejected.
    profile_flag_prefixes: tuple[str, ...]
    port_flag_prefixes: tuple[str, ...]
    profile_flag: str
    port_flag: str
    default_args: Callable[[LaunchOptions], list[str]]
    managed_args: Callable[[str, int], list[str]]
    # platform tag -> template with ``{host}`` and ``{revision}`` placeholders
    download_urls: Mapping[str, str]
    # platform tag -> executable path relative to the extracted archive
    executable_paths: Mapping[str, str]
    temp_profile_prefix: str
    prepare_env: Callable[[dict[str, str], str], dict[str, str]] = field(default=_inherit_env)

    @property
    def platforms(self) -> frozenset[str]:
        return frozenset(self.download_urls)

    @property
    def local_folder(self) -> str:
        return f".local-{self.name}"


def _firefox_default_args(options: LaunchOptions) -> list[str]:
    args = ["-no-remote"]
    if options.effective_headless:
        args.append("-headless")
    else:
        args.extend(["-wait-for-browser", "-foreground"])
    return args


def _firefox_managed_args(user_data_dir: str, port: int) -> list[str]:
    return ["-profile", user_data_dir, "-juggler", str(port)]


def _firefox_env(env: dict[str, str], executable_path: str) -> dict[str, str]:
    if not sys.platform.startswith("linux"):
        return env
    # Linux builds ship the libstdc++ they were linked against next to the binary.
    library_path = os.path.dirname(executable_path)
    existing = env.get("LD_LIBRARY_PATH")
    merged = dict(env)
    merged["LD_LIBRARY_PATH"] = f"{library_path}:{existing}" if existing else library_path
    return merged


FIREFOX = Engine(
    name="firefox",
    display_name="Firefox",
    readiness_pattern=re.compile(r"^Juggler listening on (ws://.*)$"),
    readiness_stream="stdout",
    supports_devtools=False,
    default_download_host="https://playwright.azureedge.net",
    profile_flag_prefixes=("-profile", "--profile"),
    port_flag_prefixes=("-juggler",),
    profile_flag="-profile",
    port_flag="-juggler",
    default_args=_firefox_default_args,
    managed_args=_firefox_managed_args,
    download_urls={
        "linux": "{host}/builds/firefox/{revision}/firefox-linux.zip",
        "mac": "{host}/builds/firefox/{revision}/firefox-mac.zip",
        "win32": "{host}/builds/firefox/{revision}/firefox-win32.zip",
        "win64": "{host}/builds/firefox/{revision}/firefox-win64.zip",
    },
    executable_paths={
        "linux": "firefox/firefox",
        "mac": "firefox/Nightly.app/Contents/MacOS/firefox",
        "win32": "firefox/firefox.exe",
        "win64": "firefox/firefox.exe",
    },
    temp_profile_prefix="browser_launcher_firefox_profile-",
    prepare_env=_firefox_env,
)


CHROMIUM_DEFAULT_ARGS = (
    "--disable-background-networking",
    "--enable-features=NetworkService,NetworkServiceInProcess",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-breakpad",
    "--disable-client-side-phishing-detection",
    "--disable-component-extensions-with-background-pages",
    "--disable-default-apps",
    "--disable-dev-shm-usage",
    "--disable-extensions",
    "--disable-features=TranslateUI,BlinkGenPropertyTrees",
    "--disable-hang-monitor",
    "--disable-ipc-flooding-protection",
    "--disable-popup-blocking",
    "--disable-prompt-on-repost",
    "--disable-renderer-backgrounding",
    "--disable-sync",
    "--force-color-profile=srgb",
    "--metrics-recording-only",
    "--no-first-run",
    "--enable-automation",
    "--password-store=basic",
    "--use-mock-keychain",
)


def _chromium_default_args(options: LaunchOptions) -> list[str]:
    args = list(CHROMIUM_DEFAULT_ARGS)
    if options.devtools:
        args.append("--auto-open-devtools-for-tabs")
    if options.effective_headless:
        args.extend(["--headless", "--hide-scrollbars", "--mute-audio"])
    return args


def _chromium_managed_args(user_data_dir: str, port: int) -> list[str]:
    return [f"--user-data-dir={user_data_dir}", f"--remote-debugging-port={port}"]


CHROMIUM = Engine(
    name="chromium",
    display_name="Chromium",
    readiness_pattern=re.compile(r"^DevTools listening on (ws://.*)$"),
    readiness_stream="stderr",
    supports_devtools=True,
    default_download_host="https://storage.googleapis.com",
    profile_flag_prefixes=("--user-data-dir",),
    port_flag_prefixes=("--remote-debugging-",),
    profile_flag="--user-data-dir",
    port_flag="--remote-debugging-port",
    default_args=_chromium_default_args,
    managed_args=_chromium_managed_args,
    download_urls={
        "linux": "{host}/chromium-browser-snapshots/Linux_x64/{revision}/chrome-linux.zip",
        "mac": "{host}/chromium-browser-snapshots/Mac/{revision}/chrome-mac.zip",
        "win32": "{host}/chromium-browser-snapshots/Win/{revision}/chrome-win.zip",
        "win64": "{host}/chromium-browser-snapshots/Win_x64/{revision}/chrome-win.zip",
    },
    executable_paths={
        "linux": "chrome-linux/chrome",
        "mac": "chrome-mac/Chromium.app/Contents/MacOS/Chromium",
        "win32": "chrome-win/chrome.exe",
        "win64": "chrome-win/chrome.exe",
    },
    temp_profile_prefix="browser_launcher_chromium_profile-",
)


ENGINES: dict[str, Engine] = {engine.name: engine for engine in (FIREFOX, CHROMIUM)}


def get_engine(name: str) -> Engine:
    """Look up a built-in engine by name."""

    try:
        return ENGINES[name]
    except KeyError:
        known = ", ".join(sorted(ENGINES))
        raise ConfigurationError(f"Unknown browser engine {name!r} (expected one of: {known})") from None


__all__ = ["CHROMIUM", "ENGINES", "Engine", "FIREFOX", "StreamName", "get_engine"]
