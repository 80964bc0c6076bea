"""Launch browser engines, discover their protocol endpoint and reap them."""

from __future__ import annotations

from .browser_type import BrowserType
from .config import LauncherSettings, load_settings
from .engines import CHROMIUM, FIREFOX, Engine, get_engine
from .errors import (
    ConfigurationError,
    GracefulCloseFailure,
    KillDeliveryError,
    LaunchAbortedError,
    LaunchError,
    LaunchTimeoutError,
    LauncherError,
    MissingRevisionError,
    ProcessExitedPrematurelyError,
    ProtocolError,
    TransportConnectError,
    UnsupportedPlatformError,
)
from .models import LaunchMode, LaunchOptions, ProcessExit, RevisionInfo, ServerState
from .server import BrowserServer
from .version import __version__

__all__ = [
    "BrowserServer",
    "BrowserType",
    "CHROMIUM",
    "ConfigurationError",
    "Engine",
    "FIREFOX",
    "GracefulCloseFailure",
    "KillDeliveryError",
    "LaunchAbortedError",
    "LaunchError",
    "LaunchMode",
    "LaunchOptions",
    "LaunchTimeoutError",
    "LauncherError",
    "LauncherSettings",
    "MissingRevisionError",
    "ProcessExit",
    "ProcessExitedPrematurelyError",
    "ProtocolError",
    "RevisionInfo",
    "ServerState",
    "TransportConnectError",
    "UnsupportedPlatformError",
    "__version__",
    "get_engine",
    "load_settings",
]
