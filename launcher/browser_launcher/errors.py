"""Exception hierarchy raised by the browser launcher."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import ProcessExit


class LauncherError(RuntimeError):
    """Base class for every error surfaced by the launcher."""


class ConfigurationError(LauncherError, ValueError):
    """Launch options are invalid or contradict each other.

    Always raised before a process is spawned or a temporary profile is created.
    """


class UnsupportedPlatformError(ConfigurationError):
    """The current OS/architecture has no known download for the engine."""

    def __init__(self, platform: str) -> None:
        self.platform = platform
        super().__init__(f"Unsupported platform: {platform}")


class MissingRevisionError(LauncherError):
    """The pinned browser revision has not been downloaded yet."""


class LaunchError(LauncherError):
    """The browser executable could not be started."""


class LaunchTimeoutError(LauncherError, TimeoutError):
    """A launch-time wait exceeded its configured bound."""

    def __init__(self, message: str, *, timeout_ms: int, resource: str) -> None:
        self.timeout_ms = timeout_ms
        self.resource = resource
        super().__init__(message)


class ProcessExitedPrematurelyError(LauncherError):
    """The browser exited before reporting its protocol endpoint."""

    def __init__(self, message: str, *, exit: "ProcessExit", output: list[str]) -> None:
        self.exit = exit
        self.output = output
        super().__init__(message)


class LaunchAbortedError(LauncherError):
    """The browser server was closed while the launch was still in flight."""


class TransportConnectError(LauncherError, ConnectionError):
    """Opening the protocol transport to a reported endpoint failed."""

    def __init__(self, endpoint: str, reason: str) -> None:
        self.endpoint = endpoint
        super().__init__(f"Failed to connect to {endpoint}: {reason}")


class GracefulCloseFailure(LauncherError):
    """The protocol-level close request could not be delivered.

    Only ever logged; forced termination proceeds regardless.
    """


class KillDeliveryError(LauncherError):
    """The kill signal could not be delivered to the browser process."""


class ProtocolError(LauncherError):
    """The remote end answered a protocol call with an error payload."""

    def __init__(self, method: str, error: object) -> None:
        self.method = method
        self.error = error
        super().__init__(f"Protocol error ({method}): {error}")


__all__ = [
    "ConfigurationError",
    "GracefulCloseFailure",
    "KillDeliveryError",
    "LaunchAbortedError",
    "LaunchError",
    "LaunchTimeoutError",
    "LauncherError",
    "MissingRevisionError",
    "ProcessExitedPrematurelyError",
    "ProtocolError",
    "TransportConnectError",
    "UnsupportedPlatformError",
]
