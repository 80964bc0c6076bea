"""Launch option models and lifecycle value types."""

from __future__ import annotations

import signal as _signal
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .errors import ConfigurationError


class LaunchMode(str, Enum):
    LOCAL = "local"
    SERVER = "server"
    PERSISTENT = "persistent"


class ServerState(str, Enum):
    SPAWNED = "SPAWNED"
    READY = "READY"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


class LaunchOptions(BaseModel):
    """Options accepted by every launch entry point.

    Field names are snake_case; the camelCase spelling (``executablePath``,
    ``handleSIGINT``, ...) is accepted as well. ``timeout`` is expressed in
    milliseconds, ``None`` selects the configured default and ``0`` disables it.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )

    executable_path: str | None = None
    args: list[str] = Field(default_factory=list)
    ignore_default_args: bool | list[str] = False
    headless: bool | None = None
    devtools: bool = False
    env: dict[str, str] | None = None
    handle_sigint: bool = Field(default=True, alias="handleSIGINT")
    handle_sigterm: bool = Field(default=True, alias="handleSIGTERM")
    handle_sighup: bool = Field(default=True, alias="handleSIGHUP")
    dumpio: bool = False
    timeout: Annotated[int | None, Field(ge=0)] = None
    slow_mo: Annotated[float | None, Field(ge=0)] = None
    port: Annotated[int | None, Field(ge=0, le=65535)] = None
    user_data_dir: str | None = None

    @property
    def effective_headless(self) -> bool:
        """Headless unless explicitly disabled or devtools were requested."""

        if self.headless is None:
            return not self.devtools
        return self.headless

    @classmethod
    def coerce(
        cls, options: "LaunchOptions | Mapping[str, Any] | None", overrides: Mapping[str, Any]
    ) -> "LaunchOptions":
        """Merge *options* and keyword *overrides* into a validated model."""

        if isinstance(options, LaunchOptions):
            payload = options.model_dump(exclude_unset=True)
        else:
            payload = dict(options or {})
        payload.update(overrides)
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid launch options: {exc}") from exc


@dataclass(slots=True, frozen=True)
class RevisionInfo:
    """Resolved location of one browser revision on one platform."""

    revision: str
    platform: str
    folder_path: Path
    executable_path: Path
    download_url: str
    local: bool


@dataclass(slots=True, frozen=True)
class ProcessExit:
    """How a browser process terminated."""

    exit_code: int | None
    signal: str | None = None

    @classmethod
    def from_returncode(cls, returncode: int) -> "ProcessExit":
        # asyncio reports "terminated by signal N" as -N on POSIX.
        if returncode < 0:
            try:
                name = _signal.Signals(-returncode).name
            except ValueError:
                name = str(-returncode)
            return cls(exit_code=None, signal=name)
        return cls(exit_code=returncode)

    def describe(self) -> str:
        if self.signal is not None:
            return f"signal {self.signal}"
        return f"code {self.exit_code}"


__all__ = [
    "LaunchMode",
    "LaunchOptions",
    "ProcessExit",
    "RevisionInfo",
    "ServerState",
]
