"""Declarative configuration for the browser launcher."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError

DEFAULT_REVISIONS = {
    "firefox": "1029",
    "chromium": "740847",
}


class LauncherSettings(BaseSettings):
    """Process-wide defaults; every value can be overridden per ``BrowserType``."""

    model_config = SettingsConfigDict(env_prefix="BROWSER_LAUNCHER_", env_file=".env")

    download_path: Path = Field(default_factory=lambda: Path.home() / ".cache" / "browser-launcher")
    # ``None`` selects the engine's own default host.
    download_host: str | None = None
    revisions: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_REVISIONS))
    default_timeout_ms: Annotated[int, Field(ge=0)] = 30000
    graceful_close_timeout_seconds: Annotated[float, Field(gt=0.0, le=300.0)] = 5.0
    kill_timeout_seconds: Annotated[float, Field(gt=0.0, le=60.0)] = 5.0
    output_history_lines: Annotated[int, Field(ge=1, le=10000)] = 200
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @field_validator("download_host")
    @classmethod
    def _strip_trailing_slash(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.rstrip("/") or None

    def revision_for(self, engine: str) -> str:
        """Return the pinned revision for *engine*."""

        try:
            return self.revisions[engine]
        except KeyError:
            raise ConfigurationError(f"No revision configured for engine {engine!r}") from None


@lru_cache
def load_settings() -> LauncherSettings:
    """Return cached settings instance."""

    return LauncherSettings()


__all__ = ["DEFAULT_REVISIONS", "LauncherSettings", "load_settings"]
