"""Package version, read from the repository ``VERSION`` file."""

from __future__ import annotations

from importlib import metadata
from pathlib import Path

_VERSION_FILE = Path(__file__).resolve().parent.parent.parent / "VERSION"

if _VERSION_FILE.exists():
    __version__ = _VERSION_FILE.read_text(encoding="utf-8").strip()
else:
    __version__ = metadata.version("browser-launcher")


__all__ = ["__version__"]
