"""Command-line construction for browser engines."""

from __future__ import annotations

from .engines import Engine
from .errors import ConfigurationError
from .models import LaunchMode, LaunchOptions

BLANK_PAGE = "about:blank"


def _is_flag(arg: str) -> bool:
    return arg.startswith("-")


def check_arguments(engine: Engine, options: LaunchOptions, mode: LaunchMode) -> None:
    """Reject raw arguments that conflict with the managed ones.

    Pure; called before any process or temporary directory exists.
    """

    if options.devtools and not engine.supports_devtools:
        raise ConfigurationError(f'Option "devtools" is not supported by {engine.display_name}')
    args = options.args
    if any(arg.startswith(engine.profile_flag_prefixes) for arg in args):
        raise ConfigurationError(
            f"Pass userDataDir parameter instead of specifying {engine.profile_flag} argument"
        )
    if any(arg.startswith(engine.port_flag_prefixes) for arg in args):
        raise ConfigurationError(f"Use the port parameter instead of {engine.port_flag} argument")
    if mode is not LaunchMode.PERSISTENT and not all(_is_flag(arg) for arg in args):
        raise ConfigurationError("Arguments can not specify page to be opened")


def build_arguments(
    engine: Engine,
    options: LaunchOptions,
    mode: LaunchMode,
    user_data_dir: str,
    port: int = 0,
) -> list[str]:
    """Return the ordered argument list for *engine*.

    ``ignore_default_args`` only filters the engine's cosmetic defaults; the
    profile and protocol-port flags are always present exactly once.
    """

    check_arguments(engine, options, mode)

    ignored = options.ignore_default_args
    if ignored is True:
        defaults: list[str] = []
    elif ignored is False:
        defaults = engine.default_args(options)
    else:
        excluded = set(ignored)
        defaults = [arg for arg in engine.default_args(options) if arg not in excluded]

    arguments = [*defaults, *engine.managed_args(user_data_dir, port), *options.args]
    if all(_is_flag(arg) for arg in options.args):
        arguments.append(BLANK_PAGE)
    return arguments


__all__ = ["BLANK_PAGE", "build_arguments", "check_arguments"]
