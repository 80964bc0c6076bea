"""Entrypoint for ``python -m browser_launcher``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from .browser_type import BrowserType
from .config import LauncherSettings, load_settings
from .engines import ENGINES
from .errors import LauncherError
from .models import ProcessExit


def exit_status(outcome: ProcessExit) -> int:
    """Shell-style status: the exit code, or 128 + N when killed by signal N."""

    if outcome.signal is None:
        return outcome.exit_code or 0
    try:
        return 128 + signal.Signals[outcome.signal].value
    except KeyError:
        return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="browser_launcher", description=__doc__)
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("launch-server", help="launch a browser and print its endpoint")
    serve.add_argument("engine", choices=sorted(ENGINES))
    serve.add_argument("--port", type=int, default=0, help="protocol port (0 lets the browser pick)")
    serve.add_argument("--headful", action="store_true", help="show the browser window")
    serve.add_argument("--executable-path", default=None)
    serve.add_argument("--timeout", type=int, default=None, help="launch timeout in milliseconds")
    serve.add_argument("--dumpio", action="store_true", help="forward browser output to stderr")
    serve.add_argument(
        "--browser-arg",
        dest="browser_args",
        action="append",
        default=[],
        help="extra browser flag, e.g. --browser-arg=-safe-mode (repeatable)",
    )

    install = commands.add_parser("install", help="download the pinned browser revision")
    install.add_argument("engine", choices=sorted(ENGINES))

    path = commands.add_parser("executable-path", help="print the pinned revision's executable")
    path.add_argument("engine", choices=sorted(ENGINES))
    return parser


async def _serve(args: argparse.Namespace, settings: LauncherSettings) -> int:
    browser_type = BrowserType(args.engine, settings=settings)
    server = await browser_type.launch_server(
        executable_path=args.executable_path,
        headless=not args.headful,
        port=args.port,
        timeout=args.timeout,
        dumpio=args.dumpio,
        args=args.browser_args,
    )
    print(server.ws_endpoint, flush=True)
    return exit_status(await server.wait_for_close())


async def _install(args: argparse.Namespace, settings: LauncherSettings) -> int:
    browser_type = BrowserType(args.engine, settings=settings)

    def _progress(received: int, total: int) -> None:
        if total:
            sys.stderr.write(f"\r{received * 100 // total:3d}% of {total // (1024 * 1024)} MB")
            sys.stderr.flush()

    info = await browser_type.download_browser_if_needed(_progress)
    sys.stderr.write("\n")
    print(info.executable_path)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Parse arguments, configure logging and run the selected command."""

    # Settings are resolved here instead of at import time so environment
    # variables defined by process managers are respected.
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args = build_parser().parse_args(argv)
    try:
        if args.command == "executable-path":
            print(BrowserType(args.engine, settings=settings).executable_path())
            return 0
        if args.command == "install":
            return asyncio.run(_install(args, settings))
        return asyncio.run(_serve(args, settings))
    except LauncherError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
