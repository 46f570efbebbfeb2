"""Command-line helpers to inspect and try out connection strings."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Sequence

from .config import LOG_LEVELS, Settings, load_settings
from .connect import TaskStatus, connect
from .driver_options import build_driver_options
from .errors import ConnectionModelError
from .uri import parse_uri, serialize_uri, to_safe_uri


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mongoconn", description="Inspect and test MongoDB connection strings.")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        help="Override the configured log level.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    parse_cmd = subparsers.add_parser("parse", help="Print the parsed descriptor as JSON (secrets omitted).")
    parse_cmd.add_argument("uri")

    format_cmd = subparsers.add_parser("format", help="Print the canonical form of a connection string.")
    format_cmd.add_argument("uri")
    format_cmd.add_argument("--show-secrets", action="store_true", help="Do not mask passwords.")

    options_cmd = subparsers.add_parser("options", help="Print the resolved driver options.")
    options_cmd.add_argument("uri")

    connect_cmd = subparsers.add_parser("connect", help="Connect (through the SSH tunnel, if any) and ping.")
    connect_cmd.add_argument("uri")
    return parser


async def run(args: argparse.Namespace, settings: Settings) -> int:
    if args.command == "connect":
        return await _connect(args.uri, settings)
    descriptor = await parse_uri(args.uri, settings=settings)
    if args.command == "parse":
        print(json.dumps(descriptor.to_safe_dict(), indent=2, sort_keys=True))
    elif args.command == "format":
        print(serialize_uri(descriptor) if args.show_secrets else to_safe_uri(descriptor))
    else:
        options = await build_driver_options(descriptor)
        print(json.dumps({"url": options.url, "options": options.describe()}, indent=2, sort_keys=True))
    return 0


async def _connect(uri: str, settings: Settings) -> int:
    def _report(status: TaskStatus) -> None:
        suffix = f" ({status.reason})" if status.reason else ""
        print(f"{status.task.value}: {status.state.value}{suffix}")

    connection = await connect(uri, progress=_report, settings=settings)
    try:
        print(f"Connected via {connection.options.url}")
    finally:
        await connection.close()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = load_settings()
    if args.log_level:
        settings = settings.with_overrides(log_level=args.log_level)
    logging.basicConfig(level=settings.log_level, format="%(levelname)s %(name)s: %(message)s")
    try:
        return asyncio.run(run(args, settings))
    except ConnectionModelError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


__all__ = ["build_parser", "main", "run"]
