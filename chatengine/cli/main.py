"""Entry point for the command-line interface."""

from __future__ import annotations

import argparse
import sys

from chatengine.errors import ChatEngineError
from chatengine.log import configure_logging
from chatengine.settings import AppSettings, load_app_settings

from .commands import COMMANDS


def build_parser() -> argparse.ArgumentParser:
    """Construct argument parser for CLI commands."""
    parser = argparse.ArgumentParser(
        prog="chatengine",
        description="Conversational assistant session engine",
    )
    parser.add_argument(
        "--settings",
        help="path to JSON/TOML settings",
    )
    parser.add_argument(
        "--identity",
        help="conversation owner (user id or e-mail); defaults to guest",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    for name, cmd in COMMANDS.items():
        p = sub.add_parser(name, help=cmd.help)
        cmd.add_arguments(p)
        p.set_defaults(func=cmd.func)
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = AppSettings()
    if args.settings:
        try:
            settings = load_app_settings(args.settings)
        except (OSError, ValueError) as exc:
            parser.error(f"cannot load settings: {exc}")
    configure_logging(settings.logging.level, log_dir=settings.logging.log_dir)
    args.app_settings = settings
    try:
        return args.func(args) or 0
    except ChatEngineError as exc:
        sys.stderr.write(f"error: {exc}\n")
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
