"""Command line entry point for the telescope-mcp command."""
from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
from typing import List, Optional

from . import __version__
from .config import Settings, load_settings
from .database import TelescopeDatabase
from .deeplink import render_instructions
from .errors import TelescopeError
from .server import create_server

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(settings: Settings) -> None:
    """Log to stderr; stdout carries the MCP stdio stream."""
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file, encoding="utf-8"))
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT, handlers=handlers, force=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="telescope-mcp",
        description="MCP server exposing Laravel Telescope debugging data",
    )
    parser.add_argument("-v", "--version", action="version", version=f"telescope-mcp version {__version__}")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("serve", help="Run the MCP server over stdio (default)")

    link = subparsers.add_parser("deeplink", help="Print a Cursor deeplink that registers this server")
    link.add_argument("--db-host")
    link.add_argument("--db-port", type=int)
    link.add_argument("--db-database")
    link.add_argument("--db-username")
    link.add_argument("--db-password")
    link.add_argument("--server-name")
    return parser


def _apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    overrides = {
        "db_host": args.db_host,
        "db_port": args.db_port,
        "db_name": args.db_database,
        "db_user": args.db_username,
        "db_password": args.db_password,
        "server_name": args.server_name,
    }
    return dataclasses.replace(settings, **{k: v for k, v in overrides.items() if v is not None})


def serve(settings: Settings) -> None:
    db = TelescopeDatabase(settings)
    logger.info("Starting %s against %s", settings.server_name, settings.connection_descriptor)
    try:
        create_server(db, settings).run()
    finally:
        db.dispose()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the telescope-mcp command."""
    args = build_parser().parse_args(argv)
    try:
        settings = load_settings()
    except TelescopeError as e:
        sys.stderr.write(f"Configuration error: {e}\n")
        return 2

    if args.command == "deeplink":
        sys.stdout.write(render_instructions(_apply_overrides(settings, args)))
        return 0

    configure_logging(settings)
    serve(settings)
    return 0


if __name__ == "__main__":
    sys.exit(main())
