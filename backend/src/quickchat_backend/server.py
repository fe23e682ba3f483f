"""Reference backend CLI."""

from __future__ import annotations

import argparse
import logging
import sys

from aiohttp import web

from .config import load_server_config_from_env
from .http_app import create_app


def _run_serve(args: argparse.Namespace) -> int:
    config = load_server_config_from_env()
    app = create_app(ping_interval_s=args.ping_interval, db_path=args.db, config=config)
    web.run_app(app, host=args.host, port=args.port)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point for CLI commands."""

    parser = argparse.ArgumentParser(prog="quickchat-backend", description="quickchat reference backend")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp backend server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument(
        "--ping-interval",
        type=int,
        default=30,
        help="Seconds between heartbeat pings",
    )
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database (default: in memory)")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "serve":
            return _run_serve(args)
    except ValueError as exc:  # bad environment configuration
        sys.stderr.write(f"Error: {exc}\n")
        return 1

    parser.error(f"Unknown command {args.command}")
    return 2


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
