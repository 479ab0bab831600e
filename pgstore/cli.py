"""Command line entry point: inspect the resolved DSN or ping the database."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from .config import AppConfig, ConnectionConfig, load_config, normalize
from .engines import AsyncpgEngine
from .errors import StoreError
from .store import open_store

LOG = logging.getLogger(__name__)


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="pgstore", description=__doc__)
    parser.add_argument("--config", type=Path, default=None, help="Path to a config.toml file")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        type=str.upper,
        choices=("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"),
        help="Logging level",
    )
    parser.add_argument("--host", default=None, help="Database host")
    parser.add_argument("--port", type=int, default=None, help="Database port")
    parser.add_argument("--user", dest="username", default=None, help="Database user")
    parser.add_argument("--password", default=None, help="Database password")
    parser.add_argument("--dbname", default=None, help="Database name")
    parser.add_argument("--ssl", dest="ssl_mode", action="store_true", default=None, help="Require TLS")
    parser.add_argument("--timezone", dest="time_zone", default=None, help="Session time zone")
    commands = parser.add_subparsers(dest="command", required=True)
    dsn = commands.add_parser("dsn", help="Print the normalized connection descriptor")
    dsn.add_argument("--show-password", action="store_true", help="Do not mask the password")
    commands.add_parser("ping", help="Open a connection and check the database answers")
    return parser.parse_args(argv)


def resolve_config(args: argparse.Namespace) -> AppConfig:
    """Config file values with command line overrides applied."""

    config = load_config(args.config)
    overrides = {key: getattr(args, key) for key in ConnectionConfig.model_fields}
    return config.with_connection(**overrides)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(
        level=args.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = resolve_config(args)
    try:
        if args.command == "dsn":
            descriptor = normalize(config.connection)
            print(descriptor.dsn if args.show_password else descriptor.redacted())
            return 0
        engine = AsyncpgEngine(
            min_size=config.pool_min_size,
            max_size=config.pool_max_size,
            connect_timeout=config.connect_timeout,
        )
        with open_store(config.connection, engine=engine) as store:
            store.ping()
    except StoreError as exc:
        LOG.debug("Command failed", exc_info=True)
        print(f"error: {exc}", file=sys.stderr)
        return 1
    print("ok")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
