"""Command-line interface for the user lifecycle service."""

from __future__ import annotations
import argparse
import logging
import sys
from pathlib import Path
from typing import Sequence

from userservice.config import ServiceSettings, load_settings
from userservice.database import Database

logger = logging.getLogger("userservice.main")


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="User lifecycle service utilities")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to the YAML configuration file (default: USERSERVICE_CONFIG or config/userservice.yaml)",
    )
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", help="Initialise the users database")
    subparsers.add_parser("list-users", help="Print every stored user")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the API")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8080,
        help="Port for the HTTP API (default: 8080)",
    )

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "init-db", "list-users"}

    # Global options come before the subcommand; anything else defaults to serve.
    index = 0
    while index < len(args_list):
        if args_list[index] == "--config":
            index += 2
        elif args_list[index].startswith("--config="):
            index += 1
        else:
            break
    rest = args_list[index:]

    if not rest:
        args_list = [*args_list, "serve"]
    else:
        first = rest[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in known_commands:
            if any(flag in rest for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = [*args_list[:index], "serve", *rest]

    return parser.parse_args(args_list)


def _load_settings(config: str | None) -> ServiceSettings:
    config_path = Path(config).expanduser().resolve(strict=False) if config else None
    return load_settings(config_path)


def _initialise_database(settings: ServiceSettings) -> Database:
    database = Database(settings.database_path)
    database.initialize()
    logger.info("Database initialised at %s", settings.database_path)
    return database


def _serve(settings: ServiceSettings, *, host: str, port: int) -> None:
    from userservice.application import create_application
    import uvicorn

    application = create_application(settings)
    logger.info("Starting user API on http://%s:%s", host, port)
    try:
        uvicorn.run(application.app, host=host, port=port, log_level="info")
    finally:
        application.close()


def _list_users(database: Database) -> None:
    users = database.list_users()
    if not users:
        print("No users are currently registered.")
        return

    print(f"{len(users)} user(s) found:")
    print(f"{'ID':>4}  {'Name':<25}  {'Email':<50}  {'Age':>3}  Created")
    print("-" * 110)
    for user in users:
        created = user.created_at.strftime("%Y-%m-%d %H:%M:%S %Z") if user.created_at else "-"
        print(f"{user.id:>4}  {user.name:<25}  {user.email:<50}  {user.age:>3}  {created}")


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)
    settings = _load_settings(args.config)

    if args.command == "serve":
        _serve(settings, host=args.host, port=args.port)
    elif args.command == "init-db":
        _initialise_database(settings)
        print("Database initialisation complete.")
    elif args.command == "list-users":
        _list_users(_initialise_database(settings))


if __name__ == "__main__":
    main()
