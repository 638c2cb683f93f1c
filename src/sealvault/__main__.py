# SealVault - Main Entry Point
#
# Runs the zero-knowledge sync server. Configuration comes from SEALVAULT_*
# environment variables (a .env file in the working directory is honored).
#
#   sealvault [--db PATH] serve [--host H] [--port P]   (default command)
#   sealvault [--db PATH] grant-admin USERNAME [--revoke]

import argparse
import logging
import sys
from pathlib import Path

from . import __version__
from .config import get_settings
from .core import EventSeverity, EventType, get_audit_logger


def _serve(args, settings) -> None:
    get_audit_logger().log_event(
        event_type=EventType.SYSTEM_START,
        severity=EventSeverity.INFO,
        message="SealVault server starting",
        details={"version": __version__, "host": args.host, "port": args.port},
    )

    from .api.main import start_api_server

    try:
        start_api_server(host=args.host, port=args.port, settings=settings)
    except KeyboardInterrupt:
        print("\nShutting down...")
    except Exception as e:
        print(f"\nError: {e}")
        get_audit_logger().log_event(
            event_type=EventType.SYSTEM_STOP,
            severity=EventSeverity.CRITICAL,
            message=f"SealVault server crashed: {e}",
        )
        sys.exit(1)

    get_audit_logger().log_event(
        event_type=EventType.SYSTEM_STOP,
        severity=EventSeverity.INFO,
        message="SealVault server stopped",
    )


def _grant_admin(args, settings) -> None:
    from .exceptions import NotFoundError
    from .server.store import ServerStore

    try:
        user = ServerStore(settings.db_path).set_admin(args.username, admin=not args.revoke)
    except NotFoundError:
        print(f"No such user: {args.username} (users are created on first login)")
        sys.exit(1)

    get_audit_logger().log_event(
        event_type=EventType.ADMIN_GRANTED,
        severity=EventSeverity.ALERT,
        message="Admin flag revoked" if args.revoke else "Admin flag granted",
        details={"user_id": user["id"], "username": user["username"]},
    )
    print(f"{user['username']}: admin={'no' if args.revoke else 'yes'}")


def main(argv=None):
    """Main entry point for the SealVault server."""
    parser = argparse.ArgumentParser(
        description="SealVault - zero-knowledge password vault sync server",
    )
    parser.add_argument("--version", action="version", version=f"SealVault v{__version__}")
    parser.add_argument("--db", default=None, help="SQLite database path (overrides SEALVAULT_DB_PATH)")
    parser.set_defaults(command="serve", host="127.0.0.1", port=8000)
    commands = parser.add_subparsers(dest="command")

    serve = commands.add_parser("serve", help="Run the API server (default)")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")

    grant = commands.add_parser("grant-admin", help="Grant (or revoke) audit access for a user")
    grant.add_argument("username")
    grant.add_argument("--revoke", action="store_true", help="Withdraw the admin flag instead")

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "serve"

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    settings = get_settings()
    if args.db:
        settings.db_path = Path(args.db)

    if args.command == "grant-admin":
        _grant_admin(args, settings)
    else:
        _serve(args, settings)


if __name__ == "__main__":
    main()
