"""Command-line interface for marketcore."""

import argparse
import json
import sys

from . import __version__
from .config import get_settings
from .document_store import open_store
from .errors import MarketcoreError
from .logs import configure_logging
from .staging import StagingArea
from .users import TokenAuthority, UserDirectory


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the API server."""
    try:
        import uvicorn

        print("Starting marketcore API server...")
        print(f"API docs: http://{args.host}:{args.port}/docs")
        print()

        # When reload is enabled, uvicorn requires the app as an import string
        app_target = "marketcore.api:app" if args.reload else None
        if app_target is None:
            from .api import app
            app_target = app

        uvicorn.run(
            app_target,
            host=args.host,
            port=args.port,
            reload=args.reload,
            proxy_headers=True,
            log_config=None,
        )
        return 0

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_sweep_staging(args: argparse.Namespace) -> int:
    """Delete temp orders whose payment window has passed."""
    settings = get_settings()
    try:
        store = open_store(args.database_url or settings.database_url)
        removed = StagingArea(store).sweep_expired()
    except MarketcoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps({"removed": removed}))
    else:
        print(f"Removed {removed} expired temp order(s)")
    return 0


def cmd_create_indexes(args: argparse.Namespace) -> int:
    """Create the indexes the order queries rely on."""
    settings = get_settings()
    try:
        store = open_store(args.database_url or settings.database_url)
        names = store.create_indexes()
    except MarketcoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if not names:
        print("Nothing to create for this store")
    for name in names:
        print(f"  {name}")
    return 0


def cmd_issue_token(args: argparse.Namespace) -> int:
    """Print a bearer token for an existing user."""
    settings = get_settings()
    try:
        store = open_store(args.database_url or settings.database_url)
        user = UserDirectory(store).get_user(args.user_id)
    except MarketcoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    authority = TokenAuthority(
        settings.jwt_secret,
        settings.jwt_algorithm,
        args.ttl or settings.jwt_ttl_seconds,
    )
    print(authority.issue(user.id))
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="marketcore",
        description="Marketplace order lifecycle and payment reconciliation service.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument(
        "--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)"
    )
    serve_parser.add_argument(
        "--port", type=int, default=8000, help="Port to bind to (default: 8000)"
    )
    serve_parser.add_argument(
        "--reload", action="store_true", help="Enable auto-reload for development"
    )

    # sweep-staging
    sweep_parser = subparsers.add_parser(
        "sweep-staging", help="Delete expired temporary orders"
    )
    sweep_parser.add_argument("--database-url", help="Override DATABASE_URL")
    sweep_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # create-indexes
    indexes_parser = subparsers.add_parser(
        "create-indexes", help="Create database indexes"
    )
    indexes_parser.add_argument("--database-url", help="Override DATABASE_URL")

    # issue-token
    token_parser = subparsers.add_parser(
        "issue-token", help="Issue a bearer token for a user (local testing)"
    )
    token_parser.add_argument("user_id", help="User ID")
    token_parser.add_argument("--database-url", help="Override DATABASE_URL")
    token_parser.add_argument(
        "--ttl", type=int, help="Token lifetime in seconds (default: JWT_TTL_SECONDS)"
    )

    return parser


def main() -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 0

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)

    commands = {
        "serve": cmd_serve,
        "sweep-staging": cmd_sweep_staging,
        "create-indexes": cmd_create_indexes,
        "issue-token": cmd_issue_token,
    }

    cmd_func = commands.get(args.command)
    if cmd_func:
        return cmd_func(args)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
