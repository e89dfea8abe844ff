#!/usr/bin/env python3
"""
Portal auth service.

Serves the sign-in API and provides a few operator helpers for the profile store.
"""

import argparse
import asyncio
import json
import logging
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", stream=sys.stderr
)

#
# NOTE: Keep portal imports lazy (inside functions) so `--help` and the store helpers
# don't pay for FastAPI startup.
#


def migrate() -> int:
    """Create the profile-store schema if missing. Returns a process exit code."""
    from portal.auth.errors import StoreError
    from portal.profiles.store import prepare_store

    try:
        print(asyncio.run(prepare_store()))
    except (StoreError, ValueError) as e:
        print(f"Profile store setup failed: {e}", file=sys.stderr)
        return 1
    return 0


def show_profile(uid: str) -> int:
    """Print the stored profile document for `uid`. Returns a process exit code."""
    from portal.auth.config import load_auth_config
    from portal.profiles.store import build_store

    store = build_store()
    doc = asyncio.run(store.read_document(load_auth_config().profile_collection, uid))
    if doc is None:
        print(f"No profile stored for {uid}", file=sys.stderr)
        return 1
    print(json.dumps(doc, indent=2, sort_keys=True))
    return 0


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Portal sign-in service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the API server
  python main.py serve --port 8080

  # Create the profile-store schema (documents table for PROFILE_STORE=postgres)
  python main.py migrate

  # Print a stored profile
  python main.py profile <uid>
        """,
    )
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the HTTP API server")
    serve.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    serve.add_argument("--port", type=int, default=8080, help="Listen port (default: 8080)")

    sub.add_parser("migrate", help="Create the profile-store schema if missing")

    profile = sub.add_parser("profile", help="Print the stored profile document for a user")
    profile.add_argument("uid", help="User id")

    args = parser.parse_args()

    try:
        if args.command == "serve":
            from portal.api.app import run

            run(host=args.host, port=args.port)
            return

        if args.command == "migrate":
            sys.exit(migrate())

        if args.command == "profile":
            sys.exit(show_profile(args.uid))

        parser.print_help()

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        raise


if __name__ == "__main__":
    main()
